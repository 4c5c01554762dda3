class ChatError(Exception):
    """Base class for errors raised by the messaging core."""


class TransientNetworkError(ChatError):
    """A backend call failed in a way that is worth retrying."""


class ValidationError(ChatError):
    """Outgoing content was rejected before reaching the network."""


class PresenceStaleError(ChatError):
    """A presence record outlived its TTL without a refresh."""


class NotificationDeliveryError(ChatError):
    """A local alert or remote push could not be delivered."""


class InvalidTransitionError(ChatError):

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from {current!r} to {target!r}")
        self.entity = entity
        self.current = current
        self.target = target
