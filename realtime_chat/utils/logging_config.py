from logging.config import dictConfig

_FORMATS = {
    "text": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    # one object per line for log shippers; the message itself is not escaped
    "json": '{"ts":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","msg":"%(message)s"}',
}


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure the ``realtime_chat`` loggers once at startup."""
    if fmt not in _FORMATS:
        raise ValueError(f"unknown log format {fmt!r}")
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"chat": {"format": _FORMATS[fmt]}},
            "handlers": {
                "stderr": {"class": "logging.StreamHandler", "formatter": "chat"},
            },
            "loggers": {
                "realtime_chat": {"level": level.upper()},
            },
            "root": {"level": "WARNING", "handlers": ["stderr"]},
        }
    )
