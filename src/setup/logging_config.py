import logging
import logging.config

_CONTEXT_KEYS = (
    "task_id",
    "user_id",
    "tool_name",
    "correlation_id",
    "state",
    "error_kind",
    "attempt",
    "delay",
)


class ContextFormatter(logging.Formatter):
    """Appends the well-known ``extra={...}`` fields to each line."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}" for key in _CONTEXT_KEYS if hasattr(record, key)
        ]
        if context:
            line = f"{line} [{' '.join(context)}]"
        return line


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "context": {
                    "()": ContextFormatter,
                    "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "context",
                }
            },
            "loggers": {
                "src": {"handlers": ["console"], "level": level.upper(), "propagate": False},
            },
        }
    )


def mask_token(token: str | None) -> str:
    if not token:
        return "<none>"
    return f"{token[:6]}…"
