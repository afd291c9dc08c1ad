import logging
import sys

from pythonjsonlogger import jsonlogger

# Library loggers that drown out retry cycle logs at INFO
_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiokafka")


def setup_logging(log_level: str = "INFO", service_name: str | None = None) -> None:
    """
    JSON logs on stdout, one object per line.

    Every record carries `service` when a name is given, so API and worker
    output can share one log stream. `extra={...}` fields (payment_id,
    attempt_number, ...) become top-level keys.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
            rename_fields={"levelname": "level", "name": "logger"},
            static_fields={"service": service_name} if service_name else {},
        )
    )
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
