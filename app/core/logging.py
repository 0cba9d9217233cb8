import logging
import sys
import structlog
from pythonjsonlogger import jsonlogger

_configured = False


def setup_logging(level: str = "INFO", json_output: bool = True):
    """Structured logging setup: JSON on the root handler, structlog on top"""
    global _configured

    if json_output:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        )
        renderer = structlog.processors.JSONRenderer()
    else:
        formatter = logging.Formatter('%(levelname)-8s %(name)s: %(message)s')
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        _configured = True
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Quiet the per-statement engine chatter
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return structlog.get_logger()
