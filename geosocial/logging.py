import logging
import sys
import structlog
from geosocial.core.config import Settings, settings

# Libraries that log every query or connection at INFO/DEBUG
NOISY_LOGGERS = ["sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio"]


def configure_logging(config: Settings = settings):
    """
    Configures structlog to intercept standard library logs and setup
    JSON rendering for production or Console rendering for local development.

    Every event carries the service name so proximity logs can be told apart
    from the auth layer's when both ship to the same sink.
    """

    # Determine if we are in local dev or production
    # config.ENV is 'development' by default in config.py
    is_local = config.ENV.lower() == "development"

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
    ]

    if is_local:
        # Human-readable for local development
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer()
        ]
    else:
        # JSON for production
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=config.PROJECT_NAME)

    # Intercept standard library logging
    # DB_ECHO turns the root level down to DEBUG so SQL statements show up
    level = logging.DEBUG if config.DB_ECHO else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if not config.DB_ECHO:
        for _log in NOISY_LOGGERS:
            logging.getLogger(_log).setLevel(logging.WARNING)

    # Reconfigure uvicorn loggers to use structlog
    # This ensures uvicorn access logs and errors are formatted consistently
    for _log in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        logger = logging.getLogger(_log)
        logger.handlers = [] # Clear existing handlers
        logger.propagate = True # Let it propagate to the root logger we just configured
