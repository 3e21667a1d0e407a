import logging

import structlog

from geosocial.core.config import Settings
from geosocial.logging import NOISY_LOGGERS, configure_logging


def test_configure_logging_binds_service_and_quiets_sql():
    config = Settings(ENV="production", PROJECT_NAME="proximity-test", DB_ECHO=False)
    try:
        configure_logging(config)
        assert structlog.contextvars.get_contextvars()["service"] == "proximity-test"
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
        assert logging.getLogger("uvicorn.access").propagate is True
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()
