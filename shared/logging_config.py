"""Centralized logging configuration with correlation and session id support."""

import logging
import sys
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger
from shared.constants import LOG_LEVEL

correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')
session_id_var: ContextVar[str] = ContextVar('session_id', default='')


class ContextFilter(logging.Filter):
    """Adds correlation_id and session_id to all log records"""

    def filter(self, record):
        record.correlation_id = correlation_id_var.get('')
        record.session_id = session_id_var.get('')
        return True


def setup_logging(service_name: str, level: str = LOG_LEVEL) -> None:
    """Sets up JSON logging on stdout"""
    logger = logging.getLogger()
    logger.setLevel(level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(correlation_id)s %(session_id)s %(message)s',
        rename_fields={
            'asctime': 'timestamp',
            'name': 'logger',
            'levelname': 'level',
        }
    )

    json_handler.setFormatter(formatter)
    json_handler.addFilter(ContextFilter())
    logger.addHandler(json_handler)
    logging.info(f"{service_name} logging configured", extra={"level": level.upper()})


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def set_session_id(session_id: str) -> None:
    session_id_var.set(session_id)
