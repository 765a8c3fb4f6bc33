import json
import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/cosign.log")
AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "/tmp/cosign-audit.jsonl")


class AuditFormatter(logging.Formatter):
    """One JSON object per line from the `audit` payload of a transition record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "audit", None)
        if payload is None:
            payload = {"message": record.getMessage()}
        return json.dumps(payload, default=str, sort_keys=True)


class AuditOnly(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return hasattr(record, "audit")


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "audit": {"()": AuditFormatter},
    },
    "filters": {
        "audit_only": {"()": AuditOnly},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
        "audit_file": {
            "class": "logging.FileHandler",
            "formatter": "audit",
            "filters": ["audit_only"],
            "filename": AUDIT_LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "cosign": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"],
            "propagate": False,
        },
        # Transitions also land in their own JSON lines file
        "cosign.audit": {
            "level": "INFO",
            "handlers": ["audit_file"],
            "propagate": True,
        },
        # Quiet the libraries
        "uvicorn.access": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "httpx": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
        "xrpl": {
            "level": "WARNING",
            "handlers": ["console", "file"],
            "propagate": False,
        },
    },
    "root": {
        "level": "WARNING",
        "handlers": ["console", "file"],
    },
}


def setup_logging():
    """Apply the logging configuration."""
    logging.config.dictConfig(LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
