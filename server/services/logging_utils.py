# services/logging_utils.py
import os
import logging
import logging.config
from pathlib import Path
import re

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%d-%m-%Y %H:%M:%S"

# Third-party loggers that flood the console at DEBUG
QUIET_LOGGERS = {"aioice": "WARNING", "aiortc": "INFO", "websockets": "INFO"}


class RedactingFilter(logging.Filter):
    """
    Masks ICE credentials and DTLS fingerprints that can show up when
    signaling payloads or SDP blobs are logged.
    """

    SENSITIVE_PATTERNS = [
        re.compile(r'(a=ice-pwd:)\S+'),
        re.compile(r'(a=ice-ufrag:)\S+'),
        re.compile(r'(a=fingerprint:\S+ )\S+'),
        re.compile(r"""(["']?(?:usernameFragment|password|fingerprint)["']?\s*[:=]\s*["']?)[^"',}\s]+"""),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        text = record.getMessage()
        for pattern in self.SENSITIVE_PATTERNS:
            text = pattern.sub(r"\1***", text)
        record.msg, record.args = text, ()
        return True


def _handler(cls: str, level: str, **options) -> dict:
    return {"class": cls, "formatter": "default", "filters": ["redact"], "level": level, **options}


def setup_logging(level: str = None, logs_dir: str = None, log_file: str = None) -> None:
    """
    Install console, daily-rotating and error-only file handlers on the root
    logger.

    Unset arguments fall back to LOG_LEVEL, LOG_DIR and LOG_FILE from the
    environment, then to "INFO", "logs" and "server.log".
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logs_dir = Path(logs_dir or os.getenv("LOG_DIR", "logs"))
    log_file = log_file or os.getenv("LOG_FILE", "server.log")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"redact": {"()": RedactingFilter}},
        "formatters": {"default": {"format": LOG_FORMAT, "datefmt": DATE_FORMAT}},
        "handlers": {
            "console": _handler("logging.StreamHandler", level),
            "file": _handler("logging.handlers.TimedRotatingFileHandler", level,
                             filename=str(logs_dir / log_file), when="midnight",
                             backupCount=14, encoding="utf-8"),
            "errors": _handler("logging.handlers.RotatingFileHandler", "ERROR",
                               filename=str(logs_dir / "server-error.log"),
                               maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"),
        },
        "loggers": {name: {"level": lvl} for name, lvl in QUIET_LOGGERS.items()},
        "root": {"level": level, "handlers": ["console", "file", "errors"]},
    })
