import logging
import sys
from datetime import datetime, timezone

PACKAGE_LOGGER = "agentability_agent"


class BracketFormatter(logging.Formatter):
    """
    [ 2025-01-06T05:32:41Z ] : INFO : agentability_agent.ssrf : Message
    """
    def format(self, record):
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        line = f"[ {ts} ] : {record.levelname} : {record.name} : {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level="INFO", stream=None):
    """Attach one stdout handler to the package logger; safe to call repeatedly."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    # Avoid duplicate handlers when the app is reloaded
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(BracketFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
