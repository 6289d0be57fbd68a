import logging
from logging.handlers import RotatingFileHandler
import os

from fleet_guardian.config import LOG_DIR, LOG_LEVEL, LOG_TO_FILE

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name, filename=None):
    """
    Named pipeline logger: stream output always, plus a rotating file under
    LOG_DIR when file logging is enabled and a filename is given.
    """
    logger = logging.getLogger(f"fleet_guardian.{name}")
    logger.setLevel(LOG_LEVEL)

    # Avoid duplicated handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(FORMAT)

    if LOG_TO_FILE and filename:
        os.makedirs(LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, filename),
            maxBytes=5_000_000,
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


class DeviceLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the component tag and device id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['component']}] device={self.extra['device_id']} {msg}", kwargs


def device_logger(logger, component, device_id):
    return DeviceLogAdapter(logger, {"component": component, "device_id": device_id})
