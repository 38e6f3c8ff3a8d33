import logging

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Set up console logging for the intake_engine package."""
    logger = logging.getLogger("intake_engine")
    logger.setLevel(level.upper())

    # Remove existing handlers so a reload does not log every line twice
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level.upper())
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    return logger
