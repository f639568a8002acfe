import logging
import sys

from melanoma_service.core.config import settings

LOG_FORMAT = "[ %(asctime)s ] [%(levelname)s] [%(name)s:%(lineno)d] - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """
    Configure the root logger with a single stdout handler.
    Safe to call more than once (app startup + tests).
    """
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    # Avoid duplicate handlers when the app is created several times
    for handler in root.handlers:
        if getattr(handler, "_melanoma_service", False):
            return

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler._melanoma_service = True
    root.addHandler(console_handler)
