"""Console logging for the server and the CLI."""

import logging
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s'
DATE_FORMAT = '%H:%M:%S'


class ColoredFormatter(logging.Formatter):
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Color a copy so other handlers see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, '')
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def configure_logging(level: str = "INFO", color: Optional[bool] = None) -> logging.Handler:
    """
    Install a single console handler on the root logger.

    Calling it again replaces the handler instead of adding a second one.
    """
    if color is None:
        color = sys.stderr.isatty()

    handler = logging.StreamHandler()
    formatter_cls = ColoredFormatter if color else logging.Formatter
    handler.setFormatter(formatter_cls(LOG_FORMAT, datefmt=DATE_FORMAT))

    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return handler
