# server/utils/logger.py

import  os
import  sys
import  logging

COLORS = {
    'DEBUG':    '\033[94m',  # Blue
    'INFO':     '\033[92m',  # Green
    'WARNING':  '\033[93m',  # Yellow
    'ERROR':    '\033[91m',  # Red
    'CRITICAL': '\033[95m',  # Magenta
    'RESET':    '\033[0m',   # Reset color
}

LOG_FORMAT  = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColorFormatter(logging.Formatter):
    def __init__(self, fmt=LOG_FORMAT, datefmt=DATE_FORMAT, use_color=True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        text = super().format(record)
        if not self.use_color:
            return text
        color = COLORS.get(record.levelname, COLORS['RESET'])
        return f"{color}{text}{COLORS['RESET']}"


def _level_from_env():
    name = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def getLogger(name: str) -> logging.Logger:
    """Return a named logger with a single coloured stdout handler."""
    logger = logging.getLogger(name)
    if not any(getattr(h, "_energy_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))
        handler._energy_handler = True
        logger.addHandler(handler)
        logger.setLevel(_level_from_env())
    return logger
