import logging
import os
import sys
from typing import TextIO

ANSI = {
    "green": "\033[32m",
    "yellow": "\033[33m",
    "red": "\033[31m",
    "cyan": "\033[36m",
}
RESET = "\033[0m"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def use_color(stream: TextIO = sys.stdout) -> bool:
    """Colour only for a terminal, and never when NO_COLOR is set."""
    if os.getenv("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def paint(text: str, color: str, enabled: bool = True) -> str:
    if not enabled or color not in ANSI:
        return text
    return f"{ANSI[color]}{text}{RESET}"


def setup_logging() -> logging.Logger:
    # Logging: base level WARNING unless LOG_LEVEL says otherwise
    level = os.getenv("LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format=LOG_FORMAT)
    return logging.getLogger("cuda37-devtools")
