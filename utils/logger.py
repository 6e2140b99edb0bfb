import logging
from pathlib import Path
from typing import Optional

from config import get_constant

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

logger = logging.getLogger("toolheal")


def setup_logging(level: Optional[int] = None, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure root logging with a file handler and a console handler.

    Handler levels come from LOG_LEVEL_FILE / LOG_LEVEL_CONSOLE unless
    ``level`` is given, which then applies to the console.
    """
    log_file = Path(log_file or get_constant("LOG_FILE_APP"))
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(get_constant("LOG_LEVEL_FILE", "DEBUG"))
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level if level is not None else get_constant("LOG_LEVEL_CONSOLE", "INFO"))

    logging.basicConfig(
        level=logging.DEBUG,
        format=LOG_FORMAT,
        handlers=[file_handler, console_handler]
    )
    # Suppress verbose logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return logger
