"""
Logging configuration for the research service.
"""
import logging
import os
from logging.handlers import RotatingFileHandler

from research_app.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Framework and network libraries that flood DEBUG/INFO output.
NOISY_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "openai._base_client",
    "sse_starlette.sse",
    "asyncio",
)


def setup_logging(level: str = None, log_path: str = None) -> None:
    """
    Configures root logging with a console handler and a rotating file handler.
    Safe to call more than once; handlers are only installed the first time.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_path = log_path or settings.LOG_PATH

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    if not any(getattr(h, "_research_handler", False) for h in root.handlers):
        formatter = logging.Formatter(LOG_FORMAT)

        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._research_handler = True
        root.addHandler(console)

        if log_path:
            os.makedirs(log_path, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_path, "research.log"),
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            file_handler.setFormatter(formatter)
            file_handler._research_handler = True
            root.addHandler(file_handler)

    noisy_level = getattr(logging, settings.NOISY_LOG_LEVEL.upper(), logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

