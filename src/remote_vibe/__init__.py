# Remote Vibe session server package init
import logging
import os

__version__ = "0.1.0"


def _configure_logging() -> None:
    level_name = (os.getenv("REMOTE_VIBE_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("remote_vibe")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[REMOTE_VIBE][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    llm_level_name = (os.getenv("REMOTE_VIBE_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("remote_vibe.llm").setLevel(llm_level)


_configure_logging()
