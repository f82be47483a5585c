# Pagesmith package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("PAGESMITH_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("pagesmith")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[PAGESMITH][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    # Provider traffic is noisy at DEBUG; keep it tunable on its own
    llm_level_name = (os.getenv("PAGESMITH_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("pagesmith.llm").setLevel(llm_level)


_configure_logging()
