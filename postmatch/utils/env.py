"""Local .env loading for development runs."""

import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(path: Optional[Union[str, Path]] = None) -> bool:
    """Load a .env file into os.environ without overwriting existing variables.

    WHAT: Reads DATABASE_URL, SHOPIFY_API_SECRET, ... from a local .env
    WHY: Deployment-injected variables always win over a developer's file

    Args:
        path: Explicit file; defaults to the nearest .env found from the cwd

    Returns:
        True if a file was found and loaded
    """
    dotenv_path = str(path) if path is not None else find_dotenv(usecwd=True)
    if not dotenv_path:
        logger.debug("[ENV] No .env file found")
        return False

    loaded = load_dotenv(dotenv_path, override=False)
    if loaded:
        logger.info(f"[ENV] Loaded {dotenv_path} (existing variables were NOT overwritten)")
    return loaded
