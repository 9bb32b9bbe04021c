"""Load a ``.env`` file next to nightshift.yaml."""

import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file(base: Path | str | None = None) -> bool:
    """Load ``<base>/.env`` into os.environ.

    Variables already set in the environment win over the file.

    Returns:
        True if a file was found and loaded
    """
    env_path = Path(base) / ".env" if base is not None else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    loaded = load_dotenv(env_path, override=False)
    logger.debug("Loaded environment from %s", env_path)
    return loaded
