"""
Centralized path configuration for studio-inbox.

Supports:
- Local config: ./config/*.yaml
- External overlay: CONFIG_DIR=/path/to/private/config
- Fallback to .example.yaml when .yaml missing

Usage:
    from studio_inbox.core.paths import get_config_path

    # Get config file with fallback
    rules_path = get_config_path("inbox_rules.yaml")

    # Required config (raises if not found)
    accounts_path = get_config_path("accounts.yaml", required=True)
"""
import os
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# From studio_inbox/core/paths.py -> studio_inbox/core -> studio_inbox -> repo root
_REPO_ROOT = Path(__file__).parent.parent.parent
_DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"

# Environment-configurable path
CONFIG_DIR = Path(os.getenv("CONFIG_DIR", str(_DEFAULT_CONFIG_DIR)))


def _with_example(directory: Path, filename: str) -> list:
    candidates = [directory / filename]
    if filename.endswith('.yaml'):
        candidates.append(directory / filename.replace('.yaml', '.example.yaml'))
    return candidates


def get_config_path(filename: str, required: bool = False) -> Optional[Path]:
    """
    Resolve config file path with fallback logic.

    Resolution order:
    1. CONFIG_DIR / filename
    2. CONFIG_DIR / filename.example.yaml (if .yaml)
    3. Default config dir / filename
    4. Default config dir / filename.example.yaml

    Args:
        filename: Config filename (e.g., "inbox_rules.yaml")
        required: If True, raise FileNotFoundError when not found

    Returns:
        Path to config file, or None if not found and not required

    Raises:
        FileNotFoundError: If required=True and file not found
    """
    candidates = _with_example(CONFIG_DIR, filename)
    if CONFIG_DIR != _DEFAULT_CONFIG_DIR:
        candidates.extend(_with_example(_DEFAULT_CONFIG_DIR, filename))

    for path in candidates:
        if path.exists():
            logger.debug(f"Config '{filename}' resolved to: {path}")
            return path

    if required:
        searched = [str(c) for c in candidates]
        raise FileNotFoundError(
            f"Required config file '{filename}' not found.\n"
            f"Searched: {searched}\n"
            f"Hint: Copy {filename.replace('.yaml', '.example.yaml')} to {filename} and customize it."
        )

    logger.debug(f"Config '{filename}' not found (optional)")
    return None


def get_repo_root() -> Path:
    """Get the repository root directory."""
    return _REPO_ROOT
