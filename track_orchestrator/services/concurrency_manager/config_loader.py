import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Directory holding the JSON configuration files (data only, no code).
CONFIG_DIR = Path(__file__).resolve().parent.parent.parent / "configs"

# Default file read by get_section.
DEFAULT_CONFIG_NAME = "orchestrator"

# Per-file cache to avoid re-reading on every lookup.
_CONFIG_CACHE: Dict[str, Dict[str, Any]] = {}


def load_config(name: str = DEFAULT_CONFIG_NAME, *, use_cache: bool = True) -> Dict[str, Any]:
    """
    Load a JSON configuration file by name (without extension).

    Example: load_config("orchestrator") -> track_orchestrator/configs/orchestrator.json
    """
    if use_cache and name in _CONFIG_CACHE:
        return _CONFIG_CACHE[name]

    config_path = CONFIG_DIR / f"{name}.json"
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
        if use_cache:
            _CONFIG_CACHE[name] = data
        return data
    except FileNotFoundError:
        logger.warning(f"[config_loader] File not found: {config_path}")
    except (OSError, ValueError) as exc:
        logger.warning(f"[config_loader] Failed to load {config_path}: {exc}")
    return {}


def get_section(
    section: str,
    default: Optional[Dict[str, Any]] = None,
    name: str = DEFAULT_CONFIG_NAME,
) -> Dict[str, Any]:
    """Return one top-level section of a config file, or `default` when absent."""
    value = load_config(name).get(section)
    if isinstance(value, dict) and value:
        return dict(value)
    return dict(default or {})


def reset_cache() -> None:
    """Clear the in-memory cache (useful for tests)."""
    _CONFIG_CACHE.clear()
