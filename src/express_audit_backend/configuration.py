from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [_HERE.parent / "config/config.yaml"] + [parent / "config/config.yaml" for parent in _HERE.parents[:3]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in broken installs
    raise FileNotFoundError("Default config.yaml could not be located; the package data was not installed.")


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """Merge ``overrides`` onto the packaged defaults and resolve environment lookups.

    ``.env`` is loaded first so ``oc.env`` interpolations see its values.  The
    defaults are struct-locked, so an override naming an unknown key raises
    instead of being silently ignored.
    """
    load_dotenv()
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    OmegaConf.resolve(merged)
    return merged


def is_debug(settings: DictConfig) -> bool:
    return str(settings.log_level).lower() == "debug"
