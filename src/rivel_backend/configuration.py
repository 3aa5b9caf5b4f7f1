from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"


@lru_cache(maxsize=1)
def _packaged_defaults() -> DictConfig:
    if not CONFIG_PATH.is_file():  # pragma: no cover - broken install
        raise FileNotFoundError(f"Packaged defaults missing: {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    """Plain-dict copy of the packaged defaults, interpolations left unresolved unless asked."""
    return OmegaConf.to_container(_packaged_defaults(), resolve=resolve)  # type: ignore[return-value]


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime settings: packaged defaults, environment, then overrides.

    The defaults are struct-locked, so overriding a key that does not exist
    raises instead of being silently ignored.
    """
    load_dotenv()
    settings = OmegaConf.create(get_default_config_container())
    OmegaConf.set_struct(settings, True)

    if overrides:
        settings = OmegaConf.merge(settings, overrides)
    OmegaConf.resolve(settings)
    return settings
