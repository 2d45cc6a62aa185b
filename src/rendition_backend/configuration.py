from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]


def _locate_config() -> Optional[Path]:
    explicit = os.environ.get("RENDITION_CONFIG")
    if explicit:
        return Path(explicit)
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    config_path = _locate_config()
    if config_path is None or not config_path.exists():
        raise FileNotFoundError(f"Default config not found (searched {config_path or _CANDIDATE_CONFIG_PATHS})")
    return OmegaConf.load(config_path)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides over the default config.

    The base is put in struct mode first, so an override naming a key that does
    not exist in config.yaml raises instead of being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


def configure_logging(config: DictConfig) -> None:
    logging.basicConfig(
        level=str(config.logging.level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
