# config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_FILE = "relayci.yaml"


class EngineConfig(BaseModel):
    """Engine settings: concurrency, slots and workspaces."""

    max_parallel_jobs: Optional[int] = Field(default=None, ge=1)
    slots: Optional[int] = Field(default=None, ge=1)
    slot_timeout: Optional[float] = Field(default=None, ge=0)
    workspace: Path = Path(".relayci/work")
    isolate_jobs: bool = True
    inherit_env: bool = True
    output_tail: int = Field(default=4000, ge=0)
    kill_grace: float = Field(default=5.0, ge=0)


_ENV_OVERRIDES = {
    "RELAYCI_MAX_PARALLEL_JOBS": "max_parallel_jobs",
    "RELAYCI_SLOTS": "slots",
    "RELAYCI_SLOT_TIMEOUT": "slot_timeout",
    "RELAYCI_WORKSPACE": "workspace",
}


def load_config(path: Optional[str | Path] = None, environ: Optional[dict] = None) -> EngineConfig:
    """Load engine configuration from a YAML file, then apply env overrides.

    Args:
        path: Optional path to config file. Falls back to RELAYCI_CONFIG env
            variable or 'relayci.yaml' in the current directory.
        environ: Environment mapping (defaults to os.environ).
    """
    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get("RELAYCI_CONFIG", DEFAULT_CONFIG_FILE))

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{config_path}: config root must be a mapping")
    elif path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # yaml keys may use dashes (max-parallel-jobs)
    data = {str(k).replace("-", "_"): v for k, v in data.items()}
    for var, key in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value not in (None, ""):
            data[key] = value
    return EngineConfig(**data)
