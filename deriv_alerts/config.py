import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML config file into a plain dict.

    An empty file yields an empty config; any other non-mapping root is rejected.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    if cfg is None:
        return {}
    if not isinstance(cfg, dict):
        raise ValueError(f"Config root must be a mapping: {p}")
    return cfg


def env_or(section: Dict[str, Any], key: str, env_key: str, default_env: str) -> Optional[str]:
    """
    Resolve a setting that may be overridden from the environment.

    The env var name itself is configurable (``<key>_env``), matching how
    secrets such as bot tokens are wired in.
    """
    env_name = str(section.get(env_key, default_env))
    value = os.getenv(env_name)
    if value:
        return value
    raw = section.get(key)
    return str(raw) if raw is not None else None
