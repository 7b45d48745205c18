"""Helpers for tagging saved results."""

from __future__ import annotations

import dataclasses
import hashlib
from typing import Any, Union

import numpy as np
import yaml


def _plain(obj: Any) -> Any:
    """Dataclasses, tuples and numpy values → YAML-safe builtins."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _plain(dataclasses.asdict(obj))
    if isinstance(obj, dict):
        return {str(k): _plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_plain(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    return obj


def config_hash(config: Union[str, dict, Any]) -> str:
    """SHA-256 of a config.

    A string is hashed as-is (raw YAML text). Dicts and config dataclasses
    are dumped to canonical YAML (sorted keys) first, so two configs that
    differ only in key order hash the same.
    """
    if isinstance(config, str):
        text = config
    else:
        text = yaml.safe_dump(_plain(config), sort_keys=True)
    return hashlib.sha256(text.encode('utf-8')).hexdigest()
