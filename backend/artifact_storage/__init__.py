# artifact_storage — Pluggable blob storage for artifacts
# ARTIFACT_STRATEGY selects the backend: "local" (default) or "s3".
import os
from typing import Dict, Optional

from errors import ServerError
from artifact_storage.base import ArtifactStrategy
from artifact_storage.local import LocalStrategy
from artifact_storage.s3 import S3Strategy

ARTIFACT_STRATEGY = os.getenv("ARTIFACT_STRATEGY", "local")

_strategies: Dict[str, ArtifactStrategy] = {}


def get_strategy(name: Optional[str] = None) -> ArtifactStrategy:
    """Return the (cached) strategy for a name, defaulting to the configured one."""
    name = name or ARTIFACT_STRATEGY
    if name not in _strategies:
        if name == "local":
            _strategies[name] = LocalStrategy()
        elif name == "s3":
            _strategies[name] = S3Strategy()
        else:
            raise ServerError(f"Unknown artifact strategy [{name}].", "error")
    return _strategies[name]


def set_strategy(name: str, strategy: ArtifactStrategy) -> None:
    """Register a strategy instance, replacing any cached one."""
    _strategies[name] = strategy


__all__ = ["ArtifactStrategy", "LocalStrategy", "S3Strategy", "get_strategy", "set_strategy"]
