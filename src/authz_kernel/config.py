"""
Engine configuration.

Settings are a pydantic model so they can be built explicitly in code or read
from the environment with ``EngineSettings.from_env()``.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

_FALSE_VALUES = {"0", "false", "no", "off"}
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _FALSE_VALUES:
        return False
    if value in _TRUE_VALUES:
        return True
    # Unrecognised values keep the default; caching stays on unless explicitly disabled.
    return default


class EngineSettings(BaseModel):
    """Runtime settings of a ``PolicyEngine``."""

    model_config = ConfigDict(frozen=True)

    caching_enabled: bool = Field(True, description="Memoize decisions in the TTL cache")
    cache_ttl_seconds: float = Field(300.0, gt=0, description="Maximum age of a cached decision")
    sweep_interval_seconds: float = Field(
        60.0, gt=0, description="Interval of the background expired-key sweep"
    )
    max_depth: int = Field(32, ge=1, description="Maximum nesting of recursive checks")
    deduplicate_inflight: bool = Field(
        True, description="Collapse concurrent identical cache misses into one evaluation"
    )
    debug: bool = Field(False, description="Log a structured trace for every decision")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from ``AUTHZ_*`` environment variables."""
        env = os.environ if env is None else env
        values = {
            "caching_enabled": _env_flag(env, "AUTHZ_CACHING_ENABLED", True),
            "deduplicate_inflight": _env_flag(env, "AUTHZ_DEDUPLICATE_INFLIGHT", True),
            "debug": _env_flag(env, "AUTHZ_DEBUG", False),
        }
        numeric = {
            "cache_ttl_seconds": "AUTHZ_CACHE_TTL_SEC",
            "sweep_interval_seconds": "AUTHZ_CACHE_SWEEP_SEC",
            "max_depth": "AUTHZ_MAX_DEPTH",
        }
        for field_name, var in numeric.items():
            raw = env.get(var, "").strip()
            if raw:
                values[field_name] = raw
        return cls(**values)


__all__ = ["EngineSettings"]
