"""
config.py — Rotation settings

Settings come from the environment variables the shell rotation script read,
then CLI flags override them.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError

DEFAULT_WORK_DIR = "./cert-rotation-workspace"
DEFAULT_ISTIO_NAMESPACE = "istio-system"
DEFAULT_PROBE_NAMESPACE = "cert-rotation-test"

# env var -> field name
_ENV_MAP = {
    "WORK_DIR": "work_dir",
    "ISTIO_NAMESPACE": "istio_namespace",
    "PROBE_NAMESPACE": "probe_namespace",
    "WORKLOAD_NAMESPACE": "workload_namespace",
    "CERT_VALIDITY_DAYS": "root_validity_days",
    "INTERMEDIATE_VALIDITY_DAYS": "intermediate_validity_days",
    "SETTLE_SECONDS": "settle_seconds",
    "VERIFY_SECONDS": "verify_seconds",
    "ROLLOUT_TIMEOUT_SECONDS": "rollout_timeout",
    "KEY_SIZE": "key_size",
}


@dataclass(frozen=True)
class RotationConfig:
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    istio_namespace: str = DEFAULT_ISTIO_NAMESPACE
    probe_namespace: str = DEFAULT_PROBE_NAMESPACE
    workload_namespace: str = "default"
    root_validity_days: int = 3650
    intermediate_validity_days: int = 365
    settle_seconds: int = 30
    verify_seconds: int = 30
    rollout_timeout: int = 300
    key_size: int = 4096

    def __post_init__(self) -> None:
        for name in ("root_validity_days", "intermediate_validity_days", "rollout_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("settle_seconds", "verify_seconds"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative, got {getattr(self, name)}")
        if self.key_size < 2048:
            raise ConfigurationError(f"key_size must be at least 2048 bits, got {self.key_size}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RotationConfig":
        """Build a config from environment variables, falling back to defaults.

        Args:
            environ: Mapping to read instead of ``os.environ`` (used by tests).

        Returns:
            RotationConfig: Validated settings.

        Raises:
            ConfigurationError: If a numeric variable is not an integer.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for var, field_name in _ENV_MAP.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            values[field_name] = _coerce(field_name, raw, var)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "RotationConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes = {}
        for k, v in overrides.items():
            if v is None or k not in known:
                continue
            changes[k] = Path(v) if k == "work_dir" else v
        return replace(self, **changes)


def _coerce(field_name: str, raw: str, source: str) -> Any:
    if field_name == "work_dir":
        return Path(raw)
    if field_name.endswith("namespace"):
        return raw
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{source}={raw!r} is not an integer") from None
