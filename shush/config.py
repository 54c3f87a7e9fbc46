"""
config.py: runtime settings from SHUSH_* environment variables.

CLI flags override whatever the environment says (see run_node).
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .keystore import GRACE_PERIOD
from .rotation import ROTATION_INTERVAL

ENV_PREFIX = "SHUSH_"


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    rotation_interval: float = float(ROTATION_INTERVAL)
    grace_period: float = float(GRACE_PERIOD)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default):
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return type(default)(raw)
            except ValueError as exc:
                raise ValueError(f"{ENV_PREFIX}{name}={raw!r} is not a valid {type(default).__name__}") from exc

        settings = cls(
            host=get("HOST", defaults.host),
            port=get("PORT", defaults.port),
            rotation_interval=get("ROTATION_INTERVAL", defaults.rotation_interval),
            grace_period=get("GRACE_PERIOD", defaults.grace_period),
            log_level=get("LOG_LEVEL", defaults.log_level).upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if self.rotation_interval <= 0 or self.grace_period <= 0:
            raise ValueError("rotation interval and grace period must be positive")
        if self.grace_period >= self.rotation_interval:
            raise ValueError("grace period must be shorter than the rotation interval")

    def override(self, **changes) -> "Settings":
        """Copy with non-None values replaced (CLI flags)."""
        settings = replace(self, **{k: v for k, v in changes.items() if v is not None})
        settings.validate()
        return settings
