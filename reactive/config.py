"""
Engine configuration.

    config = EngineConfig.from_env()        # RX_PUSH_GUARD=field, ...
    configure_logging(config)
"""

import logging
import os
from dataclasses import dataclass, fields


PUSH_GUARDS = ("group", "field")

_LOGGERS = ("reactive", "store", "sync")


@dataclass
class EngineConfig:
    """Tunables shared by server sessions and client runtimes.

    - animation_margin: seconds added to an animation's duration before the
      entering fallback / exiting timer fires.
    - default_duration: animation duration used when a field's AnimatedConfig
      does not set one.
    - push_guard: "group" drops a server push while any field of the same
      group is pending; "field" only checks the pushed field.
    - async_workers: thread pool size for synchronous computes of async nodes.
    - log_level: level applied by configure_logging().
    """
    animation_margin: float = 0.05
    default_duration: float = 0.2
    push_guard: str = "group"
    async_workers: int = 4
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.push_guard not in PUSH_GUARDS:
            raise ValueError(
                f"push_guard must be one of {PUSH_GUARDS}, got {self.push_guard!r}"
            )
        if self.animation_margin < 0 or self.default_duration < 0:
            raise ValueError("animation timings must be non-negative")
        if self.async_workers < 1:
            raise ValueError("async_workers must be at least 1")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls, prefix: str = "RX_") -> "EngineConfig":
        """Build a config from environment variables (RX_PUSH_GUARD, ...)."""
        kwargs = {}
        for f in fields(cls):
            raw = os.getenv(prefix + f.name.upper())
            if raw is None:
                continue
            if f.type in (float, "float"):
                kwargs[f.name] = float(raw)
            elif f.type in (int, "int"):
                kwargs[f.name] = int(raw)
            else:
                kwargs[f.name] = raw
        return cls(**kwargs)


def configure_logging(config: EngineConfig) -> None:
    """Apply config.log_level to the engine's package loggers."""
    level = logging.getLevelName(config.log_level.upper())
    for name in _LOGGERS:
        logging.getLogger(name).setLevel(level)
