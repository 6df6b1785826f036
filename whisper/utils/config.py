"""Settings for the whisper package, with environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .error_handler import InvalidParameterError

DEFAULT_STATE_DIR = Path.home() / ".whisper" / "sessions"


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidParameterError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise InvalidParameterError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass
class WhisperConfig:
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)
    # Largest gap in message numbers a single header may make us skip
    max_skip: int = 1000
    # Skipped message keys retained per session after pruning
    max_skipped_keys: int = 100
    log_level: str = "INFO"
    # PBKDF2 rounds for encrypted session storage
    kdf_iterations: int = 100000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "WhisperConfig":
        env = os.environ if env is None else env
        defaults = cls()

        log_level = env.get("WHISPER_LOG_LEVEL", defaults.log_level).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise InvalidParameterError(f"WHISPER_LOG_LEVEL is not a logging level: {log_level!r}")

        state_dir = env.get("WHISPER_STATE_DIR")
        return cls(
            state_dir=Path(state_dir).expanduser() if state_dir else defaults.state_dir,
            max_skip=_int_env(env, "WHISPER_MAX_SKIP", defaults.max_skip, 0),
            max_skipped_keys=_int_env(env, "WHISPER_MAX_SKIPPED_KEYS", defaults.max_skipped_keys, 0),
            log_level=log_level,
            kdf_iterations=_int_env(env, "WHISPER_KDF_ITERATIONS", defaults.kdf_iterations, 1),
        )


def configure_logging(config: WhisperConfig):
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger('whisper').setLevel(config.log_level)
