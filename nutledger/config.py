"""Settings read from the environment and an optional ``.env`` file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .bridge import DEFAULT_POLL_INTERVAL
from .mint import get_mints_from_env
from .reconciler import DEFAULT_QUERY_LIMIT
from .relay import DEFAULT_RELAYS, get_relays_from_env

DEFAULT_STATE_DIR = Path.home() / ".nutledger"


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        result = float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None
    if result <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return result


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        result = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if result <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return result


@dataclass
class Settings:
    """Wallet configuration.

    Attributes:
        nsec: Nostr private key (nsec1... or hex) owning the wallet events
        mint_urls: Mints to register when the wallet has none (CASHU_MINTS)
        relays: Relay URLs (NOSTR_RELAYS)
        state_dir: Directory for the per-identity state file
        poll_interval: Seconds between mint quote status checks
        query_limit: Result cap per relay query
        log_level: Root log level name
    """

    nsec: str | None = None
    mint_urls: list[str] = field(default_factory=list)
    relays: list[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    state_dir: Path = DEFAULT_STATE_DIR
    poll_interval: float = DEFAULT_POLL_INTERVAL
    query_limit: int = DEFAULT_QUERY_LIMIT
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> Settings:
        """Build settings from the environment, loading ``.env`` first.

        Variables already set in the environment win over the file.

        Raises:
            ValueError: If a numeric variable is malformed
        """
        load_dotenv(env_file or find_dotenv(usecwd=True))
        state_dir = os.getenv("NUTLEDGER_STATE_DIR")
        return cls(
            nsec=os.getenv("NSEC") or None,
            mint_urls=get_mints_from_env(),
            relays=get_relays_from_env() or list(DEFAULT_RELAYS),
            state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
            poll_interval=_float_env("NUTLEDGER_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            query_limit=_int_env("NUTLEDGER_QUERY_LIMIT", DEFAULT_QUERY_LIMIT),
            log_level=os.getenv("NUTLEDGER_LOG_LEVEL", "WARNING").upper(),
        )

    @property
    def log_level_number(self) -> int:
        level = logging.getLevelName(self.log_level)
        if not isinstance(level, int):
            raise ValueError(f"NUTLEDGER_LOG_LEVEL is not a log level: {self.log_level!r}")
        return level
