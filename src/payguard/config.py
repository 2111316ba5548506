"""Runtime configuration, read from ``PAYGUARD_*`` environment variables."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_CHAIN_ID = 31337
DOMAIN_NAME = "PayGuard"
DOMAIN_VERSION = "1"
AGENT_DOMAIN_NAME = "PayGuard UserAgent"
AGENT_DOMAIN_VERSION = "1"
DEFAULT_MAX_UTILIZATION_BPS = 8_000


@dataclass
class ChainConfig:
    """Settings for a simulated PayGuard chain."""

    chain_id: int = DEFAULT_CHAIN_ID
    genesis_time: Optional[int] = None
    max_utilization_bps: int = DEFAULT_MAX_UTILIZATION_BPS
    event_log_path: Optional[Path] = None
    event_hmac_key: Optional[str] = None
    event_key_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.chain_id <= 0:
            raise ValueError("chain_id must be > 0")
        if not 0 < self.max_utilization_bps <= 10_000:
            raise ValueError("max_utilization_bps must be in (0, 10000]")
        if self.genesis_time is not None and self.genesis_time < 0:
            raise ValueError("genesis_time must be >= 0")

    def resolved_genesis_time(self) -> int:
        return int(time.time()) if self.genesis_time is None else int(self.genesis_time)

    @classmethod
    def from_env(cls) -> "ChainConfig":
        chain_id = os.getenv("PAYGUARD_CHAIN_ID")
        genesis = os.getenv("PAYGUARD_GENESIS_TIME")
        max_util = os.getenv("PAYGUARD_MAX_UTILIZATION_BPS")
        log_path = os.getenv("PAYGUARD_EVENT_LOG")
        key_path = os.getenv("PAYGUARD_EVENT_KEY_FILE")
        return cls(
            chain_id=int(chain_id) if chain_id else DEFAULT_CHAIN_ID,
            genesis_time=int(genesis) if genesis else None,
            max_utilization_bps=int(max_util) if max_util else DEFAULT_MAX_UTILIZATION_BPS,
            event_log_path=Path(log_path).expanduser() if log_path else None,
            event_hmac_key=os.getenv("PAYGUARD_EVENT_HMAC_KEY") or None,
            event_key_path=Path(key_path).expanduser() if key_path else None,
        )
