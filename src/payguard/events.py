"""
Event log for contract events.

Events are the only durable external signal of state change. The log keeps
them in memory with an HMAC hash chain and, when a path is configured,
appends each committed event as a JSONL line so off-chain indexers can
replay them. Tampering with the file is detected during reads.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional


@dataclass
class Event:
    """A single contract event."""

    name: str
    address: str
    args: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    index: int = 0
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "args": self.args,
            "timestamp": self.timestamp,
            "index": self.index,
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"), default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Unserializable event value: {type(value).__name__}")


def _ensure_private_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def default_key_path(path: Path) -> Path:
    """HMAC key file kept next to an event log."""
    return path.with_name(path.name + ".key")


class EventLog:
    """Append-only, hash-chained event log.

    The HMAC key is taken from ``hmac_key``, then ``PAYGUARD_EVENT_HMAC_KEY``,
    then the key file (created on first use). A log without a file sink uses
    a throwaway key.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        hmac_key: Optional[str] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path
        self.key_path: Optional[Path] = None
        self._lock_path: Optional[Path] = None
        if self.path is not None:
            self.key_path = key_path or default_key_path(self.path)
            self._lock_path = self.path.with_name(self.path.name + ".lock")
            _ensure_private_file(self.path)
            _ensure_private_file(self._lock_path)
        self._hmac_key = self._load_or_create_key(hmac_key)
        self._events: list[Event] = []
        self._last_hash = ""
        if self.path is not None:
            self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self, explicit: Optional[str]) -> bytes:
        env_key = explicit or os.getenv("PAYGUARD_EVENT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path is None:
            return secrets.token_hex(32).encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        _ensure_private_file(self.key_path)
        self.key_path.write_bytes(key)
        return key

    @contextmanager
    def _file_lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if line.strip():
                    last = json.loads(line).get("event_hash", "")
        return last

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_json_default)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _chain(self, events: Iterable[Event]) -> list[str]:
        lines = []
        for event in events:
            event.index = len(self._events)
            event.prev_hash = self._last_hash or None
            event.event_hash = self._event_hash(event.payload(), self._last_hash)
            self._last_hash = event.event_hash
            self._events.append(event)
            lines.append(event.to_json())
        return lines

    def append(self, events: Iterable[Event]) -> None:
        """Commit a batch of events (one transaction's worth)."""
        if self.path is None:
            self._chain(events)
            return

        # Other writers may have extended the file since our last append.
        with self._file_lock():
            self._last_hash = self._scan_last_hash()
            lines = self._chain(events)
            if lines:
                with open(self.path, "a") as f:
                    f.write("\n".join(lines) + "\n")
                    f.flush()
                    os.fsync(f.fileno())

    def filter(self, name: Optional[str] = None, address: Optional[str] = None) -> list[Event]:
        return [
            e
            for e in self._events
            if (name is None or e.name == name) and (address is None or e.address == address)
        ]

    def last(self, name: Optional[str] = None, address: Optional[str] = None) -> Optional[Event]:
        matches = self.filter(name=name, address=address)
        return matches[-1] if matches else None

    def read_file(self) -> list[Event]:
        """Read and verify the JSONL sink."""
        if self.path is None or not self.path.exists():
            return []
        return read_event_file(self.path, self._hmac_key.decode())


def read_event_file(path: Path, hmac_key: str) -> list[Event]:
    """Load a JSONL event file, verifying the hash chain."""
    log = EventLog(hmac_key=hmac_key)
    events: list[Event] = []
    expected_prev = ""
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            raw = json.loads(line)
            event = Event(**{k: v for k, v in raw.items() if k in Event.__dataclass_fields__})
            prev_hash = event.prev_hash or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Event chain broken: previous hash mismatch")
            expected = log._event_hash(event.payload(), prev_hash)
            if not hmac.compare_digest(expected, event.event_hash or ""):
                raise RuntimeError("Event chain broken: event hash mismatch")
            expected_prev = event.event_hash or ""
            events.append(event)
    return events
