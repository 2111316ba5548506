"""
Execution substrate for PayGuard contracts.

A ``Chain`` owns the block clock, deployed contracts and the event log.
Every state-mutating contract method runs inside ``Chain.transaction()``:
callers are serialized on a re-entrant lock, and if the method raises, all
contract storage, deployments and pending events are restored to the
snapshot taken on entry. Transactions nest as savepoints, so an outer
operation may catch an inner failure and keep its own effects.

Contract methods receive the caller explicitly as ``sender`` (the
transaction's msg.sender). Cross-contract calls pass ``sender=self.address``.
"""

from __future__ import annotations

import copy
import functools
import inspect
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Optional, Type, TypeVar

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from .config import ChainConfig
from .errors import CallDecodeError, InvalidAddress, ReentrantCall
from .events import Event, EventLog
from .typed_data import decode_call, is_zero_address, normalize_address

logger = logging.getLogger(__name__)

C = TypeVar("C", bound="Contract")


def external(fn: Callable) -> Callable:
    """Mark a contract method as externally callable and run it atomically.

    The caller is passed as the ``sender`` keyword and is checksummed before
    the method sees it.
    """

    @functools.wraps(fn)
    def wrapper(self: "Contract", *args, **kwargs):
        if kwargs.get("sender") is not None:
            kwargs["sender"] = normalize_address(kwargs["sender"])
        with self.chain.transaction():
            return fn(self, *args, **kwargs)

    wrapper.__external__ = True  # type: ignore[attr-defined]
    return wrapper


def nonreentrant(fn: Callable) -> Callable:
    """Reject re-invocation of any guarded method while one is executing."""

    @functools.wraps(fn)
    def wrapper(self: "Contract", *args, **kwargs):
        if self._entered:
            raise ReentrantCall(f"Reentrant call into {type(self).__name__}.{fn.__name__}")
        self._entered = True
        try:
            return fn(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper


class Contract:
    """Base class for contracts. All mutable state lives in ``self.storage``."""

    def __init__(self, chain: "Chain", address: str, deployer: str):
        self.chain = chain
        self.address = address
        self.deployer = deployer
        self._entered = False
        self.storage: Any = None

    @property
    def now(self) -> int:
        return self.chain.now

    def emit(self, name: str, **args: Any) -> None:
        self.chain.emit(self.address, name, args)

    def at(self, address: str, expected: Type[C]) -> C:
        return self.chain.get(address, expected)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address}>"


class Chain:
    """In-process ledger: clock, deployments, atomic transactions, events."""

    def __init__(self, config: Optional[ChainConfig] = None):
        self.config = config or ChainConfig()
        self.chain_id = self.config.chain_id
        self._now = self.config.resolved_genesis_time()
        self._contracts: dict[str, Contract] = {}
        self._deploy_nonces: dict[str, int] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._pending: list[Event] = []
        self.events = EventLog(
            self.config.event_log_path,
            hmac_key=self.config.event_hmac_key,
            key_path=self.config.event_key_path,
        )

    # -- clock -----------------------------------------------------------

    @property
    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        with self._lock:
            self._now += int(seconds)
            return self._now

    def set_time(self, timestamp: int) -> int:
        with self._lock:
            if timestamp < self._now:
                raise ValueError(f"Cannot move the clock backwards ({timestamp} < {self._now})")
            self._now = int(timestamp)
            return self._now

    # -- transactions ----------------------------------------------------

    def _snapshot(self) -> dict[str, Any]:
        return {
            "storage": {addr: copy.deepcopy(c.storage) for addr, c in self._contracts.items()},
            "nonces": dict(self._deploy_nonces),
            "pending": len(self._pending),
        }

    def _restore(self, snapshot: dict[str, Any]) -> None:
        saved = snapshot["storage"]
        for addr in list(self._contracts):
            if addr not in saved:
                del self._contracts[addr]
        for addr, storage in saved.items():
            self._contracts[addr].storage = storage
        self._deploy_nonces = snapshot["nonces"]
        del self._pending[snapshot["pending"]:]

    @contextmanager
    def transaction(self):
        """Run a block atomically; nested blocks act as savepoints."""
        with self._lock:
            snapshot = self._snapshot()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth -= 1
            if self._depth == 0 and self._pending:
                committed, self._pending = self._pending, []
                self.events.append(committed)

    def emit(self, address: str, name: str, args: dict[str, Any]) -> None:
        self._pending.append(Event(name=name, address=address, args=dict(args), timestamp=self._now))

    # -- deployments -----------------------------------------------------

    def _next_address(self, deployer: str) -> str:
        nonce = self._deploy_nonces.get(deployer, 0)
        self._deploy_nonces[deployer] = nonce + 1
        seed = abi_encode(["address", "uint256", "uint256"], [deployer, nonce, self.chain_id])
        return to_checksum_address("0x" + keccak(seed)[12:].hex())

    def deploy(self, contract_cls: Type[C], deployer: str, *args: Any, **kwargs: Any) -> C:
        """Deploy ``contract_cls`` from ``deployer`` and return the instance."""
        deployer = normalize_address(deployer)
        with self.transaction():
            address = self._next_address(deployer)
            contract = contract_cls(self, address, deployer, *args, **kwargs)
            self._contracts[address] = contract
        logger.debug("Deployed %s at %s (deployer %s)", contract_cls.__name__, address, deployer)
        return contract

    def get(self, address: str, expected: Type[C]) -> C:
        contract = self.code_at(address)
        if contract is None or not isinstance(contract, expected):
            raise InvalidAddress(f"No {expected.__name__} deployed at {address}")
        return contract

    def code_at(self, address: Optional[str]) -> Optional[Contract]:
        if is_zero_address(address):
            return None
        return self._contracts.get(normalize_address(address))

    # -- external calls --------------------------------------------------

    def dispatch(self, sender: str, target: str, data: bytes) -> tuple[bool, Any]:
        """Forward encoded call data to ``target``.

        Returns ``(success, result)``. A failing call is rolled back on its
        own and reported as ``(False, error)`` instead of raising.
        """
        contract = self.code_at(target)
        if contract is None:
            # Plain accounts accept empty calls and reject everything else.
            return len(data) == 0, None
        try:
            with self.transaction():
                method, args = decode_call(data)
                fn = getattr(contract, method, None)
                if fn is None or not getattr(fn, "__external__", False):
                    raise CallDecodeError(f"{type(contract).__name__} has no external method {method!r}")
                try:
                    inspect.signature(fn).bind(sender=sender, **args)
                except TypeError as exc:
                    raise CallDecodeError(f"Bad arguments for {method}: {exc}") from exc
                return True, fn(sender=sender, **args)
        except Exception as exc:
            logger.info("Forwarded call to %s failed: %s", target, exc)
            return False, exc
