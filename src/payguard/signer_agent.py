"""
Delegated signer agent ("user agent").

One contract per user. The owner may authorize agent addresses to sign on
their behalf; each signer (owner or agent) has its own nonce. The contract
exposes an ERC-1271 style ``is_valid_signature`` check and a generic relay,
``execute_agent_action``, for agent-initiated calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence, Union

from .chain import Chain, Contract, external
from .config import AGENT_DOMAIN_NAME, AGENT_DOMAIN_VERSION
from .errors import (
    AgentNotAuthorized,
    ArrayLengthMismatch,
    InvalidAddress,
    InvalidNonce,
    InvalidSignature,
    InvalidTarget,
    NotOwner,
    Unauthorized,
)
from .typed_data import (
    ZERO_ADDRESS,
    SignatureLike,
    agent_action_struct_hash,
    digest_from_struct_hash,
    domain_separator,
    is_zero_address,
    normalize_address,
    recover_signer,
)

logger = logging.getLogger(__name__)


MAGIC_VALUE = "0x1626ba7e"
INVALID_SIGNATURE = "0xffffffff"


class SignatureValidator(Protocol):
    def is_valid_signature(self, message_hash: Union[bytes, str], signature: SignatureLike) -> str: ...


def _hash_bytes(value: Union[bytes, str]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    return bytes.fromhex(text[2:] if text.lower().startswith("0x") else text)


@dataclass
class AgentStorage:
    owner: str
    factory: str
    authorized: set[str] = field(default_factory=set)
    nonces: dict[str, int] = field(default_factory=dict)
    subscriptions: set[str] = field(default_factory=set)


class DelegatedSignerAgent(Contract):
    """Per-user signer authority, deployed by the agreement factory."""

    def __init__(self, chain: Chain, address: str, deployer: str, owner: str):
        super().__init__(chain, address, deployer)
        if is_zero_address(owner):
            raise InvalidAddress("Invalid owner address")
        self.storage = AgentStorage(owner=normalize_address(owner), factory=deployer)
        self.emit("OwnershipTransferred", previous_owner=ZERO_ADDRESS, new_owner=self.storage.owner)

    @property
    def owner(self) -> str:
        return self.storage.owner

    @property
    def factory(self) -> str:
        return self.storage.factory

    def _require_owner(self, sender: str) -> None:
        if sender != self.storage.owner:
            raise NotOwner("Only owner")

    def _set_agent(self, agent: str, allowed: bool) -> None:
        if allowed:
            self.storage.authorized.add(agent)
        else:
            self.storage.authorized.discard(agent)
            self.storage.nonces.pop(agent, None)
        self.emit("AgentAuthorized", agent=agent, allowed=bool(allowed))

    # -- owner operations ------------------------------------------------

    @external
    def authorize_agent(self, sender: str, agent: str, allowed: bool) -> None:
        """Grant or revoke signing rights. Revoking resets the agent's nonce."""
        self._require_owner(sender)
        if is_zero_address(agent):
            raise InvalidAddress("Invalid agent address")
        self._set_agent(normalize_address(agent), allowed)
        logger.info("Agent %s %s for %s", agent, "authorized" if allowed else "revoked", self.address)

    @external
    def batch_authorize_agents(self, sender: str, agents: Sequence[str], allowed: Sequence[bool]) -> None:
        self._require_owner(sender)
        if len(agents) != len(allowed):
            raise ArrayLengthMismatch("Array length mismatch")
        if any(is_zero_address(a) for a in agents):
            raise InvalidAddress("Invalid agent address")
        for agent, flag in zip(agents, allowed):
            self._set_agent(normalize_address(agent), flag)

    @external
    def emergency_revoke(self, sender: str, agent: str) -> None:
        self._require_owner(sender)
        agent = normalize_address(agent)
        if agent not in self.storage.authorized:
            raise AgentNotAuthorized("Agent not authorized")
        self._set_agent(agent, False)
        logger.warning("Emergency revoke of agent %s on %s", agent, self.address)

    @external
    def transfer_ownership(self, sender: str, new_owner: str) -> None:
        self._require_owner(sender)
        if is_zero_address(new_owner):
            raise InvalidAddress("New owner is the zero address")
        previous, self.storage.owner = self.storage.owner, normalize_address(new_owner)
        self.emit("OwnershipTransferred", previous_owner=previous, new_owner=self.storage.owner)

    # -- factory / subscriptions -----------------------------------------

    @external
    def link_subscription(self, sender: str, subscription: str) -> None:
        if sender != self.storage.factory:
            raise Unauthorized("Only factory")
        self.storage.subscriptions.add(normalize_address(subscription))

    @external
    def consume_nonce(self, sender: str, signer: str, nonce: int) -> None:
        """Spend ``signer``'s current nonce on behalf of a linked subscription."""
        if sender not in self.storage.subscriptions:
            raise Unauthorized("Only linked subscriptions can consume nonces")
        signer = normalize_address(signer)
        if not self.is_authorized_signer(signer):
            raise AgentNotAuthorized(f"{signer} is not the owner or an authorized agent")
        current = self.storage.nonces.get(signer, 0)
        if nonce != current:
            raise InvalidNonce(expected=current, got=nonce)
        self.storage.nonces[signer] = current + 1

    # -- relay -----------------------------------------------------------

    def relay_domain_separator(self) -> bytes:
        return domain_separator(self.chain.chain_id, self.address, AGENT_DOMAIN_NAME, AGENT_DOMAIN_VERSION)

    @external
    def execute_agent_action(
        self,
        sender: str,
        struct_hash: Union[bytes, str],
        nonce: int,
        signature: SignatureLike,
        target: str,
        data: bytes,
    ) -> tuple[bool, Any]:
        """Forward ``data`` to ``target`` for an authorized agent.

        The agent's nonce is spent before the call is forwarded. A failing
        forwarded call is rolled back on its own and reported as
        ``(False, error)``; the nonce stays spent.
        """
        struct_hash = _hash_bytes(struct_hash)
        data = bytes(data)
        digest = digest_from_struct_hash(self.relay_domain_separator(), struct_hash)
        agent = recover_signer(digest, signature)
        if agent is None or agent not in self.storage.authorized:
            raise AgentNotAuthorized("Agent not authorized")
        if is_zero_address(target):
            raise InvalidTarget("Invalid target")
        if struct_hash != agent_action_struct_hash(target, data, nonce):
            raise InvalidSignature("Struct hash does not bind target, data and nonce")
        current = self.storage.nonces.get(agent, 0)
        if nonce != current:
            raise InvalidNonce(expected=current, got=nonce)
        self.storage.nonces[agent] = current + 1

        success, result = self.chain.dispatch(self.address, normalize_address(target), data)
        self.emit("AgentActionExecuted", agent=agent, target=normalize_address(target), success=success)
        logger.info("Agent action by %s to %s: %s", agent, target, "ok" if success else "failed")
        return success, result

    # -- views -----------------------------------------------------------

    def is_authorized_agent(self, agent: str) -> bool:
        return normalize_address(agent) in self.storage.authorized

    def is_authorized_signer(self, signer: Optional[str]) -> bool:
        if signer is None:
            return False
        return signer == self.storage.owner or signer in self.storage.authorized

    def get_agent_nonce(self, agent: str) -> int:
        agent = normalize_address(agent)
        if agent not in self.storage.authorized:
            return 0
        return self.storage.nonces.get(agent, 0)

    def get_signer_nonce(self, signer: str) -> int:
        return self.storage.nonces.get(normalize_address(signer), 0)

    def get_authorized_agents(self) -> list[str]:
        return sorted(self.storage.authorized)

    def recover(self, message_hash: Union[bytes, str], signature: SignatureLike) -> Optional[str]:
        """Recover the signer of ``message_hash`` if it is the owner or an agent."""
        try:
            digest = _hash_bytes(message_hash)
        except ValueError:
            return None
        signer = recover_signer(digest, signature)
        return signer if self.is_authorized_signer(signer) else None

    def is_valid_signature(self, message_hash: Union[bytes, str], signature: SignatureLike) -> str:
        return MAGIC_VALUE if self.recover(message_hash, signature) is not None else INVALID_SIGNATURE
