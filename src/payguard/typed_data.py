"""
EIP-712 schemas, agreement ids and signature helpers.

Agreements and cancellations are signed as EIP-712 typed data under the
"PayGuard" domain. Agent relays sign an ``AgentAction`` struct under the
"PayGuard UserAgent" domain of the user's agent contract. Recovery helpers
never raise: a malformed signature simply recovers to ``None``.
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional, Union

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as KeyValidationError
from eth_utils import keccak, to_checksum_address

from .config import AGENT_DOMAIN_NAME, AGENT_DOMAIN_VERSION, DOMAIN_NAME, DOMAIN_VERSION
from .errors import CallDecodeError, InvalidAddress


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = "0x" + "00" * 32

SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

SignatureLike = Union[bytes, str]

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

PAYMENT_AGREEMENT_TYPES = {
    "PaymentAgreement": [
        {"name": "agreementId", "type": "bytes32"},
        {"name": "user", "type": "address"},
        {"name": "provider", "type": "address"},
        {"name": "token", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "period", "type": "uint256"},
        {"name": "startDate", "type": "uint256"},
        {"name": "gracePeriod", "type": "uint256"},
        {"name": "maxCover", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}

CANCEL_SUBSCRIPTION_TYPES = {
    "CancelSubscription": [
        {"name": "agreementId", "type": "bytes32"},
        {"name": "nonce", "type": "uint256"},
        {"name": "timestamp", "type": "uint256"},
    ],
}

AGENT_ACTION_TYPES = {
    "AgentAction": [
        {"name": "target", "type": "address"},
        {"name": "data", "type": "bytes"},
        {"name": "nonce", "type": "uint256"},
    ],
}

AGENT_ACTION_TYPEHASH = keccak(text="AgentAction(address target,bytes data,uint256 nonce)")
_DOMAIN_TYPEHASH = keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksum form of an address."""
    candidate = str(address).strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidAddress(f"Invalid Ethereum address: {address}")
    return to_checksum_address(candidate)


def is_zero_address(address: Optional[str]) -> bool:
    return address is None or str(address).lower() == ZERO_ADDRESS


def normalize_bytes32(value: Union[bytes, str], field_name: str = "value") -> str:
    """Normalize a 32-byte value to lower-case 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"{field_name} must be 32 bytes")
        return "0x" + bytes(value).hex()
    candidate = str(value).strip().lower()
    hex_part = candidate[2:] if candidate.startswith("0x") else candidate
    if len(hex_part) != 64 or any(ch not in "0123456789abcdef" for ch in hex_part):
        raise ValueError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return "0x" + hex_part


def signature_bytes(signature: SignatureLike) -> bytes:
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    text = str(signature).strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


# ---------------------------------------------------------------------------
# Agreement
# ---------------------------------------------------------------------------


def compute_agreement_id(user: str, provider: str, token: str, amount: int, start_date: int) -> str:
    """keccak256(abi.encode(user, provider, token, amount, startDate))."""
    encoded = abi_encode(
        ["address", "address", "address", "uint256", "uint256"],
        [normalize_address(user), normalize_address(provider), normalize_address(token), int(amount), int(start_date)],
    )
    return "0x" + keccak(encoded).hex()


@dataclass(frozen=True)
class PaymentAgreement:
    """Signed terms binding a user to pay a provider on a schedule."""

    agreement_id: str
    user: str
    provider: str
    token: str
    amount: int
    period: int
    start_date: int
    grace_period: int
    max_cover: int
    nonce: int = 0

    @classmethod
    def build(
        cls,
        *,
        user: str,
        provider: str,
        token: str,
        amount: int,
        period: int,
        start_date: int,
        grace_period: int = 0,
        max_cover: int = 0,
        nonce: int = 0,
    ) -> "PaymentAgreement":
        """Create an agreement whose id is derived from its content."""
        return cls(
            agreement_id=compute_agreement_id(user, provider, token, amount, start_date),
            user=normalize_address(user),
            provider=normalize_address(provider),
            token=normalize_address(token),
            amount=int(amount),
            period=int(period),
            start_date=int(start_date),
            grace_period=int(grace_period),
            max_cover=int(max_cover),
            nonce=int(nonce),
        )

    def expected_agreement_id(self) -> str:
        return compute_agreement_id(self.user, self.provider, self.token, self.amount, self.start_date)

    def to_eip712_message(self) -> dict[str, Any]:
        return {
            "agreementId": normalize_bytes32(self.agreement_id, "agreement_id"),
            "user": self.user,
            "provider": self.provider,
            "token": self.token,
            "amount": int(self.amount),
            "period": int(self.period),
            "startDate": int(self.start_date),
            "gracePeriod": int(self.grace_period),
            "maxCover": int(self.max_cover),
            "nonce": int(self.nonce),
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PaymentAgreement":
        data = dict(payload)
        return cls(
            agreement_id=normalize_bytes32(data["agreement_id"], "agreement_id"),
            user=str(data["user"]),
            provider=str(data["provider"]),
            token=str(data["token"]),
            amount=int(data["amount"]),
            period=int(data["period"]),
            start_date=int(data["start_date"]),
            grace_period=int(data.get("grace_period", 0)),
            max_cover=int(data.get("max_cover", 0)),
            nonce=int(data.get("nonce", 0)),
        )


# ---------------------------------------------------------------------------
# Domains and digests
# ---------------------------------------------------------------------------


def eip712_domain(chain_id: int, verifying_contract: str, name: str = DOMAIN_NAME, version: str = DOMAIN_VERSION) -> dict:
    return {
        "name": name,
        "version": version,
        "chainId": int(chain_id),
        "verifyingContract": normalize_address(verifying_contract),
    }


def build_typed_data(domain: dict, types: dict, primary_type: str, message: dict) -> dict[str, Any]:
    return {
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, **types},
        "primaryType": primary_type,
        "domain": domain,
        "message": message,
    }


def agreement_typed_data(agreement: PaymentAgreement, chain_id: int, factory_address: str) -> dict[str, Any]:
    return build_typed_data(
        eip712_domain(chain_id, factory_address),
        PAYMENT_AGREEMENT_TYPES,
        "PaymentAgreement",
        agreement.to_eip712_message(),
    )


def cancel_typed_data(
    agreement_id: str,
    nonce: int,
    timestamp: int,
    chain_id: int,
    subscription_address: str,
) -> dict[str, Any]:
    return build_typed_data(
        eip712_domain(chain_id, subscription_address),
        CANCEL_SUBSCRIPTION_TYPES,
        "CancelSubscription",
        {
            "agreementId": normalize_bytes32(agreement_id, "agreement_id"),
            "nonce": int(nonce),
            "timestamp": int(timestamp),
        },
    )


def agent_action_typed_data(chain_id: int, agent_address: str, target: str, data: bytes, nonce: int) -> dict[str, Any]:
    return build_typed_data(
        eip712_domain(chain_id, agent_address, AGENT_DOMAIN_NAME, AGENT_DOMAIN_VERSION),
        AGENT_ACTION_TYPES,
        "AgentAction",
        {"target": normalize_address(target), "data": bytes(data), "nonce": int(nonce)},
    )


def hash_typed_data(typed_data: Mapping[str, Any]) -> bytes:
    """EIP-712 digest: keccak256(0x19 0x01 || domainSeparator || structHash)."""
    types = {k: v for k, v in typed_data["types"].items() if k != "EIP712Domain"}
    signable = encode_typed_data(typed_data["domain"], types, typed_data["message"])
    return keccak(b"\x19" + signable.version + signable.header + signable.body)


def domain_separator(chain_id: int, verifying_contract: str, name: str, version: str) -> bytes:
    return keccak(
        abi_encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                _DOMAIN_TYPEHASH,
                keccak(text=name),
                keccak(text=version),
                int(chain_id),
                normalize_address(verifying_contract),
            ],
        )
    )


def digest_from_struct_hash(separator: bytes, struct_hash: bytes) -> bytes:
    return keccak(b"\x19\x01" + separator + struct_hash)


def agent_action_struct_hash(target: str, data: bytes, nonce: int) -> bytes:
    return keccak(
        abi_encode(
            ["bytes32", "address", "bytes32", "uint256"],
            [AGENT_ACTION_TYPEHASH, normalize_address(target), keccak(bytes(data)), int(nonce)],
        )
    )


def eth_signed_message_hash(message_hash: bytes) -> bytes:
    """EIP-191 personal-sign digest of a 32-byte hash."""
    return keccak(b"\x19Ethereum Signed Message:\n32" + bytes(message_hash))


# ---------------------------------------------------------------------------
# Signing and recovery
# ---------------------------------------------------------------------------


def sign_typed(private_key: str, typed_data: Mapping[str, Any]) -> bytes:
    types = {k: v for k, v in typed_data["types"].items() if k != "EIP712Domain"}
    signed = Account.sign_typed_data(
        private_key,
        typed_data["domain"],
        types,
        typed_data["message"],
    )
    return bytes(signed.signature)


def sign_agreement(private_key: str, agreement: PaymentAgreement, chain_id: int, factory_address: str) -> bytes:
    return sign_typed(private_key, agreement_typed_data(agreement, chain_id, factory_address))


def sign_cancel(
    private_key: str,
    agreement_id: str,
    nonce: int,
    timestamp: int,
    chain_id: int,
    subscription_address: str,
) -> bytes:
    return sign_typed(
        private_key,
        cancel_typed_data(agreement_id, nonce, timestamp, chain_id, subscription_address),
    )


def sign_agent_action(
    private_key: str,
    chain_id: int,
    agent_address: str,
    target: str,
    data: bytes,
    nonce: int,
) -> tuple[bytes, bytes]:
    """Sign a relay request; returns (struct_hash, signature)."""
    typed = agent_action_typed_data(chain_id, agent_address, target, data, nonce)
    return agent_action_struct_hash(target, data, nonce), sign_typed(private_key, typed)


def recover_signer(digest: bytes, signature: SignatureLike) -> Optional[str]:
    """Recover the signing address of a 32-byte digest, or None."""
    try:
        raw = signature_bytes(signature)
    except (TypeError, ValueError):
        return None
    if len(raw) != 65 or len(digest) != 32:
        return None
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1) or r == 0 or s == 0 or s > SECP256K1_N // 2:
        return None
    try:
        sig = keys.Signature(vrs=(v, r, s))
        return sig.recover_public_key_from_msg_hash(bytes(digest)).to_checksum_address()
    except (BadSignature, KeyValidationError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Relay call data
# ---------------------------------------------------------------------------


def encode_call(method: str, **args: Any) -> bytes:
    """Canonical JSON call data for a relayed external method."""
    return json.dumps(
        {"method": method, "args": args},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def decode_call(data: bytes) -> tuple[str, dict[str, Any]]:
    try:
        payload = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CallDecodeError(f"Undecodable call data: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("method"), str):
        raise CallDecodeError("Call data must carry a method name")
    args = payload.get("args", {})
    if not isinstance(args, dict):
        raise CallDecodeError("Call arguments must be an object")
    return payload["method"], args
