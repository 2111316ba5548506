"""
PayGuard: subscription payments with signed agreements and pool-backed cover.

User and provider sign an agreement → a subscription enforces the schedule →
missed payments are covered by an underwriter pool → every payment earns a
soulbound credit record.
"""

__version__ = "0.1.0"

from .chain import Chain, Contract
from .config import ChainConfig
from .credit_ledger import CreditRecord, CreditScore, CreditScoreLedger
from .errors import PayGuardError
from .events import Event, EventLog, read_event_file
from .factory import AgreementFactory, Deployment, deploy_payguard
from .reserve_pool import PoolStats, ReservePool
from .signer_agent import INVALID_SIGNATURE, MAGIC_VALUE, DelegatedSignerAgent
from .subscription import (
    DebtStatus,
    PaymentRecord,
    SubscriptionAgreement,
    SubscriptionInfo,
    SubscriptionStatus,
)
from .token import Token
from .typed_data import (
    PaymentAgreement,
    compute_agreement_id,
    encode_call,
    sign_agent_action,
    sign_agreement,
    sign_cancel,
)

__all__ = [
    "Chain", "Contract", "ChainConfig", "Event", "EventLog", "read_event_file",
    "PayGuardError",
    "AgreementFactory", "Deployment", "deploy_payguard",
    "SubscriptionAgreement", "SubscriptionStatus", "SubscriptionInfo", "PaymentRecord", "DebtStatus",
    "DelegatedSignerAgent", "MAGIC_VALUE", "INVALID_SIGNATURE",
    "ReservePool", "PoolStats",
    "CreditScoreLedger", "CreditRecord", "CreditScore",
    "Token",
    "PaymentAgreement", "compute_agreement_id", "encode_call",
    "sign_agreement", "sign_cancel", "sign_agent_action",
]
