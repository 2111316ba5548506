"""
PayGuard error types.

Every failure aborts the whole operation. Each condition has its own
class and a stable ``reason`` string so callers can branch on cause
(resubmit after funding, re-sign with a fresh nonce, give up, etc.).
"""


class PayGuardError(Exception):
    """Base error for all PayGuard operations."""

    reason = "PayGuardError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


# Validation errors
class ValidationError(PayGuardError):
    """Malformed or out-of-range input, caught before any state change."""
    reason = "ValidationError"


class InvalidAddress(ValidationError):
    """A required address is the zero address or malformed."""
    reason = "InvalidAddress"


class InvalidAmount(ValidationError):
    reason = "InvalidAmount"


class ArrayLengthMismatch(ValidationError):
    reason = "ArrayLengthMismatch"


class InvalidTarget(ValidationError):
    """Relay target is the zero address."""
    reason = "InvalidTarget"


class InvalidTimestamp(ValidationError):
    reason = "InvalidTimestamp"


class InvalidAgreement(ValidationError):
    """Base error for agreement field violations."""

    reason = "InvalidAgreement"
    field_name = ""

    def __init__(self, message: str = ""):
        super().__init__(message or f"Invalid agreement field: {self.field_name}")


class InvalidUserAddress(InvalidAgreement):
    reason = "InvalidUserAddress"
    field_name = "user"


class InvalidProviderAddress(InvalidAgreement):
    reason = "InvalidProviderAddress"
    field_name = "provider"


class InvalidTokenAddress(InvalidAgreement):
    reason = "InvalidTokenAddress"
    field_name = "token"


class InvalidAgreementAmount(InvalidAgreement):
    reason = "InvalidAgreementAmount"
    field_name = "amount"


class InvalidPeriod(InvalidAgreement):
    reason = "InvalidPeriod"
    field_name = "period"


class StartDateNotInFuture(InvalidAgreement):
    reason = "StartDateNotInFuture"
    field_name = "start_date"


class InvalidGracePeriod(InvalidAgreement):
    reason = "InvalidGracePeriod"
    field_name = "grace_period"


class InvalidMaxCover(InvalidAgreement):
    reason = "InvalidMaxCover"
    field_name = "max_cover"


class AgreementIdMismatch(InvalidAgreement):
    """agreement_id is not the content hash of the agreement terms."""
    reason = "AgreementIdMismatch"
    field_name = "agreement_id"


class AgreementAlreadyExists(InvalidAgreement):
    reason = "AgreementAlreadyExists"
    field_name = "agreement_id"


class CallDecodeError(ValidationError):
    """Relayed call data could not be decoded or bound to a method."""
    reason = "CallDecodeError"


# Authorization errors
class AuthorizationError(PayGuardError):
    """Caller or signer lacks the required role."""
    reason = "AuthorizationError"


class Unauthorized(AuthorizationError):
    reason = "Unauthorized"


class NotOwner(AuthorizationError):
    reason = "NotOwner"


class NotMinter(AuthorizationError):
    reason = "NotMinter"


class AgentNotAuthorized(AuthorizationError):
    reason = "AgentNotAuthorized"


class InvalidSignature(AuthorizationError):
    reason = "InvalidSignature"


class InvalidProviderSignature(InvalidSignature):
    reason = "InvalidProviderSignature"


class InvalidUserSignature(InvalidSignature):
    reason = "InvalidUserSignature"


# Timing errors
class TimingError(PayGuardError):
    """Operation attempted at the wrong time or from the wrong state."""
    reason = "TimingError"


class PaymentNotDue(TimingError):
    reason = "PaymentNotDue"


class PoolClaimNotAllowed(TimingError):
    reason = "PoolClaimNotAllowed"


class InvalidStatus(TimingError):
    reason = "InvalidStatus"


class SubscriptionCancelled(InvalidStatus):
    reason = "SubscriptionCancelled"


class SubscriptionDefaulted(InvalidStatus):
    reason = "SubscriptionDefaulted"


# Capacity errors
class CapacityError(PayGuardError):
    """Base error for pool, balance and allowance limits."""

    reason = "CapacityError"

    def __init__(self, requested: int = 0, available: int = 0, message: str = ""):
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"{self.reason}: requested {requested}, available {available}"
        )


class CreditLineExceeded(CapacityError):
    reason = "CreditLineExceeded"


class MaxCoverExceeded(CapacityError):
    reason = "MaxCoverExceeded"


class UtilizationCapExceeded(CapacityError):
    reason = "UtilizationCapExceeded"


class InsufficientPoolCapacity(CapacityError):
    reason = "InsufficientPoolCapacity"


class InsufficientStake(CapacityError):
    reason = "InsufficientStake"


class InsufficientBalance(CapacityError):
    reason = "InsufficientBalance"


class InsufficientAllowance(CapacityError):
    reason = "InsufficientAllowance"


# Replay errors
class ReplayError(PayGuardError):
    reason = "ReplayError"


class InvalidNonce(ReplayError):
    """Signed nonce does not equal the signer's current nonce."""

    reason = "InvalidNonce"

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"Invalid nonce: expected {expected}, got {got}")


# State errors
class StateError(PayGuardError):
    reason = "StateError"


class AlreadyInitialized(StateError):
    reason = "AlreadyInitialized"


class NotInitialized(StateError):
    reason = "NotInitialized"


class AlreadyExists(StateError):
    reason = "AlreadyExists"


class SoulboundTransferDisallowed(StateError):
    reason = "SoulboundTransferDisallowed"


class NoPaymentForPeriod(StateError):
    reason = "NoPaymentForPeriod"


class ReentrantCall(StateError):
    reason = "ReentrantCall"


class UnknownRecord(StateError):
    reason = "UnknownRecord"
