"""Error taxonomy shared by the resource guard and the payment negotiator."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .schemas import PaymentRequired


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    CHALLENGE = "challenge"
    PROOF_BUILD = "proof_build"
    VERIFICATION = "verification"
    TRANSIENT_INFRA = "transient_infra"
    UNEXPECTED_STATUS = "unexpected_status"
    TRANSPORT = "transport"
    CANCELLED = "cancelled"


class ErrorCode(str, Enum):
    """Wire-level error codes carried in the ``error`` field of a 402 body."""

    INVALID_SIGNATURE = "invalid_signature"
    AMOUNT_MISMATCH = "amount_mismatch"
    EXPIRED = "expired"
    ALREADY_SETTLED = "already_settled"
    NETWORK_MISMATCH = "network_mismatch"
    RESOURCE_MISMATCH = "resource_mismatch"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    ASSET_MISMATCH = "asset_mismatch"
    INVALID_PAYMENT = "invalid_payment"
    VERIFICATION_UNAVAILABLE = "verification_unavailable"
    CONFIGURATION_ERROR = "configuration_error"


# Reasons reported by facilitators in the wild, mapped onto our codes.
_REASON_ALIASES = {
    "invalid_exact_evm_payload_signature": ErrorCode.INVALID_SIGNATURE,
    "invalid_signature": ErrorCode.INVALID_SIGNATURE,
    "signature_invalid": ErrorCode.INVALID_SIGNATURE,
    "invalid_exact_evm_payload_authorization_value": ErrorCode.AMOUNT_MISMATCH,
    "insufficient_funds": ErrorCode.AMOUNT_MISMATCH,
    "amount_mismatch": ErrorCode.AMOUNT_MISMATCH,
    "invalid_exact_evm_payload_authorization_valid_before": ErrorCode.EXPIRED,
    "invalid_exact_evm_payload_authorization_valid_after": ErrorCode.EXPIRED,
    "expired": ErrorCode.EXPIRED,
    "payment_expired": ErrorCode.EXPIRED,
    "already_settled": ErrorCode.ALREADY_SETTLED,
    "nonce_already_used": ErrorCode.ALREADY_SETTLED,
    "invalid_transaction_state": ErrorCode.ALREADY_SETTLED,
    "invalid_network": ErrorCode.NETWORK_MISMATCH,
    "network_mismatch": ErrorCode.NETWORK_MISMATCH,
    "resource_mismatch": ErrorCode.RESOURCE_MISMATCH,
    "invalid_exact_evm_payload_recipient_mismatch": ErrorCode.RECIPIENT_MISMATCH,
    "recipient_mismatch": ErrorCode.RECIPIENT_MISMATCH,
    "asset_mismatch": ErrorCode.ASSET_MISMATCH,
    "verification_unavailable": ErrorCode.VERIFICATION_UNAVAILABLE,
}


def classify_reason(reason: Optional[str]) -> ErrorCode:
    """Map a free-form facilitator reason onto an :class:`ErrorCode`."""
    if not reason:
        return ErrorCode.INVALID_PAYMENT
    key = reason.strip().lower().replace("-", "_").replace(" ", "_")
    if key in _REASON_ALIASES:
        return _REASON_ALIASES[key]
    for fragment, code in (
        ("signature", ErrorCode.INVALID_SIGNATURE),
        ("expired", ErrorCode.EXPIRED),
        ("valid_before", ErrorCode.EXPIRED),
        ("already", ErrorCode.ALREADY_SETTLED),
        ("replay", ErrorCode.ALREADY_SETTLED),
        ("network", ErrorCode.NETWORK_MISMATCH),
        ("resource", ErrorCode.RESOURCE_MISMATCH),
        ("amount", ErrorCode.AMOUNT_MISMATCH),
        ("value", ErrorCode.AMOUNT_MISMATCH),
        ("recipient", ErrorCode.RECIPIENT_MISMATCH),
        ("pay_to", ErrorCode.RECIPIENT_MISMATCH),
        ("asset", ErrorCode.ASSET_MISMATCH),
    ):
        if fragment in key:
            return code
    return ErrorCode.INVALID_PAYMENT


class PaymentError(Exception):
    """Base class for every error raised by this package."""

    category: ErrorCategory = ErrorCategory.VERIFICATION

    def __str__(self) -> str:
        message = super().__str__()
        return f"[{self.category.value}] {message}" if message else f"[{self.category.value}]"


class ConfigurationError(PaymentError):
    """Required server configuration is missing or invalid."""

    category = ErrorCategory.CONFIGURATION


class ChallengeError(PaymentError):
    """The resource requires payment; carries the 402 body."""

    category = ErrorCategory.CHALLENGE

    def __init__(self, payment_required: "PaymentRequired") -> None:
        super().__init__(payment_required.error or "payment required")
        self.payment_required = payment_required


class ProofBuildError(PaymentError):
    """The client could not produce a proof; recoverable by user action."""

    category = ErrorCategory.PROOF_BUILD

    def __init__(self, message: str, reason: str = "rejected") -> None:
        super().__init__(message)
        self.reason = reason


class NetworkSwitchRejected(ProofBuildError):
    def __init__(self, current: str, required: str, required_name: Optional[str] = None) -> None:
        super().__init__(
            f"Wallet is on {current}. Please switch to {required_name or required} "
            "network in your wallet and try again.",
            reason="network_switch_rejected",
        )
        self.current = current
        self.required = required


class ProofRejected(ProofBuildError):
    def __init__(self, message: str = "Payment signature was rejected.") -> None:
        super().__init__(message, reason="signature_rejected")


class VerificationError(PaymentError):
    """The facilitator rejected the proof."""

    category = ErrorCategory.VERIFICATION

    def __init__(self, code: ErrorCode, message: Optional[str] = None) -> None:
        super().__init__(f"{code.value}: {message}" if message else code.value)
        self.code = code


class TransientInfraError(PaymentError):
    """The facilitator could not be reached or answered with a server error."""

    category = ErrorCategory.TRANSIENT_INFRA
    code = ErrorCode.VERIFICATION_UNAVAILABLE


class UnexpectedStatusError(PaymentError):
    category = ErrorCategory.UNEXPECTED_STATUS

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"unexpected status {status_code}")
        self.status_code = status_code
        self.body = body


class TransportError(PaymentError):
    """Wraps a transport failure on the client; the cause is kept in ``__cause__``."""

    category = ErrorCategory.TRANSPORT


class NegotiationCancelled(PaymentError):
    category = ErrorCategory.CANCELLED


class RequirementsDecodeError(ValueError):
    """Payment requirements are malformed or missing a required field."""

    category = ErrorCategory.CHALLENGE
