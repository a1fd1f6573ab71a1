"""HTTP 402 paywall: resource guard, payment negotiator and facilitator client."""

from __future__ import annotations

from .config import ServerConfig
from .constants import (
    DEFAULT_ASSETS,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    SUPPORTED_NETWORKS,
    UnsupportedNetworkError,
    get_default_asset,
)
from .errors import (
    ChallengeError,
    ConfigurationError,
    ErrorCategory,
    ErrorCode,
    NegotiationCancelled,
    NetworkSwitchRejected,
    PaymentError,
    ProofBuildError,
    ProofRejected,
    RequirementsDecodeError,
    TransientInfraError,
    TransportError,
    UnexpectedStatusError,
    VerificationError,
)
from .facilitator import (
    Facilitator,
    FacilitatorClient,
    FacilitatorClientSync,
    FacilitatorConfig,
    FacilitatorSync,
)
from .guard import (
    BytesResource,
    FileResource,
    GuardRequest,
    GuardResponse,
    ResourceGuard,
    ResourceGuardSync,
)
from .http import fastapi_payment_middleware, flask_payment_middleware
from .negotiator import NegotiationOutcome, NegotiationState, PaymentNegotiator, Signer
from .networks import NetworkTagAdapter, normalize_network
from .schemas import (
    PaymentRequired,
    PaymentRequirements,
    SettlementReceipt,
    SettlementResult,
    canonical_resource_url,
    decode,
    encode,
    parse_payment_required,
)

__all__ = [
    "SUPPORTED_NETWORKS",
    "DEFAULT_ASSETS",
    "PAYMENT_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "UnsupportedNetworkError",
    "get_default_asset",
    "ServerConfig",
    "ChallengeError",
    "ConfigurationError",
    "ErrorCategory",
    "ErrorCode",
    "NegotiationCancelled",
    "NetworkSwitchRejected",
    "PaymentError",
    "ProofBuildError",
    "ProofRejected",
    "RequirementsDecodeError",
    "TransientInfraError",
    "TransportError",
    "UnexpectedStatusError",
    "VerificationError",
    "Facilitator",
    "FacilitatorSync",
    "FacilitatorConfig",
    "FacilitatorClient",
    "FacilitatorClientSync",
    "BytesResource",
    "FileResource",
    "GuardRequest",
    "GuardResponse",
    "ResourceGuard",
    "ResourceGuardSync",
    "fastapi_payment_middleware",
    "flask_payment_middleware",
    "NegotiationOutcome",
    "NegotiationState",
    "PaymentNegotiator",
    "Signer",
    "NetworkTagAdapter",
    "normalize_network",
    "PaymentRequired",
    "PaymentRequirements",
    "SettlementReceipt",
    "SettlementResult",
    "canonical_resource_url",
    "decode",
    "encode",
    "parse_payment_required",
]

try:  # Optional: sandbox collaborators depend on eth-account + fastapi
    from .sandbox import (
        SandboxFacilitator,
        SandboxFacilitatorSync,
        SandboxLedger,
        SandboxSigner,
        create_facilitator_app,
    )

    __all__.extend(
        [
            "SandboxFacilitator",
            "SandboxFacilitatorSync",
            "SandboxLedger",
            "SandboxSigner",
            "create_facilitator_app",
        ]
    )
except ImportError:
    SandboxFacilitator = None  # type: ignore[assignment]
    SandboxFacilitatorSync = None  # type: ignore[assignment]
    SandboxLedger = None  # type: ignore[assignment]
    SandboxSigner = None  # type: ignore[assignment]
    create_facilitator_app = None  # type: ignore[assignment]
