"""Local stand-ins for the wallet and the facilitator.

Proofs built here are base64 JSON envelopes holding an authorization signed
with ``personal_sign``. They carry no funds and are only meant for demos and
tests; the ledger enforces the same bindings a real facilitator does
(signature, resource, amount, network, recipient, asset, validity window,
single use).
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .constants import DEFAULT_NETWORK, SCHEME_EXACT, X402_VERSION
from .errors import ErrorCode, ProofRejected, RequirementsDecodeError
from .networks import normalize_network
from .schemas import (
    PaymentRequirements,
    SettlementReceipt,
    SettlementResult,
    decode,
    decode_header,
    encode_header,
)

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]


def _authorization_message(authorization: JsonDict) -> str:
    return json.dumps(authorization, separators=(",", ":"), sort_keys=True)


class SandboxSigner:
    """In-process wallet. ``approve_switch`` / ``approve_signing`` model the user's answer."""

    def __init__(
        self,
        private_key: str,
        network: str = DEFAULT_NETWORK,
        *,
        approve_switch: bool = True,
        approve_signing: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = Account.from_key(private_key)
        self.network = network
        self.approve_switch = approve_switch
        self.approve_signing = approve_signing
        self._clock = clock
        self.switch_requests: list = []

    @classmethod
    def generate(cls, network: str = DEFAULT_NETWORK, **kwargs) -> "SandboxSigner":
        return cls("0x" + secrets.token_hex(32), network, **kwargs)

    @property
    def address(self) -> str:
        return self._account.address

    async def get_network(self) -> str:
        return self.network

    async def switch_network(self, network: str) -> bool:
        self.switch_requests.append(network)
        if not self.approve_switch:
            return False
        self.network = network
        return True

    async def build_proof(self, requirements: PaymentRequirements) -> str:
        if not self.approve_signing:
            raise ProofRejected("User rejected the signature request.")
        return self.sign(requirements)

    def sign(self, requirements: PaymentRequirements, **overrides: Any) -> str:
        """Sign an authorization for ``requirements``; ``overrides`` replace fields before signing."""
        now = int(self._clock())
        authorization: JsonDict = {
            "from": self.address,
            "to": requirements.pay_to,
            "value": requirements.max_amount_required,
            "asset": requirements.asset,
            "network": requirements.network,
            "resource": requirements.resource,
            "validAfter": str(now - 600),
            "validBefore": str(now + requirements.max_timeout_seconds),
            "nonce": "0x" + secrets.token_hex(32),
        }
        authorization.update(overrides)
        signed = self._account.sign_message(encode_defunct(text=_authorization_message(authorization)))
        return encode_header(
            {
                "x402Version": X402_VERSION,
                "scheme": SCHEME_EXACT,
                "network": requirements.network,
                "payload": {
                    "authorization": authorization,
                    "signature": "0x" + bytes(signed.signature).hex(),
                },
            }
        )


@dataclass(frozen=True)
class _Verdict:
    error_code: Optional[ErrorCode] = None
    reason: Optional[str] = None
    payer: Optional[str] = None
    nonce: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error_code is None


def _same_network(a: str, b: str) -> bool:
    try:
        return normalize_network(a) == normalize_network(b)
    except ValueError:
        return False


class SandboxLedger:
    """Verifies sandbox proofs and remembers which nonces have been settled."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._settled: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.settle_calls = 0

    @property
    def settled_count(self) -> int:
        return len(self._settled)

    def verify(self, proof: str, requirements: PaymentRequirements) -> _Verdict:
        try:
            envelope = decode_header(proof)
            payload = envelope["payload"]
            authorization = payload["authorization"]
            signature = payload["signature"]
        except (ValueError, KeyError, TypeError):
            return _Verdict(ErrorCode.INVALID_PAYMENT, "malformed payment header")
        if not isinstance(authorization, dict) or not isinstance(signature, str):
            return _Verdict(ErrorCode.INVALID_PAYMENT, "malformed payment header")

        try:
            sig_bytes = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
            recovered = Account.recover_message(
                encode_defunct(text=_authorization_message(authorization)),
                signature=sig_bytes,
            )
        except Exception:  # malformed signatures surface from several eth libraries
            return _Verdict(ErrorCode.INVALID_SIGNATURE, "signature could not be recovered")
        payer = authorization.get("from")
        if not isinstance(payer, str) or recovered.lower() != payer.lower():
            return _Verdict(ErrorCode.INVALID_SIGNATURE, "signature does not match payer")

        if not _same_network(str(authorization.get("network")), requirements.network):
            return _Verdict(ErrorCode.NETWORK_MISMATCH, "authorization is for another network", payer)
        if str(authorization.get("resource", "")).rstrip("/") != requirements.resource.rstrip("/"):
            return _Verdict(ErrorCode.RESOURCE_MISMATCH, "authorization is for another resource", payer)
        if str(authorization.get("to", "")).lower() != requirements.pay_to.lower():
            return _Verdict(ErrorCode.RECIPIENT_MISMATCH, "authorization pays another recipient", payer)
        if str(authorization.get("asset", "")).lower() != requirements.asset.lower():
            return _Verdict(ErrorCode.ASSET_MISMATCH, "authorization is for another asset", payer)
        try:
            value = int(authorization.get("value"))
            valid_after = int(authorization.get("validAfter"))
            valid_before = int(authorization.get("validBefore"))
        except (TypeError, ValueError):
            return _Verdict(ErrorCode.INVALID_PAYMENT, "authorization fields are not integers", payer)
        if value != int(requirements.max_amount_required):
            return _Verdict(ErrorCode.AMOUNT_MISMATCH, "authorized value does not match", payer)
        now = int(self._clock())
        if now < valid_after or now > valid_before:
            return _Verdict(ErrorCode.EXPIRED, "authorization is outside its validity window", payer)

        nonce = str(authorization.get("nonce"))
        if nonce in self._settled:
            return _Verdict(ErrorCode.ALREADY_SETTLED, "authorization nonce already used", payer, nonce)
        return _Verdict(payer=payer, nonce=nonce)

    def settle(self, proof: str, requirements: PaymentRequirements) -> SettlementResult:
        with self._lock:
            self.settle_calls += 1
            verdict = self.verify(proof, requirements)
            if not verdict.valid:
                return SettlementResult.rejected(verdict.error_code, verdict.reason)
            tx = "0x" + hashlib.sha256(verdict.nonce.encode("utf-8")).hexdigest()
            self._settled[verdict.nonce] = tx
        logger.info("sandbox settled nonce=%s payer=%s", verdict.nonce[:10], verdict.payer)
        return SettlementResult.success(
            SettlementReceipt(
                success=True,
                transaction=tx,
                network=normalize_network(requirements.network),
                payer=verdict.payer,
            )
        )


class SandboxFacilitator:
    """Async facilitator backed by a :class:`SandboxLedger`."""

    def __init__(self, ledger: Optional[SandboxLedger] = None) -> None:
        self.ledger = ledger or SandboxLedger()

    async def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult:
        return self.ledger.settle(proof, requirements)


class SandboxFacilitatorSync:
    def __init__(self, ledger: Optional[SandboxLedger] = None) -> None:
        self.ledger = ledger or SandboxLedger()

    def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult:
        return self.ledger.settle(proof, requirements)


# =========================================================================
# HTTP facilitator
# =========================================================================


class FacilitatorRequest(BaseModel):
    x402Version: int = X402_VERSION
    paymentHeader: str
    paymentRequirements: Dict[str, Any]


def create_facilitator_app(ledger: Optional[SandboxLedger] = None) -> FastAPI:
    """FastAPI app exposing ``/verify`` and ``/settle`` over a sandbox ledger."""
    ledger = ledger or SandboxLedger()
    app = FastAPI(title="Sandbox Facilitator")
    app.state.ledger = ledger

    @app.get("/health")
    async def health() -> JsonDict:
        return {"status": "healthy", "service": "sandbox-facilitator"}

    @app.post("/verify")
    async def verify(request: FacilitatorRequest) -> JSONResponse:
        try:
            requirements = decode(request.paymentRequirements)
        except RequirementsDecodeError as exc:
            body = {"isValid": False, "invalidReason": ErrorCode.INVALID_PAYMENT.value, "message": str(exc)}
            return JSONResponse(body, status_code=400)
        verdict = ledger.verify(request.paymentHeader, requirements)
        body: JsonDict = {"isValid": verdict.valid, "payer": verdict.payer}
        if not verdict.valid:
            body["invalidReason"] = verdict.error_code.value
        return JSONResponse(body)

    @app.post("/settle")
    async def settle(request: FacilitatorRequest) -> JSONResponse:
        try:
            requirements = decode(request.paymentRequirements)
        except RequirementsDecodeError as exc:
            body = {"success": False, "errorReason": ErrorCode.INVALID_PAYMENT.value, "message": str(exc)}
            return JSONResponse(body, status_code=400)
        result = ledger.settle(request.paymentHeader, requirements)
        if not result.settled:
            return JSONResponse({"success": False, "errorReason": result.error_code.value})
        return JSONResponse(result.receipt.model_dump(by_alias=True, exclude_none=True))

    return app


__all__ = [
    "SandboxFacilitator",
    "SandboxFacilitatorSync",
    "SandboxLedger",
    "SandboxSigner",
    "create_facilitator_app",
]
