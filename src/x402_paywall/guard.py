"""Server-side resource guard: challenge with 402, or settle and serve."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .config import ServerConfig
from .constants import (
    PAYMENT_HEADER,
    PAYMENT_NETWORK_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_VERIFIED_HEADER,
)
from .errors import (
    ChallengeError,
    ConfigurationError,
    ErrorCode,
    TransientInfraError,
)
from .facilitator import Facilitator, FacilitatorSync, fingerprint
from .schemas import (
    PaymentRequired,
    PaymentRequirements,
    SettlementReceipt,
    SettlementResult,
    canonical_resource_url,
    encode_header,
    exact_requirements,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardRequest:
    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    @property
    def payment_header(self) -> Optional[str]:
        value = self.header(PAYMENT_HEADER)
        if value is None or not value.strip():
            return None
        return value


@dataclass
class GuardResponse:
    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def media_type(self) -> Optional[str]:
        return self.headers.get("Content-Type")

    def json(self):
        return json.loads(self.body)

    @classmethod
    def from_json(cls, status_code: int, payload) -> "GuardResponse":
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return cls(status_code, body, {"Content-Type": "application/json"})


class FileResource:
    """Serves a file from disk. A missing file is a configuration fault."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = Path(path)

    def check(self) -> None:
        if not self.path.is_file():
            raise ConfigurationError(f"Protected resource not found at {self.path}")

    def read(self) -> bytes:
        return self.path.read_bytes()


class BytesResource:
    def __init__(self, content: bytes) -> None:
        self.content = content

    def check(self) -> None:
        return None

    def read(self) -> bytes:
        return self.content


_NO_RESOURCE = ConfigurationError("No protected resource is configured for this guard.")


def _configuration_error(exc: ConfigurationError) -> GuardResponse:
    logger.error("configuration error: %s", exc.args[0] if exc.args else exc)
    return GuardResponse.from_json(
        500,
        {"error": ErrorCode.CONFIGURATION_ERROR.value, "message": exc.args[0] if exc.args else ""},
    )


class _GuardBase:
    def __init__(self, config: ServerConfig, facilitator, resource=None) -> None:
        self.config = config
        self.facilitator = facilitator
        self.resource = resource

    def _preflight(self) -> None:
        self.config.validate()
        if self.resource is not None:
            self.resource.check()

    def requirements_for(self, request: GuardRequest) -> PaymentRequirements:
        """Derive fresh requirements from config and the live request URL."""
        return exact_requirements(
            network=self.config.network_id,
            amount=self.config.amount,
            resource=canonical_resource_url(request.url),
            pay_to=self.config.pay_to,
            asset=self.config.asset_address,
            description=self.config.description,
            mime_type=self.config.mime_type,
            max_timeout_seconds=self.config.max_timeout_seconds,
            extra=self.config.asset_extra(),
        )

    def _challenge(
        self,
        requirements: PaymentRequirements,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
    ) -> ChallengeError:
        return ChallengeError(
            PaymentRequired(
                accepts=[requirements],
                error=code.value if code is not None else None,
                error_message=message,
            )
        )

    def _receipt_or_challenge(
        self, requirements: PaymentRequirements, result: SettlementResult, proof: str
    ) -> SettlementReceipt:
        if result.settled:
            # Settled without a receipt still grants access.
            receipt = result.receipt or SettlementReceipt(network=requirements.network)
            logger.info(
                "payment settled resource=%s proof=%s tx=%s",
                requirements.resource,
                fingerprint(proof),
                receipt.transaction or "-",
            )
            return receipt
        code = result.error_code or ErrorCode.INVALID_PAYMENT
        logger.warning(
            "payment rejected resource=%s proof=%s code=%s reason=%s",
            requirements.resource,
            fingerprint(proof),
            code.value,
            result.error_reason,
        )
        raise self._challenge(requirements, code, result.error_reason)

    def _unavailable(self, requirements: PaymentRequirements, exc: TransientInfraError) -> ChallengeError:
        logger.warning("verification unavailable resource=%s: %s", requirements.resource, exc)
        return self._challenge(
            requirements,
            ErrorCode.VERIFICATION_UNAVAILABLE,
            "Payment verification is temporarily unavailable; retry the request.",
        )

    def payment_headers(self, receipt: SettlementReceipt) -> Dict[str, str]:
        return {
            PAYMENT_VERIFIED_HEADER: "true",
            PAYMENT_NETWORK_HEADER: self.config.network_id,
            PAYMENT_RESPONSE_HEADER: encode_header(receipt.model_dump(by_alias=True, exclude_none=True)),
            "Cache-Control": "private, no-cache",
        }

    def _serve(self, receipt: SettlementReceipt) -> GuardResponse:
        try:
            content = self.resource.read()
        except OSError as exc:
            logger.error("payment settled but resource could not be read tx=%s: %s", receipt.transaction, exc)
            raise ConfigurationError(f"Protected resource could not be read: {exc}") from exc
        headers = {
            "Content-Type": self.config.mime_type,
            "Content-Length": str(len(content)),
            "Accept-Ranges": "bytes",
        }
        headers.update(self.payment_headers(receipt))
        return GuardResponse(200, content, headers)


class ResourceGuard(_GuardBase):
    """Async guard. One facilitator call at most per received proof."""

    def __init__(
        self,
        config: ServerConfig,
        facilitator: Facilitator,
        resource: Optional[Union[FileResource, BytesResource]] = None,
    ) -> None:
        super().__init__(config, facilitator, resource)

    async def check(self, request: GuardRequest) -> SettlementReceipt:
        """Settle the request's proof or raise :class:`ChallengeError`.

        Raises :class:`ConfigurationError` before any challenge is issued when
        the server is misconfigured.
        """
        self._preflight()
        requirements = self.requirements_for(request)
        proof = request.payment_header
        if proof is None:
            logger.info("payment required resource=%s", requirements.resource)
            raise self._challenge(requirements)

        try:
            result = await self.facilitator.verify_and_settle(proof, requirements)
        except TransientInfraError as exc:
            raise self._unavailable(requirements, exc) from exc
        return self._receipt_or_challenge(requirements, result, proof)

    async def handle(self, request: GuardRequest) -> GuardResponse:
        if self.resource is None:
            return _configuration_error(_NO_RESOURCE)
        try:
            receipt = await self.check(request)
            return self._serve(receipt)
        except ChallengeError as challenge:
            return GuardResponse.from_json(402, challenge.payment_required.to_body())
        except ConfigurationError as exc:
            return _configuration_error(exc)


class ResourceGuardSync(_GuardBase):
    """Sync guard for WSGI frameworks."""

    def __init__(
        self,
        config: ServerConfig,
        facilitator: FacilitatorSync,
        resource: Optional[Union[FileResource, BytesResource]] = None,
    ) -> None:
        super().__init__(config, facilitator, resource)

    def check(self, request: GuardRequest) -> SettlementReceipt:
        self._preflight()
        requirements = self.requirements_for(request)
        proof = request.payment_header
        if proof is None:
            logger.info("payment required resource=%s", requirements.resource)
            raise self._challenge(requirements)

        try:
            result = self.facilitator.verify_and_settle(proof, requirements)
        except TransientInfraError as exc:
            raise self._unavailable(requirements, exc) from exc
        return self._receipt_or_challenge(requirements, result, proof)

    def handle(self, request: GuardRequest) -> GuardResponse:
        if self.resource is None:
            return _configuration_error(_NO_RESOURCE)
        try:
            receipt = self.check(request)
            return self._serve(receipt)
        except ChallengeError as challenge:
            return GuardResponse.from_json(402, challenge.payment_required.to_body())
        except ConfigurationError as exc:
            return _configuration_error(exc)
