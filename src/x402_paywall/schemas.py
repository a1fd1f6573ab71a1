"""Wire models and the payment requirements codec."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_MAX_TIMEOUT_SECONDS, SCHEME_EXACT, X402_VERSION
from .errors import ErrorCode, RequirementsDecodeError

JsonDict = Dict[str, Any]

REQUIRED_FIELDS = ("scheme", "network", "asset", "payTo", "maxAmountRequired", "resource")


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class PaymentRequirements(_WireModel):
    """What a client has to pay for one resource. Issued by the server per request."""

    scheme: str
    network: str
    max_amount_required: str
    resource: str
    description: Optional[str] = None
    mime_type: Optional[str] = None
    pay_to: str
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    asset: str
    output_schema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None

    @field_validator("scheme", "network", "resource", "pay_to", "asset")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("max_amount_required")
    @classmethod
    def _integer_string(cls, v: str) -> str:
        if not (v.isascii() and v.isdigit()):
            raise ValueError("must be a non-negative integer encoded as a string")
        return v

    @field_validator("max_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    def to_payload(self) -> JsonDict:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequired(_WireModel):
    """Body of a 402 response."""

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    accepts: List[PaymentRequirements]
    error: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def requirements(self) -> PaymentRequirements:
        return self.accepts[0]

    @property
    def error_code(self) -> Optional[ErrorCode]:
        if self.error is None:
            return None
        try:
            return ErrorCode(self.error)
        except ValueError:
            return None

    def to_body(self) -> JsonDict:
        # Root-level fields mirror accepts[0] for clients that read them directly.
        body: JsonDict = {"x402Version": self.x402_version}
        if self.accepts:
            body.update(self.accepts[0].to_payload())
        body["accepts"] = [r.to_payload() for r in self.accepts]
        if self.error is not None:
            body["error"] = self.error
        if self.error_message is not None:
            body["errorMessage"] = self.error_message
        return body


class SettlementReceipt(_WireModel):
    success: bool = True
    transaction: str = ""
    network: Optional[str] = None
    payer: Optional[str] = None


@dataclass(frozen=True)
class SettlementResult:
    settled: bool
    error_code: Optional[ErrorCode] = None
    error_reason: Optional[str] = None
    receipt: Optional[SettlementReceipt] = None

    @classmethod
    def success(cls, receipt: SettlementReceipt) -> "SettlementResult":
        return cls(settled=True, receipt=receipt)

    @classmethod
    def rejected(cls, code: ErrorCode, reason: Optional[str] = None) -> "SettlementResult":
        return cls(settled=False, error_code=code, error_reason=reason or code.value)


# =========================================================================
# Codec
# =========================================================================


def encode(requirements: PaymentRequirements) -> str:
    return json.dumps(requirements.to_payload(), separators=(",", ":"))


def decode(data: Union[str, bytes, JsonDict]) -> PaymentRequirements:
    """Parse payment requirements, rejecting anything incomplete.

    No field listed in ``REQUIRED_FIELDS`` is ever defaulted.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RequirementsDecodeError("payment requirements are not valid UTF-8") from exc
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise RequirementsDecodeError(f"payment requirements are not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RequirementsDecodeError("payment requirements must be a JSON object")

    missing = [key for key in REQUIRED_FIELDS if data.get(key) in (None, "")]
    if missing:
        raise RequirementsDecodeError(f"payment requirements missing {', '.join(missing)}")

    try:
        return PaymentRequirements.model_validate(data)
    except ValidationError as exc:
        raise RequirementsDecodeError(f"invalid payment requirements: {exc}") from exc


def parse_payment_required(body: Union[str, bytes, JsonDict]) -> PaymentRequired:
    """Read a 402 body, preferring ``accepts[0]`` over the root-level fields."""
    if isinstance(body, (bytes, bytearray, str)):
        try:
            body = json.loads(body)
        except ValueError as exc:
            raise RequirementsDecodeError(f"402 body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise RequirementsDecodeError("402 body must be a JSON object")

    accepts_raw = body.get("accepts")
    if isinstance(accepts_raw, list) and accepts_raw:
        accepts = [decode(item) for item in accepts_raw]
    else:
        accepts = [decode(body)]

    error = body.get("error")
    message = body.get("errorMessage") or body.get("message")
    return PaymentRequired(
        x402_version=int(body.get("x402Version") or X402_VERSION),
        accepts=accepts,
        error=str(error) if error is not None else None,
        error_message=str(message) if message is not None else None,
    )


def encode_header(payload: JsonDict) -> str:
    raw = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_header(value: str) -> JsonDict:
    try:
        decoded = json.loads(base64.b64decode(value.strip(), validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"header is not base64-encoded JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ValueError("header does not contain a JSON object")
    return decoded


def canonical_resource_url(url: str) -> str:
    """Origin plus path, without query, fragment or trailing slash."""
    parts = urlsplit(str(url))
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"resource URL must be absolute: {url!r}")
    path = parts.path.rstrip("/")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}"


def exact_requirements(
    *,
    network: str,
    amount: str,
    resource: str,
    pay_to: str,
    asset: str,
    description: Optional[str] = None,
    mime_type: Optional[str] = None,
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS,
    extra: Optional[JsonDict] = None,
) -> PaymentRequirements:
    return PaymentRequirements(
        scheme=SCHEME_EXACT,
        network=network,
        max_amount_required=amount,
        resource=resource,
        description=description,
        mime_type=mime_type,
        pay_to=pay_to,
        max_timeout_seconds=max_timeout_seconds,
        asset=asset,
        extra=extra,
    )
