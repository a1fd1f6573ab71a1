"""Facilitator clients: the boundary where proofs are verified and settled."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

import httpx

from .constants import DEFAULT_FACILITATOR_URL, X402_VERSION
from .errors import ConfigurationError, ErrorCode, TransientInfraError, classify_reason
from .schemas import PaymentRequirements, SettlementReceipt, SettlementResult

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

# Failures where the request provably never reached the facilitator.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# Statuses that say nothing about the proof.
_TRANSIENT_STATUSES = (408, 429)
_MISROUTED_STATUSES = (404, 405)


@runtime_checkable
class Facilitator(Protocol):
    async def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult: ...


@runtime_checkable
class FacilitatorSync(Protocol):
    def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult: ...


@dataclass
class FacilitatorConfig:
    url: str = DEFAULT_FACILITATOR_URL
    api_key: Optional[str] = None
    http_client: Any = None
    timeout: float = 15.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    verify_first: bool = True


def fingerprint(proof: str) -> str:
    """Short, non-reversible label for a proof, safe to log."""
    return hashlib.sha256(proof.encode("utf-8")).hexdigest()[:12]


def _coerce_config(config: FacilitatorConfig | Dict[str, Any] | None) -> FacilitatorConfig:
    if isinstance(config, dict):
        return FacilitatorConfig(**config)
    config = config or FacilitatorConfig()
    if not config.url:
        config.url = DEFAULT_FACILITATOR_URL
    return config


def _pick(payload: JsonDict, keys, default=None):
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


class _FacilitatorBase:
    def __init__(self, config: FacilitatorConfig | Dict[str, Any] | None = None) -> None:
        self._config = _coerce_config(config)
        self._url = self._config.url.rstrip("/")
        self._owns_client = self._config.http_client is None

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
            headers["X-Secret-Key"] = self._config.api_key
        return headers

    def _build_request_body(self, proof: str, requirements: PaymentRequirements) -> JsonDict:
        # The proof goes out exactly as received; re-encoding it can break the signature.
        return {
            "x402Version": X402_VERSION,
            "paymentHeader": proof,
            "paymentRequirements": requirements.to_payload(),
        }

    def _should_retry(self, exc: Exception, attempt: int, idempotent: bool) -> bool:
        if attempt >= self._config.max_attempts:
            return False
        return idempotent or isinstance(exc, _NOT_SENT_ERRORS)

    def _backoff(self, attempt: int) -> float:
        return self._config.backoff_seconds * (2 ** (attempt - 1))

    def _read_response(self, endpoint: str, response: httpx.Response) -> Tuple[int, JsonDict]:
        if response.status_code in (401, 403):
            raise ConfigurationError(
                f"Facilitator rejected credentials on /{endpoint} ({response.status_code})"
            )
        if response.status_code in _MISROUTED_STATUSES:
            raise ConfigurationError(
                f"Facilitator has no /{endpoint} endpoint at {self._url} ({response.status_code})"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientInfraError(
                f"Facilitator /{endpoint} returned invalid JSON ({response.status_code})"
            ) from exc
        if not isinstance(payload, dict):
            raise TransientInfraError(f"Facilitator /{endpoint} returned a non-object body")
        return response.status_code, payload

    def _verify_rejection(self, status: int, payload: JsonDict) -> Optional[SettlementResult]:
        """Return a rejection for a failed verify call, ``None`` when the proof is valid."""
        is_valid = _pick(payload, ["isValid", "is_valid", "valid"])
        if status < 400 and is_valid is True:
            return None
        reason = _pick(payload, ["invalidReason", "invalid_reason", "error", "message"])
        if reason is None:
            reason = f"verify failed with status {status}"
        return SettlementResult.rejected(classify_reason(str(reason)), str(reason))

    def _settle_result(
        self, status: int, payload: JsonDict, requirements: PaymentRequirements
    ) -> SettlementResult:
        error_reason = _pick(payload, ["errorReason", "error_reason", "error", "message"])
        success = bool(payload.get("success", error_reason is None)) and status < 400
        if not success:
            reason = str(error_reason or f"settle failed with status {status}")
            return SettlementResult.rejected(classify_reason(reason), reason)

        tx = _pick(
            payload,
            ["transaction", "transactionHash", "txHash", "tx", "hash", "requestId", "request_id"],
            "",
        )
        network = _pick(payload, ["network", "networkId", "chainId", "chain_id"], requirements.network)
        payer = _pick(payload, ["payer", "userAddress", "user_address", "from"])
        return SettlementResult.success(
            SettlementReceipt(
                success=True,
                transaction=str(tx),
                network=str(network),
                payer=str(payer) if payer is not None else None,
            )
        )


class FacilitatorClient(_FacilitatorBase):
    """Async facilitator client over ``httpx.AsyncClient``.

    ``/verify`` is retried on any transport failure, 5xx, 408 or 429. ``/settle`` is
    only retried when the request never left this process, so a proof is
    never settled twice on our account.
    """

    def __init__(self, config: FacilitatorConfig | Dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self._client: Optional[httpx.AsyncClient] = self._config.http_client

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FacilitatorClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult:
        body = self._build_request_body(proof, requirements)
        label = fingerprint(proof)

        if self._config.verify_first:
            status, payload = await self._post("verify", body, idempotent=True)
            rejection = self._verify_rejection(status, payload)
            if rejection is not None:
                logger.warning("facilitator verify rejected proof=%s reason=%s", label, rejection.error_reason)
                return rejection

        status, payload = await self._post("settle", body, idempotent=False)
        result = self._settle_result(status, payload, requirements)
        if result.settled:
            logger.info("facilitator settle success proof=%s tx=%s", label, result.receipt.transaction)
        else:
            logger.warning("facilitator settle rejected proof=%s reason=%s", label, result.error_reason)
        return result

    async def _post(self, endpoint: str, body: JsonDict, *, idempotent: bool) -> Tuple[int, JsonDict]:
        url = f"{self._url}/{endpoint}"
        client = self._get_async_client()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await client.post(url, headers=self._headers(), json=body)
            except httpx.TransportError as exc:
                if self._should_retry(exc, attempt, idempotent):
                    delay = self._backoff(attempt)
                    logger.warning("POST %s failed (attempt %d): %s; retrying in %.2fs", url, attempt, exc, delay)
                    await asyncio.sleep(delay)
                    continue
                logger.warning("POST %s failed (attempt %d): %s", url, attempt, exc)
                raise TransientInfraError(f"failed to contact facilitator at {url}: {exc}") from exc

            if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUSES:
                if idempotent and attempt < self._config.max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning("POST %s returned %d; retrying in %.2fs", url, response.status_code, delay)
                    await asyncio.sleep(delay)
                    continue
                raise TransientInfraError(
                    f"facilitator /{endpoint} returned {response.status_code}: {response.text[:200]}"
                )
            return self._read_response(endpoint, response)


class FacilitatorClientSync(_FacilitatorBase):
    """Sync facilitator client over ``httpx.Client``; same retry policy."""

    def __init__(self, config: FacilitatorConfig | Dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self._client: Optional[httpx.Client] = self._config.http_client

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._config.timeout)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "FacilitatorClientSync":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def verify_and_settle(
        self, proof: str, requirements: PaymentRequirements
    ) -> SettlementResult:
        body = self._build_request_body(proof, requirements)
        label = fingerprint(proof)

        if self._config.verify_first:
            status, payload = self._post("verify", body, idempotent=True)
            rejection = self._verify_rejection(status, payload)
            if rejection is not None:
                logger.warning("facilitator verify rejected proof=%s reason=%s", label, rejection.error_reason)
                return rejection

        status, payload = self._post("settle", body, idempotent=False)
        result = self._settle_result(status, payload, requirements)
        if result.settled:
            logger.info("facilitator settle success proof=%s tx=%s", label, result.receipt.transaction)
        else:
            logger.warning("facilitator settle rejected proof=%s reason=%s", label, result.error_reason)
        return result

    def _post(self, endpoint: str, body: JsonDict, *, idempotent: bool) -> Tuple[int, JsonDict]:
        url = f"{self._url}/{endpoint}"
        client = self._get_client()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = client.post(url, headers=self._headers(), json=body)
            except httpx.TransportError as exc:
                if self._should_retry(exc, attempt, idempotent):
                    delay = self._backoff(attempt)
                    logger.warning("POST %s failed (attempt %d): %s; retrying in %.2fs", url, attempt, exc, delay)
                    time.sleep(delay)
                    continue
                logger.warning("POST %s failed (attempt %d): %s", url, attempt, exc)
                raise TransientInfraError(f"failed to contact facilitator at {url}: {exc}") from exc

            if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUSES:
                if idempotent and attempt < self._config.max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning("POST %s returned %d; retrying in %.2fs", url, response.status_code, delay)
                    time.sleep(delay)
                    continue
                raise TransientInfraError(
                    f"facilitator /{endpoint} returned {response.status_code}: {response.text[:200]}"
                )
            return self._read_response(endpoint, response)


def facilitator_config_from_server(server_config, http_client: Any = None) -> FacilitatorConfig:
    """Derive the facilitator settings from a :class:`~x402_paywall.config.ServerConfig`."""
    return FacilitatorConfig(
        url=server_config.facilitator_url,
        api_key=server_config.facilitator_api_key,
        http_client=http_client,
    )


__all__ = [
    "Facilitator",
    "FacilitatorSync",
    "FacilitatorConfig",
    "FacilitatorClient",
    "FacilitatorClientSync",
    "facilitator_config_from_server",
    "fingerprint",
]
