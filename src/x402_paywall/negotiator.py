"""Client-side payment negotiation: request, 402, build proof, retry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from .constants import PAYMENT_HEADER, PAYMENT_RESPONSE_HEADER, UnsupportedNetworkError
from .errors import (
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
from .networks import NetworkTagAdapter, display_name, normalize_network
from .schemas import (
    PaymentRequired,
    PaymentRequirements,
    SettlementReceipt,
    decode_header,
    parse_payment_required,
)

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    CHALLENGE_RECEIVED = "challenge_received"
    BUILDING_PROOF = "building_proof"
    RETRYING = "retrying"
    GRANTED = "granted"
    FAILED = "failed"


_TERMINAL = (NegotiationState.IDLE, NegotiationState.GRANTED, NegotiationState.FAILED)


@runtime_checkable
class Signer(Protocol):
    """Wallet boundary. Every call may suspend on user confirmation."""

    async def get_network(self) -> str: ...

    async def switch_network(self, network: str) -> bool: ...

    async def build_proof(self, requirements: PaymentRequirements) -> str: ...


@dataclass
class NegotiationOutcome:
    state: NegotiationState
    response: Optional[httpx.Response] = None
    error: Optional[Exception] = None
    requirements: Optional[PaymentRequirements] = None
    receipt: Optional[SettlementReceipt] = None
    attempts: int = 0

    @property
    def granted(self) -> bool:
        return self.state is NegotiationState.GRANTED

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, NegotiationCancelled)


StateListener = Callable[[NegotiationState, NegotiationState], Any]


def _same_network(a: str, b: str) -> bool:
    try:
        return normalize_network(a) == normalize_network(b)
    except UnsupportedNetworkError:
        return a == b


def _network_label(network: str) -> str:
    try:
        return display_name(network)
    except UnsupportedNetworkError:
        return network


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class PaymentNegotiator:
    """Drives one paid request at a time.

    The requirements taken from a challenge are held as received and echoed
    unchanged; only the copy handed to the signer goes through the network
    tag adapter. After ``max_retries`` refreshed challenges the negotiation
    fails instead of looping.
    """

    def __init__(
        self,
        signer: Signer,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: int = 1,
        proof_timeout: Optional[float] = None,
        network_adapter: Optional[NetworkTagAdapter] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._signer = signer
        self._client = http_client
        self._owns_client = http_client is None
        self.max_retries = max_retries
        self.proof_timeout = proof_timeout
        self._adapter = network_adapter or NetworkTagAdapter()
        self._state = NegotiationState.IDLE
        self._requirements: Optional[PaymentRequirements] = None
        self._listeners: List[StateListener] = []
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def requirements(self) -> Optional[PaymentRequirements]:
        return self._requirements

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def cancel(self) -> None:
        """Abandon the pending wallet prompt, if any."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PaymentNegotiator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        return self._client

    def _transition(self, new_state: NegotiationState) -> None:
        old_state = self._state
        self._state = new_state
        logger.debug("negotiation %s -> %s", old_state.value, new_state.value)
        for listener in list(self._listeners):
            listener(old_state, new_state)

    # ------------------------------------------------------------------

    async def run(
        self,
        url: str,
        method: str = "GET",
        *,
        headers: Optional[Dict[str, str]] = None,
        **request_kwargs: Any,
    ) -> NegotiationOutcome:
        if self._state not in _TERMINAL:
            raise RuntimeError(f"negotiation already in progress ({self._state.value})")

        self._cancel_event = asyncio.Event()
        self._requirements = None
        base_headers = dict(headers or {})

        self._transition(NegotiationState.REQUESTING)
        try:
            response = await self._send(method, url, base_headers, request_kwargs)
        except TransportError as exc:
            return self._fail(exc)

        if _is_success(response.status_code):
            return self._grant(response, attempts=0)
        if response.status_code != 402:
            return self._fail(UnexpectedStatusError(response.status_code, response.text), response)

        try:
            challenge = parse_payment_required(response.content)
        except RequirementsDecodeError as exc:
            return self._fail(exc, response)
        self._requirements = challenge.requirements
        logger.info(
            "payment required resource=%s amount=%s network=%s",
            self._requirements.resource,
            self._requirements.max_amount_required,
            self._requirements.network,
        )
        self._transition(NegotiationState.CHALLENGE_RECEIVED)

        attempts = 0
        retries = 0
        while True:
            self._transition(NegotiationState.BUILDING_PROOF)
            try:
                proof = await self._build_proof(self._requirements)
            except NegotiationCancelled as exc:
                logger.info("negotiation cancelled while building proof")
                self._reset()
                return NegotiationOutcome(NegotiationState.IDLE, error=exc, attempts=attempts)
            except ProofBuildError as exc:
                return self._fail(exc, attempts=attempts)
            except asyncio.CancelledError:
                self._reset()
                raise
            except Exception:
                self._transition(NegotiationState.FAILED)
                raise

            self._transition(NegotiationState.RETRYING)
            attempts += 1
            paid_headers = dict(base_headers)
            paid_headers[PAYMENT_HEADER] = proof
            try:
                response = await self._send(method, url, paid_headers, request_kwargs)
            except TransportError as exc:
                return self._fail(exc, attempts=attempts)

            if _is_success(response.status_code):
                return self._grant(response, attempts=attempts)
            if response.status_code != 402:
                return self._fail(
                    UnexpectedStatusError(response.status_code, response.text), response, attempts
                )

            try:
                refreshed = parse_payment_required(response.content)
            except RequirementsDecodeError as exc:
                return self._fail(exc, response, attempts)

            if retries >= self.max_retries:
                return self._fail(self._rejection(refreshed), response, attempts)
            retries += 1
            logger.info(
                "payment rejected (%s); retrying with refreshed requirements (%d/%d)",
                refreshed.error,
                retries,
                self.max_retries,
            )
            self._requirements = refreshed.requirements
            self._transition(NegotiationState.CHALLENGE_RECEIVED)

    # ------------------------------------------------------------------

    async def _send(
        self, method: str, url: str, headers: Dict[str, str], request_kwargs: Dict[str, Any]
    ) -> httpx.Response:
        client = self._get_async_client()
        try:
            return await client.request(method, url, headers=headers, **request_kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise TransportError(f"{method} {url} failed: {exc}") from exc

    def _suspension_timeout(self, requirements: PaymentRequirements) -> float:
        timeout = float(requirements.max_timeout_seconds)
        if self.proof_timeout is not None:
            timeout = min(timeout, self.proof_timeout)
        return timeout

    async def _prepare_proof(self, requirements: PaymentRequirements) -> str:
        current = self._adapter.from_signer(await self._signer.get_network())
        try:
            target = self._adapter.to_signer(requirements.network)
            signer_view = self._adapter.for_signer(requirements)
        except UnsupportedNetworkError as exc:
            raise ProofBuildError(str(exc), reason="unsupported_network") from exc

        if not _same_network(current, requirements.network):
            logger.info("switching wallet network %s -> %s", current, requirements.network)
            if not await self._signer.switch_network(target):
                raise NetworkSwitchRejected(
                    current, requirements.network, _network_label(requirements.network)
                )

        proof = await self._signer.build_proof(signer_view)
        if not proof:
            raise ProofRejected("Signer returned an empty payment proof.")
        return proof

    async def _build_proof(self, requirements: PaymentRequirements) -> str:
        cancel_event = self._cancel_event
        if cancel_event.is_set():
            raise NegotiationCancelled("negotiation cancelled")

        proof_task = asyncio.ensure_future(self._prepare_proof(requirements))
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {proof_task, cancel_task},
                timeout=self._suspension_timeout(requirements),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (proof_task, cancel_task):
                if not task.done():
                    task.cancel()

        if proof_task in done:
            return proof_task.result()
        if cancel_task in done:
            raise NegotiationCancelled("negotiation cancelled while waiting for the wallet")
        raise ProofBuildError("Timed out waiting for the wallet to sign the payment.", reason="timeout")

    def _rejection(self, payment_required: PaymentRequired) -> PaymentError:
        code = payment_required.error_code
        if code is ErrorCode.VERIFICATION_UNAVAILABLE:
            return TransientInfraError(payment_required.error_message or code.value)
        return VerificationError(code or ErrorCode.INVALID_PAYMENT, payment_required.error_message)

    def _reset(self) -> None:
        self._requirements = None
        self._transition(NegotiationState.IDLE)

    def _fail(
        self,
        error: Exception,
        response: Optional[httpx.Response] = None,
        attempts: int = 0,
    ) -> NegotiationOutcome:
        logger.warning("negotiation failed: %s", error)
        self._transition(NegotiationState.FAILED)
        return NegotiationOutcome(
            NegotiationState.FAILED,
            response=response,
            error=error,
            requirements=self._requirements,
            attempts=attempts,
        )

    def _grant(self, response: httpx.Response, attempts: int) -> NegotiationOutcome:
        receipt = None
        raw = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if raw:
            try:
                receipt = SettlementReceipt.model_validate(decode_header(raw))
            except ValueError as exc:
                logger.warning("ignoring unreadable %s header: %s", PAYMENT_RESPONSE_HEADER, exc)
        self._transition(NegotiationState.GRANTED)
        return NegotiationOutcome(
            NegotiationState.GRANTED,
            response=response,
            requirements=self._requirements,
            receipt=receipt,
            attempts=attempts,
        )
