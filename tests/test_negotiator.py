import asyncio

import pytest

httpx = pytest.importorskip("httpx")

from x402_paywall.constants import BASE_MAINNET, BASE_SEPOLIA
from x402_paywall.errors import (
    ErrorCode,
    NetworkSwitchRejected,
    ProofBuildError,
    ProofRejected,
    TransientInfraError,
    TransportError,
    UnexpectedStatusError,
    VerificationError,
)
from x402_paywall.negotiator import NegotiationState, PaymentNegotiator
from x402_paywall.networks import NetworkTagAdapter

from stubs import RESOURCE_URL, StubSigner, challenge_response


class PaywallStub:
    """Answers 402 until a paid request arrives, then 200."""

    def __init__(self, requirements, paid=None):
        self.requirements = requirements
        self.paid = paid or (lambda request: httpx.Response(200, content=b"video"))
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if "X-PAYMENT" not in request.headers:
            return challenge_response(self.requirements)
        return self.paid(request)


class HangingSigner(StubSigner):
    async def build_proof(self, requirements):
        self.seen.append(requirements)
        await asyncio.Event().wait()


class RefusingSigner(StubSigner):
    async def build_proof(self, requirements):
        raise ProofRejected()


def _negotiator(handler, signer, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PaymentNegotiator(signer, client, **kwargs), client


@pytest.mark.asyncio
async def test_open_resource_is_granted_without_payment(requirements):
    signer = StubSigner()
    negotiator, client = _negotiator(lambda request: httpx.Response(200, text="free"), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert outcome.attempts == 0
    assert signer.seen == []


@pytest.mark.asyncio
async def test_challenge_then_grant_against_protected_app(server_config):
    pytest.importorskip("eth_account")
    fastapi = pytest.importorskip("fastapi")
    from x402_paywall.guard import BytesResource, ResourceGuard
    from x402_paywall.http import fastapi_payment_middleware
    from x402_paywall.sandbox import SandboxFacilitator, SandboxLedger, SandboxSigner

    ledger = SandboxLedger()
    guard = ResourceGuard(server_config, SandboxFacilitator(ledger), BytesResource(b"video"))
    middleware = fastapi_payment_middleware({"GET /api/premium": guard})
    app = fastapi.FastAPI()

    @app.middleware("http")
    async def x402_mw(request, call_next):
        return await middleware(request, call_next)

    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
    negotiator = PaymentNegotiator(SandboxSigner.generate(), client)
    states = []
    negotiator.subscribe(lambda old, new: states.append(new))

    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert outcome.response.content == b"video"
    assert outcome.receipt.transaction.startswith("0x")
    assert outcome.requirements.resource == RESOURCE_URL
    assert outcome.attempts == 1
    assert states == [
        NegotiationState.REQUESTING,
        NegotiationState.CHALLENGE_RECEIVED,
        NegotiationState.BUILDING_PROOF,
        NegotiationState.RETRYING,
        NegotiationState.GRANTED,
    ]
    assert ledger.settled_count == 1


@pytest.mark.asyncio
async def test_proof_is_sent_in_payment_header(requirements):
    paywall = PaywallStub(requirements)
    negotiator, client = _negotiator(paywall, StubSigner())
    try:
        outcome = await negotiator.run(RESOURCE_URL, headers={"Accept": "video/mp4"})
    finally:
        await client.aclose()

    assert outcome.granted
    assert [r.headers.get("X-PAYMENT") for r in paywall.requests] == [None, "stub-proof-1"]
    assert all(r.headers["Accept"] == "video/mp4" for r in paywall.requests)


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [1, 3])
async def test_persistent_rejection_stops_after_max_retries(requirements, max_retries):
    paywall = PaywallStub(
        requirements,
        paid=lambda request: challenge_response(requirements, "invalid_signature", "bad signature"),
    )
    signer = StubSigner()
    negotiator, client = _negotiator(paywall, signer, max_retries=max_retries)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.FAILED
    assert negotiator.state is NegotiationState.FAILED
    assert isinstance(outcome.error, VerificationError)
    assert outcome.error.code is ErrorCode.INVALID_SIGNATURE
    assert len(paywall.requests) == 2 + max_retries
    assert len(signer.seen) == 1 + max_retries
    assert outcome.response.status_code == 402


@pytest.mark.asyncio
async def test_verification_unavailable_is_transient(requirements):
    paywall = PaywallStub(
        requirements,
        paid=lambda request: challenge_response(requirements, "verification_unavailable"),
    )
    negotiator, client = _negotiator(paywall, StubSigner(), max_retries=0)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert isinstance(outcome.error, TransientInfraError)
    assert len(paywall.requests) == 2


@pytest.mark.asyncio
async def test_retry_uses_refreshed_requirements(requirements):
    refreshed = requirements.model_copy(update={"max_amount_required": "200000"})
    paid_calls = []

    def paid(request):
        paid_calls.append(request)
        if len(paid_calls) == 1:
            return challenge_response(refreshed, "expired")
        return httpx.Response(200, content=b"video")

    signer = StubSigner()
    negotiator, client = _negotiator(PaywallStub(requirements, paid), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert outcome.attempts == 2
    assert [r.max_amount_required for r in signer.seen] == ["100000", "200000"]
    assert paid_calls[1].headers["X-PAYMENT"] == "stub-proof-2"


@pytest.mark.asyncio
async def test_unexpected_status_fails(requirements):
    negotiator, client = _negotiator(lambda request: httpx.Response(500, text="boom"), StubSigner())
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.FAILED
    assert isinstance(outcome.error, UnexpectedStatusError)
    assert outcome.error.status_code == 500
    assert outcome.error.body == "boom"


@pytest.mark.asyncio
async def test_transport_failure_keeps_its_cause(requirements):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    negotiator, client = _negotiator(handler, StubSigner())
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert isinstance(outcome.error, TransportError)
    assert isinstance(outcome.error.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_malformed_challenge_fails(requirements):
    body = requirements.to_payload()
    del body["payTo"]
    negotiator, client = _negotiator(lambda request: httpx.Response(402, json=body), StubSigner())
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.FAILED
    assert isinstance(outcome.error, ValueError)


@pytest.mark.asyncio
async def test_wallet_is_switched_to_required_network(requirements):
    signer = StubSigner(network=BASE_MAINNET)
    negotiator, client = _negotiator(PaywallStub(requirements), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert signer.switches == [BASE_SEPOLIA]


@pytest.mark.asyncio
async def test_refused_network_switch_fails(requirements):
    signer = StubSigner(network=BASE_MAINNET, approve_switch=False)
    paywall = PaywallStub(requirements)
    negotiator, client = _negotiator(paywall, signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert isinstance(outcome.error, NetworkSwitchRejected)
    assert outcome.error.reason == "network_switch_rejected"
    assert signer.seen == []
    assert len(paywall.requests) == 1


@pytest.mark.asyncio
async def test_rejected_signature_fails(requirements):
    negotiator, client = _negotiator(PaywallStub(requirements), RefusingSigner())
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.FAILED
    assert isinstance(outcome.error, ProofRejected)
    assert outcome.requirements == requirements


@pytest.mark.asyncio
async def test_legacy_signer_sees_legacy_tag_only(requirements):
    signer = StubSigner(network="base-sepolia")
    paywall = PaywallStub(requirements)
    negotiator, client = _negotiator(paywall, signer, network_adapter=NetworkTagAdapter("legacy"))
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert signer.switches == []
    assert signer.seen[0].network == "base-sepolia"
    assert outcome.requirements == requirements
    assert outcome.requirements.network == BASE_SEPOLIA


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_wallet_returns_to_idle(requirements):
    paywall = PaywallStub(requirements)
    negotiator, client = _negotiator(paywall, HangingSigner())
    building = asyncio.Event()
    negotiator.subscribe(
        lambda old, new: building.set() if new is NegotiationState.BUILDING_PROOF else None
    )

    try:
        task = asyncio.ensure_future(negotiator.run(RESOURCE_URL))
        await asyncio.wait_for(building.wait(), timeout=1)
        await asyncio.sleep(0)
        negotiator.cancel()
        outcome = await asyncio.wait_for(task, timeout=1)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.IDLE
    assert outcome.cancelled
    assert negotiator.state is NegotiationState.IDLE
    assert negotiator.requirements is None
    assert len(paywall.requests) == 1


@pytest.mark.asyncio
async def test_wallet_timeout_fails(requirements):
    negotiator, client = _negotiator(PaywallStub(requirements), HangingSigner(), proof_timeout=0.05)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.state is NegotiationState.FAILED
    assert isinstance(outcome.error, ProofBuildError)
    assert outcome.error.reason == "timeout"


@pytest.mark.asyncio
async def test_negotiator_can_run_again_after_failure(requirements):
    responses = iter([httpx.Response(503), httpx.Response(200, text="ok")])
    negotiator, client = _negotiator(lambda request: next(responses), StubSigner())
    try:
        first = await negotiator.run(RESOURCE_URL)
        second = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert first.state is NegotiationState.FAILED
    assert second.granted


def test_negative_max_retries_is_rejected():
    with pytest.raises(ValueError):
        PaymentNegotiator(StubSigner(), max_retries=-1)


@pytest.mark.asyncio
async def test_wallet_on_unlisted_chain_is_switched(requirements):
    signer = StubSigner(network="eip155:1")
    negotiator, client = _negotiator(PaywallStub(requirements), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert signer.switches == [BASE_SEPOLIA]


@pytest.mark.asyncio
async def test_refused_switch_from_unlisted_chain_names_the_target(requirements):
    signer = StubSigner(network="eip155:1", approve_switch=False)
    negotiator, client = _negotiator(PaywallStub(requirements), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert isinstance(outcome.error, NetworkSwitchRejected)
    assert outcome.error.current == "eip155:1"
    assert "Base Sepolia" in str(outcome.error)


@pytest.mark.asyncio
async def test_challenge_on_unlisted_chain_passes_through(requirements):
    polygon = requirements.model_copy(update={"network": "eip155:137"})
    signer = StubSigner(network="eip155:137")
    negotiator, client = _negotiator(PaywallStub(polygon), signer)
    try:
        outcome = await negotiator.run(RESOURCE_URL)
    finally:
        await client.aclose()

    assert outcome.granted
    assert signer.switches == []
    assert signer.seen[0].network == "eip155:137"


@pytest.mark.asyncio
async def test_cancelling_the_task_while_waiting_for_wallet_resets(requirements):
    negotiator, client = _negotiator(PaywallStub(requirements), HangingSigner())
    building = asyncio.Event()
    negotiator.subscribe(
        lambda old, new: building.set() if new is NegotiationState.BUILDING_PROOF else None
    )

    try:
        task = asyncio.ensure_future(negotiator.run(RESOURCE_URL))
        await asyncio.wait_for(building.wait(), timeout=1)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    finally:
        await client.aclose()

    assert negotiator.state is NegotiationState.IDLE
    assert negotiator.requirements is None
