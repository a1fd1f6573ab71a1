import pytest

from x402_paywall.config import ServerConfig
from x402_paywall.constants import BASE_SEPOLIA
from x402_paywall.schemas import PaymentRequirements, exact_requirements

from stubs import MERCHANT, RESOURCE_URL, USDC_SEPOLIA


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(
        pay_to=MERCHANT,
        network=BASE_SEPOLIA,
        facilitator_url="http://facilitator.test",
    )


@pytest.fixture
def requirements() -> PaymentRequirements:
    return exact_requirements(
        network=BASE_SEPOLIA,
        amount="100000",
        resource=RESOURCE_URL,
        pay_to=MERCHANT,
        asset=USDC_SEPOLIA,
        description="Access to premium video content",
        mime_type="video/mp4",
        max_timeout_seconds=86400,
        extra={"name": "USDC", "version": "2", "primaryType": "TransferWithAuthorization"},
    )
