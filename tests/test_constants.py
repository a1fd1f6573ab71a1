import pytest

from x402_paywall.constants import (
    DEFAULT_ASSETS,
    DEFAULT_PAYMENT_AMOUNT,
    SUPPORTED_NETWORKS,
    UnsupportedNetworkError,
    get_default_asset,
)


def test_supported_networks_match_expected():
    assert SUPPORTED_NETWORKS == ["eip155:8453", "eip155:84532"]


def test_default_assets_match_expected():
    assert DEFAULT_ASSETS["eip155:8453"]["address"] == "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    assert DEFAULT_ASSETS["eip155:84532"]["address"] == "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    assert DEFAULT_ASSETS["eip155:8453"]["decimals"] == 6
    assert DEFAULT_ASSETS["eip155:84532"]["decimals"] == 6


def test_default_price_is_a_tenth_of_a_usdc():
    assert DEFAULT_PAYMENT_AMOUNT == "100000"


def test_get_default_asset_raises_on_unsupported_network():
    with pytest.raises(UnsupportedNetworkError):
        get_default_asset("eip155:1")
