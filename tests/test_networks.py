import pytest

from x402_paywall.constants import BASE_MAINNET, BASE_SEPOLIA, UnsupportedNetworkError
from x402_paywall.networks import NetworkTagAdapter, chain_id, display_name, normalize_network


@pytest.mark.parametrize(
    "tag, expected",
    [
        ("eip155:8453", BASE_MAINNET),
        ("base", BASE_MAINNET),
        ("base:8453", BASE_MAINNET),
        ("8453", BASE_MAINNET),
        ("eip155:84532", BASE_SEPOLIA),
        ("base-sepolia", BASE_SEPOLIA),
        ("BASE:84532", BASE_SEPOLIA),
        (" base-sepolia ", BASE_SEPOLIA),
    ],
)
def test_normalize_network_accepts_historical_spellings(tag, expected):
    assert normalize_network(tag) == expected


@pytest.mark.parametrize("tag", ["", "ethereum", "eip155:1", "solana:mainnet", "base:abc"])
def test_normalize_network_rejects_unknown(tag):
    with pytest.raises(UnsupportedNetworkError):
        normalize_network(tag)


def test_chain_id_and_display_name():
    assert chain_id("base-sepolia") == 84532
    assert display_name(BASE_MAINNET) == "Base"


def test_adapter_translates_both_ways():
    legacy = NetworkTagAdapter("legacy")
    assert legacy.to_signer(BASE_SEPOLIA) == "base-sepolia"
    assert legacy.from_signer("base-sepolia") == BASE_SEPOLIA

    display = NetworkTagAdapter("display")
    assert display.to_signer(BASE_MAINNET) == "base:8453"
    assert display.from_signer("base:8453") == BASE_MAINNET

    assert NetworkTagAdapter().to_signer(BASE_MAINNET) == BASE_MAINNET


def test_adapter_never_mutates_the_held_requirements(requirements):
    adapter = NetworkTagAdapter("legacy")
    signer_view = adapter.for_signer(requirements)

    assert signer_view.network == "base-sepolia"
    assert requirements.network == BASE_SEPOLIA
    assert signer_view.resource == requirements.resource


def test_caip2_adapter_returns_same_object(requirements):
    assert NetworkTagAdapter().for_signer(requirements) is requirements


def test_adapter_rejects_unknown_format():
    with pytest.raises(ValueError):
        NetworkTagAdapter("hex")


def test_signer_tag_outside_the_table_is_kept():
    assert NetworkTagAdapter().from_signer("eip155:1") == "eip155:1"
    assert NetworkTagAdapter("legacy").from_signer(" eip155:137 ") == "eip155:137"


def test_caip2_adapter_passes_unknown_chains_through(requirements):
    polygon = requirements.model_copy(update={"network": "eip155:137"})
    assert NetworkTagAdapter().to_signer("eip155:137") == "eip155:137"
    assert NetworkTagAdapter().for_signer(polygon) is polygon


def test_translating_adapters_need_a_known_chain():
    with pytest.raises(UnsupportedNetworkError):
        NetworkTagAdapter("legacy").to_signer("eip155:137")
    with pytest.raises(UnsupportedNetworkError):
        NetworkTagAdapter("display").to_signer("eip155:1")


def test_non_ascii_digits_are_not_chain_ids():
    with pytest.raises(UnsupportedNetworkError):
        normalize_network("eip155:８４５３")
