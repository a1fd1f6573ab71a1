"""Shared constants for the x402 paywall."""

from __future__ import annotations

from typing import Dict, List, TypedDict


X402_VERSION = 1
SCHEME_EXACT = "exact"

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
PAYMENT_VERIFIED_HEADER = "X-Payment-Verified"
PAYMENT_NETWORK_HEADER = "X-Payment-Network"

BASE_MAINNET = "eip155:8453"
BASE_SEPOLIA = "eip155:84532"

SUPPORTED_NETWORKS: List[str] = [BASE_MAINNET, BASE_SEPOLIA]

DEFAULT_NETWORK = BASE_SEPOLIA
DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"
DEFAULT_PAYMENT_AMOUNT = "100000"  # 0.1 USDC
DEFAULT_MAX_TIMEOUT_SECONDS = 86400
DEFAULT_DESCRIPTION = "Access to premium video content"
DEFAULT_MIME_TYPE = "video/mp4"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class DefaultAsset(TypedDict):
    address: str
    name: str
    version: str
    decimals: int


DEFAULT_ASSETS: Dict[str, DefaultAsset] = {
    BASE_MAINNET: {
        "address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        "name": "USD Coin",
        "version": "2",
        "decimals": 6,
    },
    BASE_SEPOLIA: {
        "address": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        "name": "USDC",
        "version": "2",
        "decimals": 6,
    },
}


class UnsupportedNetworkError(ValueError):
    """Raised when a network is not one of the supported chains."""


def get_default_asset(network: str) -> DefaultAsset:
    try:
        return DEFAULT_ASSETS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No default asset configured for network {network}") from exc
