"""Network identifier normalisation and boundary adapters.

Internally every network is carried in its CAIP-2 form (``eip155:8453``).
Other spellings only exist at collaborator boundaries: legacy x402 clients
expect ``base`` / ``base-sepolia`` and older display code used ``base:8453``.
"""

from __future__ import annotations

from typing import Dict

from .constants import BASE_MAINNET, BASE_SEPOLIA, SUPPORTED_NETWORKS, UnsupportedNetworkError
from .schemas import PaymentRequirements

CHAIN_IDS: Dict[str, int] = {
    BASE_MAINNET: 8453,
    BASE_SEPOLIA: 84532,
}

LEGACY_NAMES: Dict[str, str] = {
    BASE_MAINNET: "base",
    BASE_SEPOLIA: "base-sepolia",
}

DISPLAY_NAMES: Dict[str, str] = {
    BASE_MAINNET: "Base",
    BASE_SEPOLIA: "Base Sepolia",
}

_BY_LEGACY_NAME = {name: network for network, name in LEGACY_NAMES.items()}
_BY_CHAIN_ID = {chain_id: network for network, chain_id in CHAIN_IDS.items()}


def normalize_network(value: str) -> str:
    """Map any known spelling of a network to its canonical ``eip155:<id>`` form."""
    if not isinstance(value, str) or not value.strip():
        raise UnsupportedNetworkError(f"Invalid network identifier: {value!r}")
    tag = value.strip().lower()

    if tag in _BY_LEGACY_NAME:
        return _BY_LEGACY_NAME[tag]

    family, sep, reference = tag.partition(":")
    if not sep:
        if tag.isascii() and tag.isdigit():
            return _network_for_chain_id(int(tag), value)
        raise UnsupportedNetworkError(f"Unsupported network {value}")

    if family in ("eip155", "base") and reference.isascii() and reference.isdigit():
        return _network_for_chain_id(int(reference), value)
    raise UnsupportedNetworkError(f"Unsupported network {value}")


def _network_for_chain_id(chain_id: int, original: str) -> str:
    try:
        return _BY_CHAIN_ID[chain_id]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"Unsupported network {original}") from exc


def chain_id(network: str) -> int:
    return CHAIN_IDS[normalize_network(network)]


def display_name(network: str) -> str:
    return DISPLAY_NAMES[normalize_network(network)]


class NetworkTagAdapter:
    """Translates canonical network ids to the tag format a signer expects.

    ``caip2`` leaves ids untouched, ``legacy`` uses ``base`` / ``base-sepolia``
    and ``display`` uses ``base:<chainId>``.
    """

    FORMATS = ("caip2", "legacy", "display")

    def __init__(self, tag_format: str = "caip2") -> None:
        if tag_format not in self.FORMATS:
            raise ValueError(f"Unknown network tag format: {tag_format}")
        self.tag_format = tag_format

    def to_signer(self, network: str) -> str:
        # caip2 signers take the challenge tag as issued, known chain or not.
        if self.tag_format == "caip2":
            return network
        canonical = normalize_network(network)
        if self.tag_format == "legacy":
            return LEGACY_NAMES[canonical]
        return f"base:{chain_id(canonical)}"

    def from_signer(self, tag: str) -> str:
        """Canonical id for a signer tag; chains outside the table come back unchanged."""
        try:
            return normalize_network(tag)
        except UnsupportedNetworkError:
            return tag.strip() if isinstance(tag, str) else str(tag)

    def for_signer(self, requirements: PaymentRequirements) -> PaymentRequirements:
        """Return a copy of ``requirements`` carrying the signer's network tag.

        The original object is left untouched so the requirements echoed to
        the server stay byte-identical to the challenge.
        """
        tag = self.to_signer(requirements.network)
        if tag == requirements.network:
            return requirements
        return requirements.model_copy(update={"network": tag})


__all__ = [
    "CHAIN_IDS",
    "LEGACY_NAMES",
    "DISPLAY_NAMES",
    "SUPPORTED_NETWORKS",
    "NetworkTagAdapter",
    "chain_id",
    "display_name",
    "normalize_network",
]
