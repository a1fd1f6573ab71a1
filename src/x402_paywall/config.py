"""Server configuration for the resource guard."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .constants import (
    DEFAULT_DESCRIPTION,
    DEFAULT_FACILITATOR_URL,
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_MIME_TYPE,
    DEFAULT_NETWORK,
    DEFAULT_PAYMENT_AMOUNT,
    ZERO_ADDRESS,
    UnsupportedNetworkError,
    get_default_asset,
)
from .errors import ConfigurationError
from .networks import normalize_network

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TRUTHY = {"1", "true", "yes", "on"}


def _is_address(value: Optional[str]) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


@dataclass(frozen=True)
class ServerConfig:
    """Merchant identity, price and facilitator settings.

    Built once at startup and handed to the guard; request handling never
    reads the environment. Problems are reported by :meth:`validate` so that
    a misconfigured server answers 500 rather than failing to boot.
    """

    pay_to: Optional[str]
    network: str = DEFAULT_NETWORK
    amount: str = DEFAULT_PAYMENT_AMOUNT
    asset: Optional[str] = None
    description: str = DEFAULT_DESCRIPTION
    mime_type: str = DEFAULT_MIME_TYPE
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    facilitator_api_key: Optional[str] = field(default=None, repr=False)
    credential_required: bool = False
    resource_path: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ

        def value(key: str, default: Optional[str] = None) -> Optional[str]:
            raw = env.get(key)
            if raw is None or not raw.strip():
                return default
            return raw.strip()

        timeout_raw = value("MAX_TIMEOUT_SECONDS")
        try:
            max_timeout = int(timeout_raw) if timeout_raw else DEFAULT_MAX_TIMEOUT_SECONDS
        except ValueError:
            max_timeout = -1  # reported by validate()

        return cls(
            pay_to=value("MERCHANT_ADDRESS") or value("PAY_TO_ADDRESS"),
            network=value("X402_NETWORK") or value("NEXT_PUBLIC_NETWORK") or DEFAULT_NETWORK,
            amount=value("PAYMENT_AMOUNT", DEFAULT_PAYMENT_AMOUNT),
            asset=value("ASSET_ADDRESS"),
            description=value("PAYMENT_DESCRIPTION", DEFAULT_DESCRIPTION),
            mime_type=value("PAYMENT_MIME_TYPE", DEFAULT_MIME_TYPE),
            max_timeout_seconds=max_timeout,
            facilitator_url=value("FACILITATOR_URL", DEFAULT_FACILITATOR_URL),
            facilitator_api_key=value("FACILITATOR_API_KEY") or value("THIRDWEB_SECRET_KEY"),
            credential_required=(value("FACILITATOR_CREDENTIAL_REQUIRED", "") or "").lower() in _TRUTHY,
            resource_path=value("VIDEO_PATH"),
        )

    @property
    def network_id(self) -> str:
        return normalize_network(self.network)

    @property
    def asset_address(self) -> str:
        if self.asset:
            return self.asset
        return get_default_asset(self.network_id)["address"]

    def asset_extra(self) -> Dict[str, Any]:
        """EIP-712 domain data a signer needs to authorise a transfer."""
        info = get_default_asset(self.network_id)
        return {
            "name": info["name"],
            "version": info["version"],
            "primaryType": "TransferWithAuthorization",
        }

    def validate(self) -> None:
        if not self.pay_to or self.pay_to.lower() == ZERO_ADDRESS:
            raise ConfigurationError("MERCHANT_ADDRESS must be configured.")
        if not _is_address(self.pay_to):
            raise ConfigurationError("MERCHANT_ADDRESS must be a 0x-prefixed 20-byte address.")
        try:
            network = self.network_id
        except UnsupportedNetworkError as exc:
            raise ConfigurationError(str(exc)) from exc
        if self.asset is None:
            try:
                get_default_asset(network)
            except UnsupportedNetworkError as exc:
                raise ConfigurationError(str(exc)) from exc
        elif not _is_address(self.asset):
            raise ConfigurationError("ASSET_ADDRESS must be a 0x-prefixed 20-byte address.")
        if not (self.amount.isascii() and self.amount.isdigit()) or int(self.amount) <= 0:
            raise ConfigurationError("PAYMENT_AMOUNT must be a positive integer in the asset's smallest unit.")
        if self.max_timeout_seconds <= 0:
            raise ConfigurationError("MAX_TIMEOUT_SECONDS must be a positive integer.")
        if not self.facilitator_url:
            raise ConfigurationError("FACILITATOR_URL must be configured.")
        if self.credential_required and not self.facilitator_api_key:
            raise ConfigurationError("FACILITATOR_API_KEY must be configured.")
