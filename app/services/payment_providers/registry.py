"""
Payment Provider Registry
=========================

PURPOSE:
    Map from ProviderType to a provider instance. Services ask the registry
    for the active backend when issuing an invoice, and for the issuing
    backend when polling or handling a webhook.

    The registry holds no global state beyond its own map. It is built once
    at startup from an explicit ``ProviderConfig`` (see
    ``Settings.provider_config()``); tests build one directly from fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx

from app.core.errors import NoProviderConfigured
from app.services.payment_providers.base import BasePaymentProvider, ProviderMode, ProviderType
from app.services.payment_providers.btcpay import BtcpayProvider
from app.services.payment_providers.cln import ClnProvider
from app.services.payment_providers.lnbits import LnbitsProvider
from app.services.payment_providers.lnd import LndProvider

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ORDER = (ProviderType.BTCPAY, ProviderType.LNBITS)


@dataclass(frozen=True)
class LnbitsConfig:
    base_url: str
    api_key: str
    webhook_secret: Optional[str] = None


@dataclass(frozen=True)
class BtcpayConfig:
    base_url: str
    api_key: str
    store_id: str
    webhook_secret: Optional[str] = None


@dataclass(frozen=True)
class LndConfig:
    grpc_host: str
    grpc_port: int = 10009
    tls_cert_path: Optional[str] = None
    macaroon_hex: Optional[str] = None


@dataclass(frozen=True)
class ClnConfig:
    rest_host: str
    rest_port: int = 3010
    rune: Optional[str] = None


@dataclass(frozen=True)
class ProviderConfig:
    lnbits: Optional[LnbitsConfig] = None
    btcpay: Optional[BtcpayConfig] = None
    lnd: Optional[LndConfig] = None
    cln: Optional[ClnConfig] = None
    # Register a mock BTCPay when no live backend is configured
    mock_fallback: bool = False
    mock_webhook_secret: Optional[str] = None
    timeout_s: float = 10.0
    default_provider: Optional[str] = None

    @property
    def has_live_backend(self) -> bool:
        return any((self.lnbits, self.btcpay, self.lnd, self.cln))


def _coerce_type(value: Union[ProviderType, str, None]) -> Optional[ProviderType]:
    if value is None or value == "":
        return None
    try:
        return ProviderType(value)
    except ValueError:
        logger.warning("Unknown payment provider type %r ignored", value)
        return None


class ProviderRegistry:
    """Lookup table of payment backends keyed by ProviderType."""

    def __init__(self, default: Union[ProviderType, str, None] = None) -> None:
        self._providers: Dict[ProviderType, BasePaymentProvider] = {}
        self.default = _coerce_type(default)

    def register(self, provider: BasePaymentProvider) -> None:
        if provider.type in self._providers:
            logger.warning("Replacing registered payment provider: %s", provider.type.value)
        self._providers[provider.type] = provider
        logger.info(
            "Payment provider registered: type=%s mode=%s",
            provider.type.value, provider.mode.value,
        )

    def get(self, provider_type: Union[ProviderType, str, None]) -> Optional[BasePaymentProvider]:
        ptype = _coerce_type(provider_type)
        if ptype is None:
            return None
        return self._providers.get(ptype)

    def list(self) -> List[BasePaymentProvider]:
        return list(self._providers.values())

    def __contains__(self, provider_type: Union[ProviderType, str]) -> bool:
        return self.get(provider_type) is not None

    def __len__(self) -> int:
        return len(self._providers)

    def resolve(
        self,
        preferred: Union[ProviderType, str, None] = None,
        fallback_order: Iterable[ProviderType] = DEFAULT_FALLBACK_ORDER,
    ) -> BasePaymentProvider:
        """
        Pick the backend for a new invoice.

        Order: ``preferred`` if registered, the registry default, the first
        registered member of ``fallback_order``, then any registered provider.

        Raises:
            NoProviderConfigured: the registry is empty.
        """
        for candidate in (preferred, self.default):
            provider = self.get(candidate)
            if provider is not None:
                return provider

        for ptype in fallback_order:
            provider = self._providers.get(ptype)
            if provider is not None:
                return provider

        if self._providers:
            return next(iter(self._providers.values()))

        raise NoProviderConfigured(detail="no payment providers registered")

    def resolve_for_webhook(
        self,
        payload: Any,
        hint: Union[ProviderType, str, None] = None,
    ) -> Optional[BasePaymentProvider]:
        """
        Identify which backend a webhook belongs to.

        A registered ``hint`` wins. Otherwise the first provider whose
        ``parse_webhook_event`` recognises the payload. None when nothing matches.
        """
        if hint:
            provider = self.get(hint)
            if provider is not None:
                return provider
            logger.warning("Webhook provider hint %r is not registered, sniffing payload", hint)

        for provider in self._providers.values():
            if provider.parse_webhook_event(payload) is not None:
                return provider
        return None

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ProviderRegistry":
        """Build providers for every configured backend."""
        registry = cls(default=config.default_provider)
        timeout_s = config.timeout_s

        if config.lnbits is not None:
            registry.register(LnbitsProvider(
                base_url=config.lnbits.base_url,
                api_key=config.lnbits.api_key,
                webhook_secret=config.lnbits.webhook_secret,
                timeout_s=timeout_s,
                client=client,
            ))

        if config.btcpay is not None:
            registry.register(BtcpayProvider(
                base_url=config.btcpay.base_url,
                api_key=config.btcpay.api_key,
                store_id=config.btcpay.store_id,
                webhook_secret=config.btcpay.webhook_secret,
                timeout_s=timeout_s,
                client=client,
            ))

        if config.lnd is not None:
            registry.register(LndProvider(
                grpc_host=config.lnd.grpc_host,
                grpc_port=config.lnd.grpc_port,
                tls_cert_path=config.lnd.tls_cert_path,
                macaroon_hex=config.lnd.macaroon_hex,
                timeout_s=timeout_s,
                client=client,
            ))

        if config.cln is not None:
            registry.register(ClnProvider(
                rest_host=config.cln.rest_host,
                rest_port=config.cln.rest_port,
                rune=config.cln.rune,
                timeout_s=timeout_s,
                client=client,
            ))

        if not config.has_live_backend and config.mock_fallback:
            logger.warning("No live payment backend configured, registering mock BTCPay provider")
            registry.register(BtcpayProvider(
                mode=ProviderMode.MOCK,
                webhook_secret=config.mock_webhook_secret,
                timeout_s=timeout_s,
            ))

        return registry


# ---------------------------------------------------------------------------
# Application-wide instance, built lazily from settings
# ---------------------------------------------------------------------------
_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        from app.config import settings

        _registry = ProviderRegistry.from_config(settings.provider_config())
    return _registry


async def close_provider_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.aclose()
        _registry = None
