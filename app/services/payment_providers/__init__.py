"""
Payment Providers Package
=========================

Pluggable Lightning payment backends behind one contract, and the registry
that selects between them.
"""

from app.services.payment_providers.base import (
    BasePaymentProvider,
    InvoiceRequest,
    InvoiceResponse,
    InvoiceStatus,
    PaymentState,
    ProviderMode,
    ProviderType,
    WebhookEvent,
    canonical_payload,
)
from app.services.payment_providers.btcpay import BtcpayProvider
from app.services.payment_providers.cln import ClnProvider
from app.services.payment_providers.lnbits import LnbitsProvider
from app.services.payment_providers.lnd import LndProvider
from app.services.payment_providers.registry import (
    BtcpayConfig,
    ClnConfig,
    LnbitsConfig,
    LndConfig,
    ProviderConfig,
    ProviderRegistry,
    close_provider_registry,
    get_provider_registry,
)

__all__ = [
    "BasePaymentProvider",
    "InvoiceRequest",
    "InvoiceResponse",
    "InvoiceStatus",
    "PaymentState",
    "ProviderMode",
    "ProviderType",
    "WebhookEvent",
    "canonical_payload",
    "BtcpayProvider",
    "ClnProvider",
    "LnbitsProvider",
    "LndProvider",
    "BtcpayConfig",
    "ClnConfig",
    "LnbitsConfig",
    "LndConfig",
    "ProviderConfig",
    "ProviderRegistry",
    "close_provider_registry",
    "get_provider_registry",
]
