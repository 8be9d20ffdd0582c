"""
NostrMaxi Payments Configuration
================================

PURPOSE:
    Pydantic-Settings based configuration for the payment & settlement service.
    All settings can be overridden via environment variables (NOSTRMAXI_ prefix).

    Payment backends are NOT configured from inside the provider classes.
    ``Settings.provider_config()`` turns the flat env surface into an explicit
    ``ProviderConfig`` which is handed to ``ProviderRegistry.from_config()``
    at startup.
"""

import logging
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    app_name: str = "NostrMaxi Payments"
    debug: bool = False

    # Public URL of this service, used to build provider webhook callbacks
    base_url: str = "http://localhost:3000"

    # Default provider per flow. Fallback order when unset/unregistered: btcpay, lnbits.
    payments_provider: Optional[Literal["lnbits", "btcpay", "lnd", "cln"]] = None
    marketplace_payments_provider: Optional[Literal["lnbits", "btcpay", "lnd", "cln"]] = None

    # Register a mock-mode BTCPay provider when no live backend is configured.
    # Set to false in production so a missing config fails fast.
    payments_mock_fallback: bool = True

    # Shared webhook secret, used when a backend has no dedicated one
    webhook_secret: Optional[str] = None

    # LNbits
    lnbits_url: Optional[str] = None
    lnbits_api_key: Optional[str] = None       # invoice key
    lnbits_admin_key: Optional[str] = None     # spends from the platform wallet (seller payouts)
    lnbits_webhook_secret: Optional[str] = None

    # BTCPay Server
    btcpay_url: Optional[str] = None
    btcpay_api_key: Optional[str] = None
    btcpay_store_id: Optional[str] = None
    btcpay_webhook_secret: Optional[str] = None

    # LND (stub backend)
    lnd_grpc_host: Optional[str] = None
    lnd_grpc_port: int = 10009
    lnd_tls_cert_path: Optional[str] = None
    lnd_macaroon_hex: Optional[str] = None

    # Core Lightning (stub backend)
    cln_rest_host: Optional[str] = None
    cln_rest_port: int = 3010
    cln_rune: Optional[str] = None

    # Provider HTTP calls (seconds)
    provider_timeout_s: float = 10.0

    # Invoice policy
    invoice_expiry_seconds: int = 600
    marketplace_invoice_expiry_seconds: int = 900
    marketplace_fee_percent: float = 5.0

    # Auth
    apikey_hmac_secret: Optional[str] = None
    auth_cache_ttl: int = 300  # seconds

    # Storage & logging
    data_directory: str = "./data"
    log_directory: str = "logs"
    log_file: str = "nostrmaxi-payments.jsonl"

    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_prefix = "NOSTRMAXI_"

    def provider_config(self):
        """Build the explicit provider configuration from env settings."""
        from app.services.payment_providers.registry import (
            BtcpayConfig,
            ClnConfig,
            LnbitsConfig,
            LndConfig,
            ProviderConfig,
        )

        lnbits = None
        if self.lnbits_url and self.lnbits_api_key:
            lnbits = LnbitsConfig(
                base_url=self.lnbits_url,
                api_key=self.lnbits_api_key,
                webhook_secret=self.lnbits_webhook_secret or self.webhook_secret,
            )

        btcpay = None
        if self.btcpay_url and self.btcpay_api_key and self.btcpay_store_id:
            btcpay = BtcpayConfig(
                base_url=self.btcpay_url,
                api_key=self.btcpay_api_key,
                store_id=self.btcpay_store_id,
                webhook_secret=self.btcpay_webhook_secret or self.webhook_secret,
            )

        lnd = None
        if self.lnd_grpc_host:
            lnd = LndConfig(
                grpc_host=self.lnd_grpc_host,
                grpc_port=self.lnd_grpc_port,
                tls_cert_path=self.lnd_tls_cert_path,
                macaroon_hex=self.lnd_macaroon_hex,
            )

        cln = None
        if self.cln_rest_host:
            cln = ClnConfig(
                rest_host=self.cln_rest_host,
                rest_port=self.cln_rest_port,
                rune=self.cln_rune,
            )

        return ProviderConfig(
            lnbits=lnbits,
            btcpay=btcpay,
            lnd=lnd,
            cln=cln,
            mock_fallback=self.payments_mock_fallback,
            mock_webhook_secret=self.btcpay_webhook_secret or self.webhook_secret,
            timeout_s=self.provider_timeout_s,
            default_provider=self.payments_provider,
        )


settings = Settings()

if settings.payments_mock_fallback and not (settings.btcpay_api_key or settings.lnbits_api_key):
    logger.warning(
        "No live payment backend configured — invoices will be issued in MOCK mode. "
        "Set NOSTRMAXI_PAYMENTS_MOCK_FALLBACK=false in production."
    )
