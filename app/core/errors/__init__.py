"""
Error code system.

PaymentEngineError is the base exception for all structured errors.
Raise one of the typed subclasses (they carry a default registry code) or the
base class with an explicit code; the error middleware produces a structured
JSON response from the registry entry.

Usage:
    from app.core.errors import InvalidTierError
    raise InvalidTierError(detail="FREE tier cannot be invoiced")

    from app.core.errors import PaymentEngineError
    raise PaymentEngineError("NM-PRV-001", detail="connection refused to btcpay:49392")
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^NM-[A-Z]{2,6}-\d{3}$")


class PaymentEngineError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "NM-PRV-001". Defaults to the
            subclass ``default_code``.
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    default_code = "NM-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


# ── Configuration: fatal at the call site, never retried ─────────────
class ConfigurationError(PaymentEngineError):
    default_code = "NM-CFG-001"


class NoProviderConfigured(ConfigurationError):
    default_code = "NM-CFG-002"


# ── Validation: rejected synchronously, no side effects ──────────────
class ValidationError(PaymentEngineError):
    default_code = "NM-VAL-001"


class InvalidTierError(ValidationError):
    default_code = "NM-VAL-002"


class InvalidBillingCycleError(ValidationError):
    default_code = "NM-VAL-003"


class InvalidSplitError(ValidationError):
    default_code = "NM-VAL-004"


class InvalidLightningAddressError(ValidationError):
    default_code = "NM-VAL-005"


class NotWinnerError(ValidationError):
    default_code = "NM-VAL-006"


class ListingUnavailableError(ValidationError):
    default_code = "NM-VAL-007"


class NotFoundError(PaymentEngineError):
    default_code = "NM-API-404"


# ── Provider: backend unreachable or rejected the call ───────────────
class ProviderError(PaymentEngineError):
    default_code = "NM-PRV-001"


class ProviderUnavailable(ProviderError):
    default_code = "NM-PRV-002"


# ── Signature: untrusted webhook ─────────────────────────────────────
class SignatureError(PaymentEngineError):
    default_code = "NM-SIG-001"


class BadSignature(SignatureError):
    default_code = "NM-SIG-002"


# ── State conflicts on financial records ─────────────────────────────
class StateConflictError(PaymentEngineError):
    default_code = "NM-STA-001"


class InvalidTransactionState(StateConflictError):
    default_code = "NM-STA-002"


# ── Seller payout failed after the buyer paid ────────────────────────
class PayoutError(PaymentEngineError):
    default_code = "NM-PAY-001"


class MissingPayoutDestination(PayoutError):
    default_code = "NM-PAY-002"


__all__ = [
    "CODE_PATTERN",
    "PaymentEngineError",
    "ConfigurationError",
    "NoProviderConfigured",
    "ValidationError",
    "InvalidTierError",
    "InvalidBillingCycleError",
    "InvalidSplitError",
    "InvalidLightningAddressError",
    "NotWinnerError",
    "ListingUnavailableError",
    "NotFoundError",
    "ProviderError",
    "ProviderUnavailable",
    "SignatureError",
    "BadSignature",
    "StateConflictError",
    "InvalidTransactionState",
    "PayoutError",
    "MissingPayoutDestination",
]
