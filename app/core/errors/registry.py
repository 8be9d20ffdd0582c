"""
Error registry for the payment engine.

``registry.yaml`` is the single source of truth for how an error code is
presented: HTTP status, user-safe message, severity, whether a retry can
help, and remediation steps. The file is validated on load; every
``PaymentEngineError`` subclass must have its default code registered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from app.core.errors import CODE_PATTERN, PaymentEngineError

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path(__file__).with_name("registry.yaml")

DOMAINS = frozenset({"SYS", "CFG", "VAL", "API", "PRV", "SIG", "STA", "PAY"})
SEVERITIES = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")
REQUIRED_FIELDS = (
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
)
FALLBACK_CODE = "NM-SYS-001"


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)

    @property
    def log_level(self) -> int:
        return logging.WARNING if self.severity == "WARN" else getattr(logging, self.severity)


class RegistryValidationError(Exception):
    """registry.yaml is malformed or incomplete."""


def _parse_entry(idx: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, dict):
        raise RegistryValidationError(f"entry {idx}: expected a mapping")
    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise RegistryValidationError(f"entry {idx} ({raw.get('code', '?')}): missing {', '.join(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"{code!r}: bad code format")
    if raw["domain"] != code.split("-")[1] or raw["domain"] not in DOMAINS:
        raise RegistryValidationError(f"{code}: domain {raw['domain']!r} does not match the code")
    if raw["severity"] not in SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")
    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

    return ErrorEntry(
        code=code,
        domain=raw["domain"],
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=status,
        safe_message=raw["safe_message"],
        remediation=list(raw["remediation"] or []),
    )


def _error_classes(root: type = PaymentEngineError) -> Iterable[type]:
    yield root
    for sub in root.__subclasses__():
        yield from _error_classes(sub)


class ErrorRegistry:
    """Code → ErrorEntry lookup, loaded once at startup."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}

    def load(self, path: Optional[Path] = None) -> None:
        with open(path or REGISTRY_PATH, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors")
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code {entry.code}")
            entries[entry.code] = entry

        unregistered = sorted({cls.default_code for cls in _error_classes()} - entries.keys())
        if unregistered:
            raise RegistryValidationError(f"error classes without registry entries: {', '.join(unregistered)}")

        self._entries = entries
        logger.info("Error registry loaded: %d codes", len(entries))

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def resolve(self, code: str) -> ErrorEntry:
        """Entry for ``code``, or the generic internal-error entry."""
        entry = self._entries.get(code) or self._entries.get(FALLBACK_CODE)
        if entry is None:
            raise RegistryValidationError("error registry is not loaded")
        return entry

    def __contains__(self, code: str) -> bool:
        return code in self._entries

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
