"""
Logging utilities for the escrow engine with secret masking.

Custodial secrets must never reach a log line. Everything that logs
structured data about wallets or keys goes through ``mask_sensitive_data``,
and engine components report events through an injected ``EventSink``
instead of a process-wide logger singleton.

Usage:
    from escrow_engine.logging import LoggingEventSink, mask_sensitive_data

    sink = LoggingEventSink()
    sink.event("escrow.released", escrow_id="esc_123", amount="97")
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, Optional, Protocol, Sequence

from .constants import LoggingDefaults

_SENSITIVE_FRAGMENTS = ("secret", "password", "private", "credential", "seed", "encrypt")


# =============================================================================
# Sensitive Data Masking
# =============================================================================

def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters.

    Args:
        value: The value to mask
        show_chars: Number of characters to show at start and end

    Returns:
        Masked string
    """
    if not value or len(value) <= show_chars * 2:
        return LoggingDefaults.MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates secret material.

    ``token`` is deliberately not treated as sensitive here: in this engine
    it names an asset (SOL, USDC) rather than a credential.
    """
    key_lower = key.lower().replace("-", "_")
    return key_lower in LoggingDefaults.SENSITIVE_FIELDS or any(
        fragment in key_lower for fragment in _SENSITIVE_FRAGMENTS
    )


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingDefaults.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)) or (additional_fields and key in additional_fields):
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value, additional_fields, mask_pattern, _depth + 1, _max_depth,
                )
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(item, additional_fields, mask_pattern, _depth + 1, _max_depth)
            for item in data
        )

    if isinstance(data, str):
        return _mask_inline_patterns(data)

    return data


def _mask_inline_patterns(text: str) -> str:
    """Mask secret-looking fragments inside free text.

    Handles:
    - ``nonce:tag:ciphertext`` hex triples produced by the custody manager
    - 64/128 hex-char runs (raw 32/64 byte keys)
    - URLs with embedded credentials
    """
    if len(text) > LoggingDefaults.MAX_LOG_MESSAGE_LENGTH:
        text = text[: LoggingDefaults.MAX_LOG_MESSAGE_LENGTH] + "...[truncated]"

    patterns = [
        (r"\b[0-9a-f]{24}:[0-9a-f]{32}:[0-9a-f]+\b", "***CIPHERTEXT***"),
        (r"\b[0-9a-fA-F]{64,128}\b", "***KEY***"),
        (r"(https?://)[^:/\s]+:[^@\s]+@", r"\1***:***@"),
    ]
    for pattern, replacement in patterns:
        text = re.sub(pattern, replacement, text)
    return text


# =============================================================================
# Event sink
# =============================================================================

class EventSink(Protocol):
    """Log/metric collaborator handed to engine components at construction."""

    def event(self, name: str, **fields: Any) -> None:
        ...

    def error(self, name: str, exc: BaseException, **fields: Any) -> None:
        ...


class LoggingEventSink:
    """EventSink that writes masked structured records to stdlib logging.

    Also keeps simple per-event counters, which is what health checks and
    tests read.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger("escrow_engine.events")
        self.counters: Counter[str] = Counter()

    def event(self, name: str, **fields: Any) -> None:
        self.counters[name] += 1
        self._logger.info(name, extra={"event": name, "fields": mask_sensitive_data(fields)})

    def error(self, name: str, exc: BaseException, **fields: Any) -> None:
        self.counters[name] += 1
        self._logger.error(
            "%s: %s",
            name,
            _mask_inline_patterns(str(exc)),
            extra={"event": name, "fields": mask_sensitive_data(fields)},
        )
