"""Keep wallet key material out of controller logs."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, Pattern

# Keys whose values are never logged, at any nesting depth.
SENSITIVE_KEYS = frozenset({"mnemonic", "private_key", "secret", "token", "password", "tx_bytes"})
MASK = "***"

# 12 to 24 lowercase words separated by single spaces (BIP-39 phrase shape).
_MNEMONIC_RE = re.compile(r"\b(?:[a-z]{3,8} ){11,23}[a-z]{3,8}\b")


def mask_mnemonics(text: str) -> str:
    return _MNEMONIC_RE.sub(MASK, text)


def mask_payload(payload: Any, keys: Iterable[str] = SENSITIVE_KEYS) -> Any:
    """Return a copy of ``payload`` with sensitive keys and seed phrases masked."""
    keys = frozenset(k.lower() for k in keys)
    if isinstance(payload, dict):
        return {
            key: MASK if str(key).lower() in keys else mask_payload(value, keys)
            for key, value in payload.items()
        }
    if isinstance(payload, (list, tuple)):
        return type(payload)(mask_payload(item, keys) for item in payload)
    if isinstance(payload, str):
        return mask_mnemonics(payload)
    return payload


def _assignment_pattern(keys: Iterable[str]) -> Pattern[str]:
    names = "|".join(sorted(re.escape(k) for k in keys))
    return re.compile(fr"\b({names})=\S+", re.IGNORECASE)


class SensitiveDataFilter(logging.Filter):
    """Mask ``key=value`` pairs, structured args and seed phrases on each record."""

    def __init__(self, *, fields: Iterable[str] = ()):
        super().__init__("sensitive")
        self._keys = frozenset({*SENSITIVE_KEYS, *(f.lower() for f in fields)})
        self._assignment = _assignment_pattern(self._keys)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_payload(record.args, self._keys)
            else:
                record.args = tuple(mask_payload(arg, self._keys) for arg in record.args)
        if isinstance(record.msg, str):
            record.msg = mask_mnemonics(self._assignment.sub(rf"\1={MASK}", record.msg))
        elif isinstance(record.msg, dict):
            record.msg = mask_payload(record.msg, self._keys)
        return True


def install_sensitive_filter(logger: logging.Logger, *, fields: Iterable[str] = ()) -> None:
    """Attach one :class:`SensitiveDataFilter` to ``logger``; repeated calls are no-ops."""
    for existing in logger.filters:
        if isinstance(existing, SensitiveDataFilter):
            return
    logger.addFilter(SensitiveDataFilter(fields=fields))
