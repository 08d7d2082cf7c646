from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

REDACTED = "<REDACTED>"

# cabeceras que el adaptador PostgREST envía en cada petición
SENSITIVE_KEYS = frozenset({"apikey", "api_key", "authorization", "access_token", "refresh_token", "password"})

_KEY_VALUE_PATTERNS = [
    re.compile(
        r'(?i)("?(?:apikey|api_key|access_token|refresh_token|service_role_key|anon_key|password)"?\s*[:=]\s*)("[^"]*"|\'[^\']*\'|[^,\s}\]]+)'  # noqa: E501
    ),
    re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)([^\s,;'\"]+)"),
]
_TOKEN_PATTERNS = [
    (re.compile(r"eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}"), "<JWT>"),
    (re.compile(r"\bsb_(?:publishable|secret)_[A-Za-z0-9_-]{8,}"), "<API_KEY>"),
]


def redact_text(text: str) -> str:
    for pattern in _KEY_VALUE_PATTERNS:
        text = pattern.sub(rf"\1{REDACTED}", text)
    for pattern, replacement in _TOKEN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS and item else redact_value(item)
            for key, item in value.items()
        }
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [redact_value(item) for item in value]
    return value


class LoggingSecretsFilter(logging.Filter):
    """Filtro de handler: nunca deja salir la API key de Supabase ni tokens a los logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if isinstance(record.args, Mapping):
            record.args = redact_value(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_value(value) for value in record.args)
        extra_payload = getattr(record, "extra", None)
        if isinstance(extra_payload, Mapping):
            record.extra = redact_value(extra_payload)
        return True
