from __future__ import annotations

import re
from typing import Any

from pydantic_core import to_jsonable_python

MAX_ERROR_MESSAGE_LENGTH = 1000
REDACTED = "[redacted]"

_SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "cookie")
_SENSITIVE_INLINE = re.compile(
    r"(?i)\b(password|secret|token|api[_-]?key|authorization)\b(\s*[:=]\s*)(\"[^\"]*\"|'[^']*'|[^\s,;&]+)"
)
_BEARER = re.compile(r"(?i)\bbearer\s+[a-z0-9._~+/=-]+")


def sanitize_error_message(error: BaseException | str | None) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        raw = str(error).strip() or type(error).__name__
    else:
        raw = error.strip() or "Unknown error"
    redacted = _BEARER.sub(f"Bearer {REDACTED}", raw)
    redacted = _SENSITIVE_INLINE.sub(lambda match: f"{match.group(1)}{match.group(2)}{REDACTED}", redacted)
    if len(redacted) > MAX_ERROR_MESSAGE_LENGTH:
        redacted = redacted[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return redacted


def error_code_for(error: BaseException) -> str:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code[:64]
    return type(error).__name__[:64]


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_KEYS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): (REDACTED if _is_sensitive_key(str(key)) else _redact(item)) for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def sanitize_payload(value: Any) -> dict[str, Any] | None:
    """Coerce a handler result or payload into a JSON-safe object with secrets masked.

    Non-object values are wrapped as ``{"value": ...}``.
    """
    if value is None:
        return None
    jsonable = to_jsonable_python(value, fallback=str)
    if not isinstance(jsonable, dict):
        jsonable = {"value": jsonable}
    return _redact(jsonable)
