"""
Redaction of sensitive request parameters before they are stored.

Two kinds of match, both case-insensitive and ignoring `_` and `-`:

- credential keys must match exactly (`token` masks `token` and `Token`
  but leaves `max_tokens` alone)
- personal-data patterns match anywhere in the key (`email` masks
  `user_email`)

String values keep their last 4 characters; anything shorter is masked
completely. Non-string values, chat messages included, are replaced
wholesale.
"""
from typing import Any, Dict, Iterable, Mapping, Optional

DEFAULT_SENSITIVE_KEYS = (
    "apikey",
    "key",
    "accesstoken",
    "token",
    "password",
    "secret",
    "authorization",
    "ip",
    "messages",
    "prompt",
)

DEFAULT_SENSITIVE_PATTERNS = (
    "email",
    "query",
    "user",
    "name",
    "location",
    "password",
    "secret",
)

MASK_CHAR = "X"
VISIBLE_SUFFIX = 4


def mask_value(value: Any) -> str:
    """Mask a single sensitive value."""
    if isinstance(value, str):
        if len(value) <= VISIBLE_SUFFIX:
            return MASK_CHAR * len(value)
        return MASK_CHAR * (len(value) - VISIBLE_SUFFIX) + value[-VISIBLE_SUFFIX:]
    return f"[{type(value).__name__} redacted]"


def _normalize(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "")


def is_sensitive_key(
    key: str,
    patterns: Iterable[str] = DEFAULT_SENSITIVE_PATTERNS,
    keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS,
) -> bool:
    normalized = _normalize(key)
    if any(normalized == _normalize(k) for k in keys):
        return True
    return any(_normalize(p) in normalized for p in patterns)


def redact_params(
    params: Optional[Mapping[str, Any]],
    patterns: Iterable[str] = DEFAULT_SENSITIVE_PATTERNS,
    enabled: bool = True,
    keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS,
) -> Dict[str, Any]:
    """
    Return a redacted copy of `params`.

    Nested mappings are walked; a sensitive key masks its whole value even
    if that value is itself a mapping.
    """
    if not params:
        return {}
    if not enabled:
        return dict(params)
    patterns = tuple(patterns)
    keys = tuple(keys)

    redacted: Dict[str, Any] = {}
    for key, value in params.items():
        if is_sensitive_key(str(key), patterns, keys):
            redacted[key] = mask_value(value)
        elif isinstance(value, Mapping):
            redacted[key] = redact_params(value, patterns, enabled, keys)
        else:
            redacted[key] = value
    return redacted
