"""
Secret redaction for CLI output, log lines and audit payloads.

Every line that leaves the process (event stream, log viewer, audit trail,
stored error message) must pass through sanitize() first.
"""

import re
from typing import Any, List, Pattern, Tuple

MASK = "***"

# Ordered (pattern, replacement) rules. Applied in sequence to the same string,
# so a line carrying several secrets has all of them redacted.
_RULES: List[Tuple[Pattern[str], str]] = [
    # Provider auth tokens: RAILWAY_TOKEN=..., RAILWAY_API_TOKEN=...
    (re.compile(r"\b([A-Z][A-Z0-9_]*_TOKEN)=\S+"), r"\1=***"),
    # Bearer tokens
    (re.compile(r"Bearer\s+\S+"), "Bearer ***"),
    # Connection strings with embedded credentials
    (re.compile(r"postgres(?:ql)?://[^@\s]+@\S+"), "postgresql://***:***@***"),
    (re.compile(r"rediss?://[^@\s]+@\S+"), "redis://***:***@***"),
    (re.compile(r"mysql(?:\+\w+)?://[^@\s]+@\S+"), "mysql://***:***@***"),
    (re.compile(r"mongodb(?:\+srv)?://[^@\s]+@\S+"), "mongodb://***:***@***"),
    (re.compile(r"amqps?://[^@\s]+@\S+"), "amqp://***:***@***"),
    # Echoed `variable set KEY=VALUE` (keep the key, mask the value)
    (re.compile(r"variable\s+set\s+(\w+)=\S+"), r"variable set \1=***"),
    # Generic fallback: api_key=..., client_secret: ..., PASSWORD=..., token=...
    (
        re.compile(r"\b([\w-]*(?:api[_-]?key|secret|password|passwd|token)[\w-]*)[=:]\S+", re.IGNORECASE),
        r"\1=***",
    ),
]


def sanitize(line: str) -> str:
    """
    Redact secret-shaped substrings from a line of text.

    Pure and idempotent: sanitize(sanitize(x)) == sanitize(x). Text without
    a recognised secret pattern is returned unchanged.

    Args:
        line: Arbitrary text (CLI output, error message, log line)

    Returns:
        The text with every recognised secret replaced by ***
    """
    if not line:
        return line

    sanitized = line
    for pattern, replacement in _RULES:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def sanitize_metadata(value: Any) -> Any:
    """Recursively sanitize every string inside dicts, lists and tuples."""
    if isinstance(value, str):
        return sanitize(value)
    if isinstance(value, dict):
        return {key: sanitize_metadata(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_metadata(item) for item in value)
    return value
