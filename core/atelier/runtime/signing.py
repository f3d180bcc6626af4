"""
HMAC signing for async completion callbacks.

The signature covers every body field except ``signature`` itself:

    taskId=run_1&status=completed&stepIndex=0&timestamp=1700000000000

Keys are sorted; scalars render the way JSON would (``true``, ``false``,
``null``, integers without a decimal point) and nested values render as
compact sorted-key JSON, so a worker in any language produces the same string.
"""

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_FIELD = "signature"


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_string(payload: dict[str, Any]) -> str:
    return "&".join(
        f"{key}={_render(payload[key])}" for key in sorted(payload) if key != SIGNATURE_FIELD
    )


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    """Hex HMAC-SHA256 of the canonical string."""
    return hmac.new(
        secret.encode("utf-8"),
        canonical_string(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(payload: dict[str, Any], secret: str) -> bool:
    provided = payload.get(SIGNATURE_FIELD)
    if not isinstance(provided, str) or not provided:
        return False
    return hmac.compare_digest(provided.lower(), sign_payload(payload, secret))
