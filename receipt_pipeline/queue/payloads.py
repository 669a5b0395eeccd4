"""Queued job payloads and their HMAC signatures.

The queue delivers at least once and anyone with Redis access could push a
job, so every payload carries an HMAC-SHA256 signature over its canonical
JSON. Workers verify it before touching any row.
"""

import hashlib
import hmac
import json
from typing import Any

from pydantic import BaseModel, Field

from receipt_pipeline.shared.errors import InvalidSignatureError


class ReceiptJob(BaseModel):
    """Single receipt extraction request."""

    owner_id: int
    file_url: str
    file_name: str = ""
    receipt_id: int | None = None


class BatchFileJob(BaseModel):
    """Extraction of one file inside a batch session."""

    session_id: str
    owner_id: int
    file_index: int = Field(ge=0)
    file_url: str
    file_name: str = ""


def canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``payload`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()


def verify_payload(payload: dict[str, Any], signature: str | None, secret: str) -> None:
    """Check a payload signature in constant time.

    Raises:
        InvalidSignatureError: If the signature is missing or does not match
    """
    if not signature:
        raise InvalidSignatureError("Payload is not signed")
    expected = sign_payload(payload, secret)
    if not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("Payload signature mismatch")
