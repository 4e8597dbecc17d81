"""HMAC signing for outbound webhooks and verification of inbound ones.

Outbound signatures cover ``"{timestamp}.{body}"`` so receivers can reject
replays: a receiver recomputes HMAC-SHA256 over the X-Koya-Timestamp header,
a literal ".", and the raw request body, then compares hex digests in
constant time.

The provider verifiers are used when Koya is itself the receiver (Stripe,
Retell and Twilio callbacks). None of these functions raise on malformed
input; they return False.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta

from koya.models.base import parse_timestamp, utc_now

# Replay window for timestamped signatures
DEFAULT_TOLERANCE_SECONDS = 300


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(payload: str | bytes, secret: str, timestamp: str) -> str:
    """Compute the signature for a webhook body.

    Args:
        payload: Raw JSON body (exactly the bytes that are sent).
        secret: Endpoint signing secret.
        timestamp: Value sent in the X-Koya-Timestamp header.

    Returns:
        Hex-encoded HMAC-SHA256 of ``"{timestamp}.{payload}"``.
    """
    message = _to_bytes(timestamp) + b"." + _to_bytes(payload)
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message,
        digestmod=hashlib.sha256,
    ).hexdigest()


def _digests_match(expected: str, provided: str) -> bool:
    # Compare as bytes: compare_digest rejects non-ASCII str arguments.
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _is_fresh(signed_at: datetime, now: datetime, tolerance_seconds: int) -> bool:
    return abs(now - signed_at) <= timedelta(seconds=tolerance_seconds)


def verify_signature(
    payload: str | bytes,
    signature: str | None,
    secret: str,
    timestamp: str | None,
    *,
    now: datetime | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Verify a timestamped signature produced by :func:`sign`.

    Args:
        payload: Raw body as received.
        signature: Hex signature from the X-Koya-Signature header.
        secret: Endpoint signing secret.
        timestamp: Value of the X-Koya-Timestamp header.
        now: Current time; defaults to the system clock.
        tolerance_seconds: Maximum allowed clock distance.

    Returns:
        True only if both headers are present, the timestamp is within the
        replay window and the digests match.
    """
    if not signature or not timestamp:
        return False

    signed_at = parse_timestamp(timestamp)
    if signed_at is None:
        return False
    if not _is_fresh(signed_at, now or utc_now(), tolerance_seconds):
        return False

    expected = sign(payload, secret, timestamp)
    return _digests_match(expected, signature)


def verify_hmac_signature(
    payload: str | bytes,
    signature: str | None,
    secret: str,
    algorithm: str = "sha256",
    encoding: str = "hex",
) -> bool:
    """Verify a plain HMAC over the body.

    Accepts an optional ``"<algorithm>="`` prefix on the signature.
    """
    if not signature:
        return False
    if algorithm not in ("sha256", "sha1") or encoding not in ("hex", "base64"):
        return False

    prefix = f"{algorithm}="
    if signature.startswith(prefix):
        signature = signature[len(prefix) :]

    digest = hmac.new(secret.encode("utf-8"), _to_bytes(payload), algorithm).digest()
    expected = digest.hex() if encoding == "hex" else base64.b64encode(digest).decode("ascii")
    return _digests_match(expected, signature)


def verify_retell_signature(payload: str | bytes, signature: str | None, secret: str) -> bool:
    """Verify the x-retell-signature header (hex HMAC-SHA256 of the body)."""
    return verify_hmac_signature(payload, signature, secret)


def verify_stripe_signature(
    payload: str | bytes,
    signature_header: str | None,
    secret: str,
    *,
    now: datetime | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Verify a Stripe-Signature header of the form ``t=<unix>,v1=<hex>``.

    The signed message is ``"{t}.{payload}"``. Any ``v1`` entry may match,
    which covers secret rotation.
    """
    if not signature_header:
        return False

    timestamp: str | None = None
    candidates: list[str] = []
    for element in signature_header.split(","):
        key, _, value = element.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)

    if not timestamp or not candidates or not timestamp.isdigit():
        return False

    signed_at = parse_timestamp(timestamp)
    if signed_at is None or not _is_fresh(signed_at, now or utc_now(), tolerance_seconds):
        return False

    expected = sign(payload, secret, timestamp)
    return any(_digests_match(expected, candidate) for candidate in candidates)


def verify_twilio_signature(
    url: str,
    params: dict[str, str],
    signature: str | None,
    auth_token: str,
) -> bool:
    """Verify an X-Twilio-Signature header.

    Twilio signs the full callback URL followed by every POST parameter
    (sorted by name, key immediately followed by value) with HMAC-SHA1 and
    base64-encodes the digest.
    """
    if not signature:
        return False

    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return _digests_match(expected, signature)
