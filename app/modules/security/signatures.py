"""
Webhook signature verification.

Each provider signs its callbacks differently; the verifiers below share one
interface so the webhook layer only decides what to do with the outcome
(the `signature_policy` setting: off, skip, reject).
An empty secret means verification is not configured and every payload passes.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)

POLICY_OFF = "off"
POLICY_SKIP = "skip"
POLICY_REJECT = "reject"


class SignatureError(Exception):
    """A payload failed signature verification."""


class SignatureVerifier(Protocol):
    def verify(self, body: bytes, headers: Mapping[str, str], url: str = "", params: Mapping[str, str] | None = None) -> None:
        """Raise SignatureError when the payload is not authentic."""
        ...


class HmacSha256Verifier:
    """Meta: `X-Hub-Signature-256: sha256=<hex>` over the raw body."""

    header = "x-hub-signature-256"

    def __init__(self, secret: str):
        self.secret = secret

    def verify(self, body, headers, url="", params=None):
        if not self.secret:
            return
        signature = headers.get(self.header, "")
        if not signature.startswith("sha256="):
            raise SignatureError("missing or malformed X-Hub-Signature-256 header")
        expected = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature[len("sha256="):]):
            raise SignatureError("X-Hub-Signature-256 mismatch")


class CalendlyVerifier:
    """Calendly: `Calendly-Webhook-Signature: t=<ts>,v1=<hex>`, HMAC-SHA256 over "<t>.<body>"."""

    header = "calendly-webhook-signature"

    def __init__(self, secret: str, tolerance_seconds: int = 180, clock=time.time):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.clock = clock

    def verify(self, body, headers, url="", params=None):
        if not self.secret:
            return
        raw = headers.get(self.header, "")
        parts = dict(p.split("=", 1) for p in raw.split(",") if "=" in p)
        timestamp, signature = parts.get("t"), parts.get("v1")
        if not timestamp or not signature:
            raise SignatureError("missing or malformed Calendly-Webhook-Signature header")

        try:
            ts = int(timestamp)
        except ValueError:
            raise SignatureError(f"invalid signature timestamp {timestamp!r}")
        if self.tolerance_seconds and abs(self.clock() - ts) > self.tolerance_seconds:
            raise SignatureError("signature timestamp outside tolerance window")

        signed = timestamp.encode() + b"." + body
        expected = hmac.new(self.secret.encode(), signed, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise SignatureError("Calendly-Webhook-Signature mismatch")


class TwilioVerifier:
    """Twilio: `X-Twilio-Signature`, base64 HMAC-SHA1 over the URL plus sorted form params."""

    header = "x-twilio-signature"

    def __init__(self, auth_token: str):
        self.auth_token = auth_token

    def verify(self, body, headers, url="", params=None):
        if not self.auth_token:
            return
        signature = headers.get(self.header, "")
        if not signature:
            raise SignatureError("missing X-Twilio-Signature header")
        payload = url + "".join(f"{k}{v}" for k, v in sorted((params or {}).items()))
        digest = hmac.new(self.auth_token.encode(), payload.encode(), hashlib.sha1).digest()
        expected = base64.b64encode(digest).decode()
        if not hmac.compare_digest(expected, signature):
            raise SignatureError("X-Twilio-Signature mismatch")


def check_signature(
    verifier: SignatureVerifier,
    policy: str,
    body: bytes,
    headers: Mapping[str, str],
    url: str = "",
    params: Mapping[str, str] | None = None,
) -> bool:
    """Apply `policy` to a payload. Returns False when it should be ignored.

    Raises SignatureError only under the reject policy.
    """
    if policy == POLICY_OFF:
        return True
    try:
        verifier.verify(body, headers, url=url, params=params)
        return True
    except SignatureError as e:
        if policy == POLICY_REJECT:
            raise
        logger.warning("Ignoring unverified payload: %s", e)
        return False
