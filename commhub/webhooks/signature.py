"""Provider request signing (HMAC-SHA1 over URL and sorted form fields)."""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Iterable

from ..core.errors import SignatureError

SIGNATURE_HEADER = "X-Twilio-Signature"


def compute_signature(secret: str, url: str, params: Iterable[tuple[str, str]]) -> str:
    """Return the base64 HMAC-SHA1 signature the provider sends for a request.

    The signed string is the full request URL followed by every form field
    sorted by name (repeated names sorted by value), each name immediately
    followed by its value.
    """

    signed = url + "".join(f"{name}{value}" for name, value in sorted(params))
    digest = hmac.new(secret.encode("utf-8"), signed.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


class SignatureVerifier:
    """Fails closed: no secret, no header or a mismatch all raise."""

    def __init__(self, secret: str | None) -> None:
        self._secret = secret

    def verify(
        self, url: str, params: Iterable[tuple[str, str]], signature: str | None
    ) -> None:
        if not self._secret:
            raise SignatureError("Webhook signing secret is not configured")
        if not signature:
            raise SignatureError("Missing signature header")
        expected = compute_signature(self._secret, url, params)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            raise SignatureError("Invalid signature")

    def is_valid(
        self, url: str, params: Iterable[tuple[str, str]], signature: str | None
    ) -> bool:
        try:
            self.verify(url, params, signature)
        except SignatureError:
            return False
        return True
