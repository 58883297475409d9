import base64
import hashlib
import hmac

import pytest

from commhub.core.errors import SignatureError
from commhub.webhooks.signature import SignatureVerifier, compute_signature

URL = "https://hooks.example.com/api/webhooks/voice"


def test_signature_covers_url_and_sorted_fields():
    params = [("To", "+15559990000"), ("CallSid", "CA1"), ("From", "+15551230000")]
    signed = URL + "CallSidCA1From+15551230000To+15559990000"
    expected = base64.b64encode(
        hmac.new(b"secret", signed.encode("utf-8"), hashlib.sha1).digest()
    ).decode("ascii")

    assert compute_signature("secret", URL, params) == expected


def test_field_order_does_not_matter():
    forward = [("A", "1"), ("B", "2")]
    backward = [("B", "2"), ("A", "1")]
    assert compute_signature("secret", URL, forward) == compute_signature(
        "secret", URL, backward
    )


def test_verifier_accepts_matching_signature():
    params = [("CallSid", "CA1")]
    verifier = SignatureVerifier("secret")
    verifier.verify(URL, params, compute_signature("secret", URL, params))
    assert verifier.is_valid(URL, params, compute_signature("secret", URL, params))


@pytest.mark.parametrize(
    "secret, header",
    [
        (None, "anything"),
        ("", "anything"),
        ("secret", None),
        ("secret", ""),
        ("secret", "bm90IHRoZSBzaWduYXR1cmU="),
    ],
)
def test_verifier_fails_closed(secret, header):
    verifier = SignatureVerifier(secret)
    with pytest.raises(SignatureError):
        verifier.verify(URL, [("CallSid", "CA1")], header)
    assert not verifier.is_valid(URL, [("CallSid", "CA1")], header)


def test_tampered_field_or_url_is_rejected():
    params = [("CallSid", "CA1"), ("CallStatus", "completed")]
    signature = compute_signature("secret", URL, params)
    verifier = SignatureVerifier("secret")

    assert not verifier.is_valid(URL, [("CallSid", "CA1"), ("CallStatus", "failed")], signature)
    assert not verifier.is_valid(URL + "?x=1", params, signature)
    assert not SignatureVerifier("other").is_valid(URL, params, signature)
