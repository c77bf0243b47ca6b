"""Tests for webhook HMAC signatures."""

import hashlib
import hmac

from botique.signing import compute_signature, encode_payload, sign_payload, verify_signature

SECRET = "whsec_" + "ab" * 24


class TestSignature:

    def test_format(self):
        signature = compute_signature(b"{}", SECRET)
        expected = hmac.new(SECRET.encode(), b"{}", hashlib.sha256).hexdigest()
        assert signature == f"sha256={expected}"

    def test_round_trip(self):
        body, signature = sign_payload({"type": "job.paid", "data": {"job_id": "j1"}}, SECRET)
        assert verify_signature(body, SECRET, signature)
        assert verify_signature(body.decode(), SECRET, signature)

    def test_single_byte_change_fails(self):
        body, signature = sign_payload({"type": "job.paid", "data": {"price_usdc": 5.0}}, SECRET)
        tampered = body.replace(b"5.0", b"6.0")
        assert tampered != body
        assert not verify_signature(tampered, SECRET, signature)

    def test_wrong_secret_fails(self):
        body, signature = sign_payload({"a": 1}, SECRET)
        assert not verify_signature(body, SECRET + "x", signature)

    def test_missing_signature_or_secret(self):
        body, signature = sign_payload({"a": 1}, SECRET)
        assert not verify_signature(body, SECRET, None)
        assert not verify_signature(body, SECRET, "")
        assert not verify_signature(body, "", signature)

    def test_encoding_is_stable(self):
        assert encode_payload({"b": 1, "a": 2}) == b'{"a":2,"b":1}'
