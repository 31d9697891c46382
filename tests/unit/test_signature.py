"""Tests for webhook signature verification."""
from ghmirror.webhooks.signature import sign, verify_signature

BODY = b'{"action": "opened"}'
SECRET = "s3cret"


def test_known_digest():
    assert sign(b"", "key") == (
        "sha256=5d5d139563c95b5967b9bd9a8c9b233a9dedb45072794cd232dc1b74832607d0"
    )


def test_valid_signature():
    assert verify_signature(BODY, sign(BODY, SECRET), SECRET) is True


def test_wrong_secret():
    assert verify_signature(BODY, sign(BODY, "other"), SECRET) is False


def test_tampered_body():
    assert verify_signature(BODY + b" ", sign(BODY, SECRET), SECRET) is False


def test_missing_or_malformed_header():
    assert verify_signature(BODY, None, SECRET) is False
    assert verify_signature(BODY, "", SECRET) is False
    assert verify_signature(BODY, sign(BODY, SECRET).replace("sha256=", "sha1="), SECRET) is False
