from interspace_auth.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_redacts_credentials_and_emails():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "email_code_issued",
            "email": "someone@example.com",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "error_code": "NONCE_INVALID",
            "account_id": "acc-123",
        },
    )
    assert event["email"] == "so***@example.com"
    assert event["refresh_token"] == "ey***ig"
    assert event["error_code"] == "NONCE_INVALID"
    assert event["account_id"] == "acc-123"


def test_short_values_left_alone():
    assert _redact_pii(None, "info", {"code": "123"})["code"] == "123"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid and get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"
