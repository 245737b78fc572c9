import smtplib

from interspace_auth.service.email import EmailService, mask_recipient
from interspace_auth.storage.redis_cache import (
    BLACKLIST_KEY_PREFIX,
    _bucket_result,
    blacklist_key,
    rate_key,
)


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        pass

    def send_message(self, message):
        FakeSMTP.sent.append(message)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class RefusingSMTP(FakeSMTP):
    def send_message(self, message):
        raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"no such user")})


class TestEmail:
    def test_unconfigured_service_only_logs(self):
        assert EmailService().send_verification_code("a@example.com", "123456") is True

    def test_code_delivered_over_smtp(self, monkeypatch):
        FakeSMTP.sent = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        service = EmailService(smtp_host="smtp.example.com", from_email="no-reply@example.com")

        assert service.send_verification_code("a@example.com", "654321", ttl_minutes=10)

        message = FakeSMTP.sent[0]
        assert message["To"] == "a@example.com"
        assert message["From"] == "Interspace <no-reply@example.com>"
        assert "654321" in message.get_body(("plain",)).get_content()

    def test_refused_recipient_reports_failure(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        service = EmailService(smtp_host="smtp.example.com", from_email="no-reply@example.com")
        assert service.send_verification_code("a@example.com", "111111") is False

    def test_mask_recipient(self):
        assert mask_recipient("person@example.com") == "pe***@example.com"
        assert mask_recipient("nobody") == "redacted"


class TestCacheHelpers:
    def test_rate_keys_hide_the_caller_key(self):
        key = rate_key("email_code:a@example.com")
        assert "example.com" not in key
        assert key == rate_key("email_code:a@example.com")

    def test_blacklist_key(self):
        assert blacklist_key("abc") == BLACKLIST_KEY_PREFIX + "abc"

    def test_bucket_result(self):
        assert _bucket_result([1, 4, 0], False) is True
        assert _bucket_result([0, "0", 120], True) == (False, 0, 120)
