"""Tests for magic-link email delivery."""

import smtplib

from signalnoise.service.email import EmailService


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def _fail(*args, **kwargs):
        raise AssertionError("SMTP must not be used when unconfigured")

    monkeypatch.setattr(smtplib, "SMTP", _fail)
    service = EmailService()
    assert not service.is_configured
    assert service.send_magic_link("a@x.com", "https://app.test/auth/verify?token=t")


def test_connect_failure_returns_false(monkeypatch):
    def _refuse(*args, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", _refuse)
    service = EmailService(smtp_host="smtp.test", from_email="noreply@app.test")
    assert service.is_configured
    assert not service.send_magic_link("a@x.com", "https://app.test/auth/verify?token=t")


def test_message_contains_link(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout=None):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            pass

        def sendmail(self, from_addr, to_addr, message):
            sent.append((from_addr, to_addr, message))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.test",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@app.test",
    )
    link = "https://app.test/auth/verify?token=abc123"
    assert service.send_magic_link("a@x.com", link, first_name="Ada")
    from_addr, to_addr, message = sent[0]
    assert (from_addr, to_addr) == ("noreply@app.test", "a@x.com")
    assert "abc123" in message


def test_redacts_addresses_for_logs():
    service = EmailService()
    assert service._redact_email("alice@example.com") == "al***@example.com"
    assert service._redact_email("broken") == "redacted"
