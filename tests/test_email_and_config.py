import smtplib

import pytest
from pydantic import ValidationError as PydanticValidationError

from tasksync.api.schemas import EmailRequest
from tasksync.config import Environment, Settings
from tasksync.service.email import EmailService
from tasksync.service.otp import OTPPurpose


class TestEmailRendering:
    def test_code_and_expiry_appear_in_both_bodies(self):
        service = EmailService(expiry_minutes=10)
        subject, html_body, text_body = service.render_otp("042137", OTPPurpose.PASSWORD_RESET)
        assert subject == "Reset your TaskSync password"
        assert "042137" in html_body and "042137" in text_body
        assert "expires in 10 minutes" in text_body

    def test_each_purpose_has_its_own_subject(self):
        service = EmailService()
        subjects = {service.render_otp("000000", purpose)[0] for purpose in OTPPurpose}
        assert len(subjects) == len(OTPPurpose)

    def test_unconfigured_service_logs_instead_of_sending(self, monkeypatch):
        def fail_connect(*args, **kwargs):
            raise AssertionError("SMTP must not be used when unconfigured")

        monkeypatch.setattr(smtplib, "SMTP", fail_connect)
        service = EmailService()
        assert service.is_configured is False
        assert service.send_otp("user@example.com", "123456", "email-verification") is True

    def test_smtp_failure_reports_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("connection refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        service = EmailService(smtp_host="smtp.example.com", from_email="no-reply@example.com")
        assert service.send_otp("user@example.com", "123456", OTPPurpose.EMAIL_CHANGE) is False


class TestSettings:
    def test_missing_secrets_are_generated_and_distinct(self):
        settings = Settings()
        assert len(settings.jwt_secret) >= 32
        assert settings.jwt_secret != settings.jwt_refresh_secret

    def test_identical_secrets_are_rejected(self):
        secret = "the-same-secret-for-both-token-kinds-000000"
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret=secret, jwt_refresh_secret=secret)

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "Production")
        monkeypatch.setenv("OTP_EXPIRY_MINUTES", "5")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example.com, https://admin.example.com")
        settings = Settings.from_env()
        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production
        assert settings.otp_expiry_minutes == 5
        assert settings.cors_origins == ["https://app.example.com", "https://admin.example.com"]


class TestEmailNormalization:
    def test_compatibility_forms_fold_before_lowercasing(self):
        # U+210C has no lowercase mapping of its own; NFKC turns it into "H"
        assert EmailRequest(email="\u210cello@Example.com").email == "hello@example.com"
        assert EmailRequest(email="  \uff35ser@EXAMPLE.com ").email == "user@example.com"
