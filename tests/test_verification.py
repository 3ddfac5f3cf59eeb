# tests/test_verification.py
from unittest.mock import patch

import pytest

from errors import ValidationError
from verification import (
    LoggingCodeSender, SmtpCodeSender, codes_match, generate_code, get_code_sender, hash_code,
    normalize_phone, validate_email
)


class TestCodes:
    def test_codes_have_fixed_length(self) -> None:
        for _ in range(50):
            code = generate_code(6)
            assert len(code) == 6
            assert code.isdigit()

    def test_only_the_hash_matches(self) -> None:
        hashed = hash_code("123456")

        assert hashed != "123456"
        assert codes_match(" 123456 ", hashed)
        assert not codes_match("654321", hashed)


class TestEmail:
    def test_normalizes(self) -> None:
        assert validate_email("  Name@Example.COM ") == "name@example.com"

    @pytest.mark.parametrize("value", ["", "name", "name@", "name@example", "a b@example.com"])
    def test_rejects_malformed(self, value: str) -> None:
        with pytest.raises(ValidationError):
            validate_email(value)

    def test_domain_restriction(self) -> None:
        assert validate_email("ram@pcampus.edu.np", "pcampus.edu.np") == "ram@pcampus.edu.np"
        with pytest.raises(ValidationError) as exc:
            validate_email("ram@gmail.com", "pcampus.edu.np")
        assert "@pcampus.edu.np" in str(exc.value)


class TestPhone:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("9812345678", "+977-9812345678"),
            ("981-234-5678", "+977-9812345678"),
            ("+977 9812345678", "+977-9812345678"),
            ("+44 20 7946 0958", "+442079460958"),
        ],
    )
    def test_normalizes(self, value: str, expected: str) -> None:
        assert normalize_phone(value) == expected

    def test_rejects_short_numbers(self) -> None:
        with pytest.raises(ValidationError):
            normalize_phone("12345")


class TestCodeSender:
    def test_falls_back_to_logging_without_smtp(self) -> None:
        with patch("config.SMTP_HOST", None):
            assert isinstance(get_code_sender(), LoggingCodeSender)

    def test_uses_smtp_when_configured(self) -> None:
        with patch("config.SMTP_HOST", "smtp.example.com"), patch("config.SMTP_SENDER", "bot@example.com"):
            assert isinstance(get_code_sender(), SmtpCodeSender)

    @pytest.mark.asyncio
    async def test_smtp_sender_runs_in_a_thread(self) -> None:
        sender = SmtpCodeSender("smtp.example.com", 587, "user", "secret", "bot@example.com")

        with patch.object(SmtpCodeSender, "_send") as send:
            token = await sender.send_code("ram@example.com", "123456")

        message = send.call_args.args[0]
        assert message["To"] == "ram@example.com"
        assert "123456" in message.get_content()
        assert token == message["Message-ID"]
