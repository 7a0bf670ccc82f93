"""
Tests for logging configuration

Covers:
- Secret masking in event dicts
- Known secret values scrubbed from free text
- structlog processor wiring
"""
import logging

import structlog

from coursepay.logging import MASK, SensitiveDataFilter, configure_logging, mask_sensitive


class TestMaskSensitive:
    """Test value masking"""

    def test_long_secret_keeps_prefix(self):
        data = mask_sensitive({"hash_secret": "SANDBOXSECRETKEY"})
        assert data["hash_secret"] == "SAND" + MASK

    def test_short_secret_fully_masked(self):
        assert mask_sensitive({"token": "abc"})["token"] == MASK

    def test_signature_stays_visible(self):
        data = mask_sensitive({"vnp_SecureHash": "deadbeef" * 16, "order_reference": "ORDER_1"})
        assert data["vnp_SecureHash"] == "deadbeef" * 16
        assert data["order_reference"] == "ORDER_1"

    def test_nested(self):
        data = mask_sensitive({
            "settings": {"password": "hunter2hunter2"},
            "items": [{"api_key": "k"}, "plain"],
        })
        assert data["settings"]["password"] == "hunt" + MASK
        assert data["items"] == [{"api_key": MASK}, "plain"]

    def test_input_not_mutated(self):
        original = {"secret": "value-value"}
        mask_sensitive(original)
        assert original["secret"] == "value-value"


class TestSecretValues:
    """Test scrubbing of known secret values"""

    def test_secret_inside_message(self):
        data = mask_sensitive(
            {"error": "invalid signature for key SANDBOXSECRETKEY", "tags": ["SANDBOXSECRETKEY", 3]},
            secrets=["SANDBOXSECRETKEY"],
        )
        assert data["error"] == "invalid signature for key " + MASK
        assert data["tags"] == [MASK, 3]

    def test_nested_secret(self):
        data = mask_sensitive({"ctx": {"dsn": "postgres://u:pw-123456@db/x"}}, secrets=["pw-123456"])
        assert data["ctx"]["dsn"] == "postgres://u:" + MASK + "@db/x"

    def test_short_and_empty_secrets_ignored(self):
        processor = SensitiveDataFilter(secrets=["", "abc"])
        assert processor.secrets == ()
        result = processor(logging.getLogger("test"), "info", {"event": "abc order"})
        assert result["event"] == "abc order"


class TestSensitiveDataFilter:
    """Test structlog processor"""

    def test_processor(self):
        processor = SensitiveDataFilter()
        result = processor(logging.getLogger("test"), "info", {"event": "x", "authorization": "Bearer abc"})
        assert result["event"] == "x"
        assert result["authorization"] == "Bear" + MASK


class TestConfigureLogging:
    """Test setup"""

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "coursepay.log"

        configure_logging(level="DEBUG", log_format="json", log_file=str(log_file), enable_console=False)
        structlog.get_logger("coursepay.test").info("payment_created", hash_secret="SANDBOXSECRETKEY")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "payment_created" in content
        assert "SANDBOXSECRETKEY" not in content
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="LOUD", log_format="console")
        assert logging.getLogger().level == logging.INFO

    def test_secret_value_not_written(self, tmp_path):
        log_file = tmp_path / "coursepay.log"

        configure_logging(
            log_format="json",
            log_file=str(log_file),
            enable_console=False,
            secrets=["SANDBOXSECRETKEY"],
        )
        structlog.get_logger("coursepay.test").error("signing_failed", error="bad key SANDBOXSECRETKEY")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "signing_failed" in content
        assert "SANDBOXSECRETKEY" not in content
