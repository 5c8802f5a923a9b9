"""
Tests for structured log processors.
"""
import pytest

from checkout_engine.monitoring.logging import add_app_context, redact_secrets


class TestLogProcessors:
    @pytest.mark.unit
    def test_secrets_redacted(self) -> None:
        event = redact_secrets(
            None,
            "info",
            {"event": "payment_requested", "client_secret": "pi_123_secret_456", "order_id": "pi_123"},
        )

        assert event["client_secret"] == "[redacted]"
        assert event["order_id"] == "pi_123"

    @pytest.mark.unit
    def test_app_context_added(self) -> None:
        event = add_app_context(None, "info", {"event": "cart_item_added"})

        assert event["component"]
        assert event["payment_backend"] in {"stripe", "broker"}
        assert "app_env" in event
