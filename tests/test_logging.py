"""
Tests for structured logging configuration.
"""
import pytest

from tip_reconciliation.config import Settings
from tip_reconciliation.monitoring.logging import app_context_processor


class TestAppContext:
    @pytest.mark.unit
    def test_uses_configured_settings(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"app_name": "tips-nairobi"})
        add_app_context = app_context_processor(settings)

        event_dict = add_app_context(None, "info", {"event": "transaction_transitioned"})

        assert event_dict == {
            "event": "transaction_transitioned",
            "app_name": "tips-nairobi",
            "app_env": "test",
        }
