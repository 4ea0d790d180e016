"""Tests for the Telegram notification sink."""
from unittest.mock import Mock, patch

import pytest
import requests

from coldarchive.notifications import telegram
from coldarchive.notifications.telegram import AlertSeverity, format_cycle, notify_cycle
from coldarchive.tracking.types import BatchOutcome, CycleResult

POST = "coldarchive.notifications.telegram.requests.post"


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")


@pytest.fixture
def unconfigured(monkeypatch):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)


def archived_result():
    return CycleResult(
        batches=[BatchOutcome("/vol/_ColdArchive", ["a1", "b2"], "archived", snapshot_ref="abc123", deleted=["a1", "b2"])]
    )


def failed_result():
    return CycleResult(
        batches=[
            BatchOutcome(
                "//nas/media/_ColdArchive",
                ["a1"],
                "failed",
                error="[unreachable] restic not found",
                error_kind="engine",
            )
        ]
    )


class TestSendMessage:
    """Test send_message()."""

    def test_not_configured(self, unconfigured):
        with patch(POST) as post:
            assert telegram.send_message("hi") is False
        post.assert_not_called()

    def test_posts_to_bot_api(self, configured):
        with patch(POST, return_value=Mock(status_code=200)) as post:
            assert telegram.send_message("hi") is True
        url = post.call_args[0][0]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert post.call_args[1]["json"]["chat_id"] == "42"

    def test_api_error(self, configured):
        with patch(POST, return_value=Mock(status_code=400, text="Bad Request")):
            assert telegram.send_message("hi") is False

    def test_network_error(self, configured):
        with patch(POST, side_effect=requests.ConnectionError("down")):
            assert telegram.send_message("hi") is False


class TestCycleNotifications:
    """Test formatting of cycle summaries."""

    def test_success_is_info(self):
        text, severity = format_cycle(archived_result())
        assert severity == AlertSeverity.INFO
        assert "Archived: 2" in text

    def test_failure_is_error_and_names_root(self):
        text, severity = format_cycle(failed_result())
        assert severity == AlertSeverity.ERROR
        assert "//nas/media/_ColdArchive" in text
        assert "[unreachable]" in text

    def test_notify_cycle_sends(self, configured):
        with patch(POST, return_value=Mock(status_code=200)) as post:
            assert notify_cycle(failed_result()) is True
        assert "Archive cycle failed" in post.call_args[1]["json"]["text"]

    def test_cancelled_cycle_is_not_sent(self, configured):
        with patch(POST) as post:
            assert notify_cycle(CycleResult(cancelled=True)) is False
        post.assert_not_called()
