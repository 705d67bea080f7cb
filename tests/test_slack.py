"""Tests for Slack escalations."""

from unittest.mock import MagicMock, patch

import pytest

from backlog_conductor.integrations.slack import SlackError, SlackNotifier, format_escalation, send_message


def test_format_escalation():
    blocks = format_escalation("merge_conflict", "T1", "Conflict in README.md", ["bcon agent reap T1"])
    assert ":twisted_rightwards_arrows:" in blocks[0]["text"]["text"]
    assert "`T1`" in blocks[0]["text"]["text"]
    assert "bcon agent reap T1" in blocks[1]["elements"][0]["text"]


def test_format_without_next_steps():
    assert len(format_escalation("other", "T1", "hm")) == 1


def test_send_requires_token():
    with pytest.raises(SlackError):
        send_message(None, "#ops", "hello")


class TestNotifier:
    def test_disabled_without_channel(self):
        notifier = SlackNotifier("xoxb-token", None)
        with patch("backlog_conductor.integrations.slack.get_client") as get_client:
            notifier.notify("error", "T1", "boom")
        assert not notifier.enabled
        get_client.assert_not_called()

    def test_posts_message(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "1.0"}
        with patch("backlog_conductor.integrations.slack.get_client", return_value=client):
            SlackNotifier("xoxb-token", "#ops").notify("timeout", "T1", "Agent killed (timeout)")
        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#ops"
        assert kwargs["text"] == "[timeout] T1: Agent killed (timeout)"

    def test_failures_are_logged_not_raised(self, caplog):
        client = MagicMock()
        client.chat_postMessage.side_effect = RuntimeError("rate limited")
        with patch("backlog_conductor.integrations.slack.get_client", return_value=client):
            SlackNotifier("xoxb-token", "#ops").notify("error", "T1", "boom")
        assert "Slack notification failed" in caplog.text
