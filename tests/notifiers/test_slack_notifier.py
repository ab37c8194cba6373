# tests/notifiers/test_slack_notifier.py
from __future__ import annotations

import pytest
import requests

from action_worker.notifiers import SlackNotifier
from action_worker.notifiers import slack as slack_mod
from common.actions import SlackAction


class FakeResp:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {"ok": True, "ts": "1700000000.000100"}

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(slack_mod.time, "sleep", lambda s: None)


def _action(channel="ot-soc"):
    return SlackAction(channel=channel, descriptor=f"slack:{channel}")


def test_dry_run_threads_per_incident_and_channel(make_incident):
    n = SlackNotifier(token=None, dry_run=True, session=FakeSession([]))
    first = n.notify(_action(), make_incident(id="INC-1"))
    again = n.notify(_action(), make_incident(id="INC-1"))
    other = n.notify(_action(), make_incident(id="INC-2"))

    assert first.success and first.simulated
    assert again.token == first.token
    assert other.token
    assert n.metrics.sent == 3
    assert n.session.posts == []


def test_live_without_token_is_skipped(make_incident):
    n = SlackNotifier(token=None, dry_run=False, session=FakeSession([]))
    res = n.notify(_action(), make_incident())
    assert not res.success
    assert n.metrics.skipped == 1
    assert res.error == "slack token not configured"
    assert n.metrics.attempted == 1


def test_live_root_then_thread_reply(make_incident):
    session = FakeSession([FakeResp(), FakeResp(body={"ok": True, "ts": "1700000000.000200"})])
    n = SlackNotifier(token="xoxb-1", mention="@ot-oncall", dry_run=False, session=session)

    root = n.notify(_action(), make_incident())
    reply = n.notify(_action(), make_incident())

    assert root.success and root.token == "1700000000.000100"
    assert reply.success
    first, second = session.posts
    assert first["url"] == slack_mod.SLACK_POST_URL
    assert first["headers"]["Authorization"] == "Bearer xoxb-1"
    assert first["json"]["channel"] == "#ot-soc"
    assert "@ot-oncall" in first["json"]["text"]
    assert "thread_ts" not in first["json"]
    assert second["json"]["thread_ts"] == "1700000000.000100"


def test_live_retries_server_errors(make_incident):
    session = FakeSession([FakeResp(status_code=503), requests.ConnectionError("reset"), FakeResp()])
    n = SlackNotifier(token="xoxb-1", dry_run=False, session=session, attempts=3)
    res = n.notify(_action(), make_incident())
    assert res.success
    assert len(session.posts) == 3


def test_live_gives_up_after_attempts(make_incident):
    session = FakeSession([FakeResp(status_code=500)] * 2)
    n = SlackNotifier(token="xoxb-1", dry_run=False, session=session, attempts=2)
    res = n.notify(_action(), make_incident())
    assert not res.success
    assert n.metrics.errors == 1


def test_slack_api_error_body_is_failure(make_incident):
    session = FakeSession([FakeResp(body={"ok": False, "error": "channel_not_found"})])
    n = SlackNotifier(token="xoxb-1", dry_run=False, session=session)
    res = n.notify(_action("nope"), make_incident())
    assert not res.success
    assert res.error == "channel_not_found"
