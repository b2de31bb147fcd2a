import logging
import urllib.error
from types import SimpleNamespace

import pytest

from app.qdocs import notifications
from app.qdocs.notifications import (
    NotificationError,
    NullNotifier,
    TelegramNotifier,
    deliver,
    notifier_from_config,
)


def _doc():
    return SimpleNamespace(id=7, title="Pest control plan")


def test_notifier_from_config():
    assert isinstance(notifier_from_config({}), NullNotifier)
    assert isinstance(notifier_from_config({"TELEGRAM_BOT_TOKEN": "  "}), NullNotifier)
    n = notifier_from_config({"TELEGRAM_BOT_TOKEN": "123:abc", "APP_BASE_URL": "https://docs.example.com/"})
    assert isinstance(n, TelegramNotifier)
    assert n._doc_url(_doc()) == "https://docs.example.com/documents/7"


def test_deliver_logs_and_swallows_failures(caplog):
    def boom(*_a, **_kw):
        raise NotificationError("bot blocked")

    with caplog.at_level(logging.ERROR, logger="app.qdocs.notifications"):
        assert deliver(boom, 1, 2) is False
    assert "Notification delivery failed" in caplog.text

    calls = []
    assert deliver(lambda *a: calls.append(a), "x") is True
    assert calls == [("x",)]


def test_users_without_chat_are_skipped(monkeypatch):
    sent = []
    n = TelegramNotifier(bot_token="t", base_url="https://docs.example.com")
    monkeypatch.setattr(TelegramNotifier, "_send", lambda self, chat_id, text: sent.append((chat_id, text)))

    task = SimpleNamespace(id=3, step=2)
    n.task_assigned(SimpleNamespace(id=1, telegram_chat_id=None), _doc(), task)
    n.document_status(SimpleNamespace(id=1, telegram_chat_id=None), _doc(), "approved")
    assert sent == []

    n.task_assigned(SimpleNamespace(id=2, telegram_chat_id=555), _doc(), task)
    n.document_status(SimpleNamespace(id=2, telegram_chat_id=555), _doc(), "rejected", "Missing signature")
    assert [chat for chat, _ in sent] == [555, 555]
    assert "*Step:* 2" in sent[0][1]
    assert "Rejected" in sent[1][1]
    assert "Missing signature" in sent[1][1]


def test_send_wraps_network_errors(monkeypatch):
    def unreachable(*_a, **_kw):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(notifications.urllib.request, "urlopen", unreachable)
    n = TelegramNotifier(bot_token="t", base_url="")
    with pytest.raises(NotificationError, match="unreachable"):
        n._send(555, "hello")
