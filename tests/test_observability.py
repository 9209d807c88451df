"""Tests for the JSON log formatter, metrics label normalization and Sentry setup."""

import json
import logging

import sentry_sdk

from app.core.config import settings
from app.core.logging import JSONFormatter
from app.core.metrics import _normalize_path
from app.core.sentry import FILTERED, init_sentry, scrub_query


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("app.gateway.orchestrator", logging.WARNING, __file__, 1, "Provider %s failed", ("gemini",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_fields():
    data = json.loads(JSONFormatter().format(_record()))
    assert data["level"] == "WARNING"
    assert data["logger"] == "app.gateway.orchestrator"
    assert data["message"] == "Provider gemini failed"
    assert "provider" not in data


def test_json_formatter_context_extras():
    data = json.loads(JSONFormatter().format(_record(provider="gemini", conversation_id="c1")))
    assert data["provider"] == "gemini"
    assert data["conversation_id"] == "c1"


def test_metrics_path_normalization():
    assert _normalize_path("/api/v1/assistant/conversations/book-42") == "/api/v1/assistant/conversations/{conversation_id}"
    assert _normalize_path("/api/v1/assistant/providers/gemini/reset") == "/api/v1/assistant/providers/{provider}/reset"
    assert _normalize_path("/api/v1/assistant/ask") == "/api/v1/assistant/ask"


def test_sentry_disabled_without_dsn(monkeypatch):
    calls = []
    monkeypatch.setattr(settings, "sentry_dsn", "")
    monkeypatch.setattr(sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    assert init_sentry() is False
    assert calls == []


def test_sentry_enabled_with_dsn(monkeypatch):
    calls = []
    monkeypatch.setattr(settings, "sentry_dsn", "https://public@sentry.example.com/1")
    monkeypatch.setattr(sentry_sdk, "init", lambda **kwargs: calls.append(kwargs))
    assert init_sentry() is True
    assert calls[0]["dsn"] == "https://public@sentry.example.com/1"
    assert calls[0]["send_default_pii"] is False
    assert calls[0]["before_breadcrumb"] is scrub_query
    assert {type(i).__name__ for i in calls[0]["integrations"]} == {"FastApiIntegration", "HttpxIntegration"}


def test_breadcrumb_query_is_filtered():
    crumb = {
        "type": "http",
        "category": "httplib",
        "data": {"url": "https://generativelanguage.googleapis.com/v1beta/models", "http.query": "key=g-secret"},
    }
    assert scrub_query(crumb, {})["data"]["http.query"] == FILTERED
    assert scrub_query({"category": "query"}, {}) == {"category": "query"}
