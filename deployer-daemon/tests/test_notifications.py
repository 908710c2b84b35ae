"""Tests for webhook notifications."""

import json

import pytest
import requests

from vmdeployerd.lib.notifications import report_error, send_webhook
from vmdeployerd.lib.exceptions import TaskFailureError


@pytest.fixture
def enabled(config):
    config.update(
        {
            "notifications_enabled": True,
            "notifications_uri": "https://hooks.example.com/deployer",
            "notifications_icons": {"success": "OK", "failure": "FAIL"},
            "notifications_body": {"text": "{icon} {message}"},
        }
    )
    return config


@pytest.fixture
def posts(monkeypatch):
    sent = []

    def fake_post(uri, headers=None, data=None, timeout=None):
        sent.append((uri, json.loads(data)))

    monkeypatch.setattr(requests, "post", fake_post)
    return sent


def test_disabled(config, posts):
    send_webhook(config, "success", "hello")
    assert posts == []


def test_send_webhook(enabled, posts):
    send_webhook(enabled, "success", "Created VM web-1")
    assert posts == [("https://hooks.example.com/deployer", {"text": "OK Created VM web-1"})]


def test_unknown_status_has_no_icon(enabled, posts):
    send_webhook(enabled, "info", "Starting up")
    assert posts[0][1] == {"text": " Starting up"}


def test_report_error(enabled, posts):
    report_error(enabled, TaskFailureError("UPID:1", "ERR"), context="VM web-1")
    assert posts[0][1] == {"text": "FAIL VM web-1: TaskFailureError: Task UPID:1 failed with exit status: ERR"}


def test_delivery_failure_is_ignored(enabled, monkeypatch):
    def failing_post(uri, headers=None, data=None, timeout=None):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(requests, "post", failing_post)
    send_webhook(enabled, "success", "Created VM web-1")
