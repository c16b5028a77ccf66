import pytest

from mailsentry.config import FilterConfig
from mailsentry.modules.email_database import PolicyDatabaseHandler
from mailsentry.modules.errors import DeliveryError


def build_message(subject="Hello", body="Just checking in.\n", to="alice@example.com",
                  sender="bob@sender.example.org", extra_headers=(), eol="\n"):
    lines = [
        f"Return-Path: <{sender}>",
        "Received: from mail.sender.example.org (mail.sender.example.org [203.0.113.7])",
        "\tby mx.example.com with ESMTP id 4ABC123",
        f"From: Bob <{sender}>",
        f"To: {to}",
        f"Subject: {subject}",
        "Message-ID: <test-1@sender.example.org>",
    ]
    lines.extend(extra_headers)
    return (eol.join(lines) + eol + eol + body).encode("utf-8")


class FakeBackend:
    name = "fake"

    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0
        self.deliveries = []

    def deliver(self, message, recipient, sender=None):
        self.calls += 1
        if self.fail_times < 0 or self.calls <= self.fail_times:
            raise DeliveryError(self.name, f"refused on call {self.calls}")
        self.deliveries.append((message, recipient, sender))


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def make_config(tmp_path):
    def factory(**sections):
        overrides = {
            "spam": {
                "maildir_path_template": str(tmp_path / "mail" / "{user}" / "Maildir"),
            },
            "error": {
                "quarantine_dir": str(tmp_path / "system-error"),
            },
            "mail": {
                "domain": "example.com",
                "aliases_file": str(tmp_path / "aliases"),
            },
            "database": {
                "path": str(tmp_path / "security.db"),
            },
            "log": {
                "file_path": str(tmp_path / "log" / "filter.log"),
                "error_log_path": str(tmp_path / "log" / "error.log"),
            },
        }
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        return FilterConfig(config_path=str(tmp_path / "missing.json"), environ={},
                            overrides=overrides)
    return factory


@pytest.fixture
def store(tmp_path):
    handler = PolicyDatabaseHandler(f"sqlite:///{tmp_path / 'policy.db'}")
    yield handler
    handler.close()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sleeper():
    return SleepRecorder()
