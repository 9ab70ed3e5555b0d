"""Tests for Expo push delivery and the mileage alert mailer."""
import json
import smtplib
import uuid

import httpx
import pytest

from conftest import add_push_token, make_user
from fleethub.config import settings
from fleethub.services import mailer
from fleethub.services.errors import DependencyError
from fleethub.services.push import EXPO_BATCH_SIZE, PushDispatcher


def expo(handler_log, tickets=None):
    def handler(request):
        messages = json.loads(request.content)
        handler_log.append(messages)
        data = tickets(messages) if tickets else [{"status": "ok", "id": str(uuid.uuid4())} for _ in messages]
        return httpx.Response(200, json={"data": data})

    return httpx.MockTransport(handler)


class TestPushDispatcher:

    def test_no_tokens_no_request(self, db):
        user = make_user(db)
        calls = []
        result = PushDispatcher(db, transport=expo(calls)).send([user.id], "t", "b")
        assert result.success is False
        assert result.tokens_sent == 0
        assert calls == []

    def test_message_shape(self, db):
        user = make_user(db)
        add_push_token(db, user, "ExponentPushToken[abc]")
        calls = []
        result = PushDispatcher(db, transport=expo(calls)).send([user.id], "New Asset Created", "Truck 1", {"asset_id": "x"})
        assert result.success is True
        assert result.tokens_sent == 1
        (message,) = calls[0]
        assert message == {
            "to": "ExponentPushToken[abc]",
            "sound": "default",
            "title": "New Asset Created",
            "body": "Truck 1",
            "data": {"asset_id": "x"},
            "priority": "high",
        }

    def test_batches_of_one_hundred(self, db):
        users = [make_user(db) for _ in range(3)]
        for i in range(EXPO_BATCH_SIZE + 50):
            add_push_token(db, users[i % 3])
        calls = []
        result = PushDispatcher(db, transport=expo(calls)).send([u.id for u in users], "t", "b")
        assert [len(batch) for batch in calls] == [100, 50]
        assert result.tokens_sent == 150

    def test_error_ticket_marks_failure(self, db):
        user = make_user(db)
        add_push_token(db, user)
        calls = []
        tickets = lambda messages: [{"status": "error", "message": "DeviceNotRegistered"} for _ in messages]
        assert PushDispatcher(db, transport=expo(calls, tickets)).send([user.id], "t", "b").success is False

    def test_unreachable(self, db):
        user = make_user(db)
        add_push_token(db, user)

        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(DependencyError):
            PushDispatcher(db, transport=httpx.MockTransport(handler)).send([user.id], "t", "b")

    def test_server_error(self, db):
        user = make_user(db)
        add_push_token(db, user)
        transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"errors": []}))
        with pytest.raises(DependencyError):
            PushDispatcher(db, transport=transport).send([user.id], "t", "b")

    def test_non_json_reply(self, db):
        user = make_user(db)
        add_push_token(db, user)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>502 Bad Gateway</html>"))
        with pytest.raises(DependencyError):
            PushDispatcher(db, transport=transport).send([user.id], "t", "b")

    def test_disabled(self, db, monkeypatch):
        monkeypatch.setattr(settings, "enable_push", False)
        user = make_user(db)
        add_push_token(db, user)
        calls = []
        assert PushDispatcher(db, transport=expo(calls)).send([user.id], "t", "b").success is False
        assert calls == []


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = username

    def send_message(self, msg):
        if FakeSMTP.fail:
            raise smtplib.SMTPServerDisconnected("gone")
        FakeSMTP.sent.append((self, msg))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail = False
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(settings, "enable_email", True)
    monkeypatch.setattr(settings, "smtp_host", "smtp.fleet.test")
    monkeypatch.setattr(settings, "smtp_username", "mailer")
    monkeypatch.setattr(settings, "smtp_password", "secret")
    monkeypatch.setattr(settings, "mail_from", "FleetHub <alerts@fleet.test>")
    return FakeSMTP


class TestMileageAlertMailer:

    def test_threshold_is_strict(self):
        alert = mailer.MaintenanceAlertMailer(threshold=5000)
        assert not alert.should_alert(None)
        assert not alert.should_alert(5000)
        assert alert.should_alert(5001)

    def test_sends_over_threshold(self, smtp):
        assert mailer.MaintenanceAlertMailer().send(uuid.uuid4(), "Truck 1", 6000, "dana@fleet.test", "Dana")
        conn, msg = smtp.sent[0]
        assert conn.started_tls
        assert conn.logged_in == "mailer"
        assert msg["To"] == "dana@fleet.test"
        assert msg["Subject"] == "Asset Mileage Alert"
        body = msg.get_body(preferencelist=("plain",)).get_content()
        assert "Hello Dana" in body
        assert "6,000 miles" in body

    def test_below_threshold_not_sent(self, smtp):
        assert mailer.MaintenanceAlertMailer().send(uuid.uuid4(), "Truck 1", 4000, "dana@fleet.test") is False
        assert smtp.sent == []

    def test_no_recipient(self, smtp):
        assert mailer.MaintenanceAlertMailer().send(uuid.uuid4(), "Truck 1", 6000, None) is False

    def test_mail_disabled(self, smtp, monkeypatch):
        monkeypatch.setattr(settings, "enable_email", False)
        assert mailer.MaintenanceAlertMailer().send(uuid.uuid4(), "Truck 1", 6000, "dana@fleet.test") is False
        assert smtp.sent == []

    def test_smtp_failure(self, smtp):
        smtp.fail = True
        with pytest.raises(DependencyError):
            mailer.MaintenanceAlertMailer().send(uuid.uuid4(), "Truck 1", 6000, "dana@fleet.test")
