from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from circulation.services import notifications
from circulation.services.http_client import HTTPClient
from circulation.services.notifications import (
    LogDispatcher,
    NotificationError,
    OverdueNotifier,
    WebhookDispatcher,
    collect_overdue_notices,
)

WEBHOOK = "https://hooks.example.edu/library"


@pytest.fixture
def overdue(service, books, patrons, clock, due):
    """p1 (has email) and p3 (guest, no email) overdue; p2 still within its due date."""
    service.issue("2021-0001", None, "ACC-001", due)
    service.issue("G-0003", None, "ACC-101", due)
    service.issue("2021-0002", None, "ACC-002", due + timedelta(days=10))
    clock.set(due + timedelta(days=1, hours=2))


def test_collect_overdue_notices(service, overdue):
    notices = collect_overdue_notices(service)

    assert sorted(n.school_id for n in notices) == ["2021-0001", "G-0003"]
    maria = next(n for n in notices if n.school_id == "2021-0001")
    assert maria.patron_name == "Maria Clara"
    assert maria.email == "maria@example.edu"
    assert maria.title == "Noli Me Tangere"
    assert maria.isbn == "9789710810736"
    assert maria.accession_number == "ACC-001"
    assert maria.fine_amount == Decimal("40.00")
    assert maria.to_dict()["fine_amount"] == "40.00"


def test_no_overdue_loans_sends_nothing(service, books, patrons, due):
    service.issue("2021-0001", None, "ACC-001", due)
    dispatcher = LogDispatcher()

    report = OverdueNotifier(service, dispatcher, admin_recipients=["admin@example.edu"]).run()

    assert report.notices == 0
    assert report.sent == 0
    assert dispatcher.sent == []


def test_notifier_sends_patron_notices_and_admin_summary(service, overdue):
    dispatcher = LogDispatcher()

    report = OverdueNotifier(service, dispatcher, admin_recipients=["admin@example.edu"]).run()

    assert report.notices == 2
    assert report.sent == 2
    assert report.skipped == 1
    assert report.failed == []
    recipients = [m["recipient"] for m in dispatcher.sent]
    assert recipients == ["maria@example.edu", "admin@example.edu"]
    summary = dispatcher.sent[-1]["payload"]
    assert summary["count"] == 2
    assert {loan["school_id"] for loan in summary["loans"]} == {"2021-0001", "G-0003"}


def test_admin_recipients_default_to_settings(service, overdue, monkeypatch):
    monkeypatch.setattr(notifications.settings, "notify_admin_recipients", ["desk@example.edu", "head@example.edu"])
    dispatcher = LogDispatcher()

    OverdueNotifier(service, dispatcher).run()

    assert [m["recipient"] for m in dispatcher.sent][-2:] == ["desk@example.edu", "head@example.edu"]


def test_webhook_dispatcher_posts_json():
    client = MagicMock(spec=HTTPClient)
    response = MagicMock()
    client.post_with_retry.return_value = response

    WebhookDispatcher(WEBHOOK, client=client).send("maria@example.edu", "Overdue book", {"loan_id": 1})

    client.post_with_retry.assert_called_once_with(
        WEBHOOK,
        json={"recipient": "maria@example.edu", "subject": "Overdue book", "payload": {"loan_id": 1}},
    )
    response.raise_for_status.assert_called_once()


def test_webhook_transport_error_becomes_notification_error():
    client = MagicMock(spec=HTTPClient)
    client.post_with_retry.side_effect = httpx.ConnectError("connection refused")

    with pytest.raises(NotificationError):
        WebhookDispatcher(WEBHOOK, client=client).send("maria@example.edu", "Overdue book", {})


def test_failed_deliveries_are_reported_not_raised(service, overdue):
    dispatcher = MagicMock()
    dispatcher.send.side_effect = NotificationError("webhook down")

    report = OverdueNotifier(service, dispatcher, admin_recipients=["admin@example.edu"]).run()

    assert report.sent == 0
    assert report.failed == ["maria@example.edu", "admin@example.edu"]


def test_default_dispatcher_uses_webhook_when_configured(monkeypatch):
    monkeypatch.setattr(notifications.settings, "notify_webhook_url", WEBHOOK)
    monkeypatch.setattr(notifications, "get_http_client", lambda: MagicMock(spec=HTTPClient))
    dispatcher = notifications.default_dispatcher()
    assert isinstance(dispatcher, WebhookDispatcher)
    assert dispatcher.url == WEBHOOK

    monkeypatch.setattr(notifications.settings, "notify_webhook_url", None)
    assert isinstance(notifications.default_dispatcher(), LogDispatcher)


def test_http_client_retries_transport_errors(monkeypatch):
    monkeypatch.setattr("circulation.services.http_client.time.sleep", lambda s: None)
    client = HTTPClient(timeout=1)
    ok = httpx.Response(200)
    post = MagicMock(side_effect=[httpx.ConnectError("boom"), ok])
    monkeypatch.setattr(client, "post", post)

    assert client.post_with_retry(WEBHOOK, json={}) is ok
    assert post.call_count == 2
    client.close()


def test_http_client_gives_up_after_retries(monkeypatch):
    monkeypatch.setattr("circulation.services.http_client.time.sleep", lambda s: None)
    client = HTTPClient(timeout=1)
    monkeypatch.setattr(client, "post", MagicMock(side_effect=httpx.ConnectError("boom")))

    with pytest.raises(httpx.ConnectError):
        client.post_with_retry(WEBHOOK, retries=2)
    client.close()
