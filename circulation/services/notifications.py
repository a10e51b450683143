"""Overdue notifications.

The engine never sends anything on its own. A scheduled job (the
``notify-overdue`` CLI command) asks ``OverdueNotifier`` to snapshot the
currently overdue loans and hand them to a dispatcher: one notice per
patron with an email address, plus one summary for every configured admin
recipient.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from circulation.services.http_client import HTTPClient, get_http_client
from config import settings

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """A notice could not be delivered."""


@dataclass
class OverdueNotice:
    loan_id: int
    patron_name: str
    school_id: str
    email: Optional[str]
    title: str
    isbn: str
    accession_number: str
    due_at: datetime
    fine_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "patron_name": self.patron_name,
            "school_id": self.school_id,
            "email": self.email,
            "title": self.title,
            "isbn": self.isbn,
            "accession_number": self.accession_number,
            "due_at": self.due_at.isoformat(),
            "due_date": self.due_at.strftime("%B %d, %Y %I:%M %p"),
            "fine_amount": f"{self.fine_amount:.2f}",
        }


def collect_overdue_notices(service, now: Optional[datetime] = None) -> List[OverdueNotice]:
    """Snapshot every overdue loan with its patron and book, after a refresh."""
    notices = []
    for loan in service.list_overdue(now=now):
        patron = service.catalog.get_patron(loan.patron_id)
        book = service.catalog.get_book(loan.book_id)
        copy = service.catalog.get_copy(loan.copy_id)
        notices.append(
            OverdueNotice(
                loan_id=loan.id,
                patron_name=patron.name,
                school_id=patron.school_id,
                email=patron.email,
                title=book.title,
                isbn=book.isbn,
                accession_number=copy.accession_number,
                due_at=loan.due_at,
                fine_amount=loan.fine_amount,
            )
        )
    return notices


class NotificationDispatcher(ABC):
    @abstractmethod
    def send(self, recipient: str, subject: str, payload: Dict[str, Any]) -> None:
        ...


class LogDispatcher(NotificationDispatcher):
    """Writes notices to the log. Default when no webhook is configured."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def send(self, recipient: str, subject: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"recipient": recipient, "subject": subject, "payload": payload})
        logger.info(f"[notice] to={recipient} subject={subject!r}")


class WebhookDispatcher(NotificationDispatcher):
    """POSTs each notice as JSON to a webhook that performs the actual delivery."""

    def __init__(self, url: str, client: Optional[HTTPClient] = None) -> None:
        self.url = url
        self.client = client or get_http_client()

    def send(self, recipient: str, subject: str, payload: Dict[str, Any]) -> None:
        body = {"recipient": recipient, "subject": subject, "payload": payload}
        try:
            response = self.client.post_with_retry(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery to {recipient} failed: {e}") from e


def default_dispatcher() -> NotificationDispatcher:
    if settings.notify_webhook_url:
        return WebhookDispatcher(settings.notify_webhook_url)
    return LogDispatcher()


@dataclass
class NotificationReport:
    notices: int = 0
    sent: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)


class OverdueNotifier:
    def __init__(
        self,
        service,
        dispatcher: Optional[NotificationDispatcher] = None,
        admin_recipients: Optional[List[str]] = None,
    ) -> None:
        self.service = service
        self.dispatcher = dispatcher or default_dispatcher()
        self.admin_recipients = (
            settings.notify_admin_recipients if admin_recipients is None else admin_recipients
        )

    def _deliver(self, report: NotificationReport, recipient: str, subject: str, payload: Dict[str, Any]) -> None:
        try:
            self.dispatcher.send(recipient, subject, payload)
            report.sent += 1
        except NotificationError as e:
            logger.error(str(e))
            report.failed.append(recipient)

    def run(self, now: Optional[datetime] = None) -> NotificationReport:
        notices = collect_overdue_notices(self.service, now)
        report = NotificationReport(notices=len(notices))
        if not notices:
            logger.info("No overdue books found.")
            return report

        for notice in notices:
            if not notice.email:
                logger.warning(f"Patron {notice.school_id} has no email; overdue notice skipped")
                report.skipped += 1
                continue
            self._deliver(report, notice.email, f"Overdue book: {notice.title}", notice.to_dict())

        summary = {"count": len(notices), "loans": [n.to_dict() for n in notices]}
        for admin in self.admin_recipients:
            self._deliver(report, admin, f"{len(notices)} overdue book(s)", summary)

        logger.info(
            f"Overdue notices: {report.sent} sent, {report.skipped} skipped, {len(report.failed)} failed"
        )
        return report
