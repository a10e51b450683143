import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

import main
from circulation.models import CopyStatus, FineStatus
from circulation.services import notifications
from circulation.services.notifications import LogDispatcher
from main import app

runner = CliRunner()

DUE = "2025-01-13T09:00"


@pytest.fixture
def cli(service, books, patrons, monkeypatch):
    monkeypatch.setattr(main, "get_service", lambda: service)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    return service


def test_loans_empty(cli):
    result = runner.invoke(app, ["loans"])
    assert result.exit_code == 0
    assert "No loans found." in result.stdout


def test_issue_success(cli):
    result = runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    assert result.exit_code == 0
    assert "Issued loan 1 to 2021-0001." in result.stdout
    assert cli.catalog.find_copy("ACC-001").status == CopyStatus.BORROWED


def test_issue_by_copy(cli):
    result = runner.invoke(app, ["issue", "2021-0001", "--copy", "ACC-003", "--due", DUE])
    assert result.exit_code == 0
    assert cli.catalog.find_copy("ACC-003").status == CopyStatus.BORROWED


def test_issue_conflict_exits_non_zero(cli):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    result = runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810743", "--due", DUE])
    assert result.exit_code == 1
    assert "Error: Patron 2021-0001 must return their current book first." in result.stdout


def test_issue_invalid_due_date(cli):
    result = runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", "next tuesday"])
    assert result.exit_code == 1
    assert "Invalid due date" in result.stdout


def test_return_and_fines(cli, clock):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=9)

    result = runner.invoke(app, ["return", "1"])
    assert result.exit_code == 0
    assert "Loan 1 returned. Fine: 50.00 (unpaid)" in result.stdout

    result = runner.invoke(app, ["fines", "--status", "unpaid"])
    assert result.exit_code == 0
    assert "#1 " in result.stdout
    assert "fine=50.00 (unpaid)" in result.stdout


def test_return_paid(cli, clock):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=7, hours=2)
    result = runner.invoke(app, ["return", "1", "--paid"])
    assert result.exit_code == 0
    assert "Fine: 15.00 (cleared)" in result.stdout


def test_return_unknown_loan(cli):
    result = runner.invoke(app, ["return", "42"])
    assert result.exit_code == 1
    assert "Error: Loan 42 not found." in result.stdout


def test_fines_empty(cli):
    result = runner.invoke(app, ["fines"])
    assert result.exit_code == 0
    assert "No fines found." in result.stdout


def test_fine_status_command(cli, clock):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=9)
    runner.invoke(app, ["return", "1"])

    result = runner.invoke(app, ["fine-status", "1", "cleared"])
    assert result.exit_code == 0
    assert "Loan 1 fine status: cleared." in result.stdout
    assert cli.ledger.get(1).fine_status == FineStatus.CLEARED


def test_loans_json_output(cli, clock):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=7, hours=1)

    result = runner.invoke(app, ["--output", "json", "loans", "--status", "Overdue"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout.strip().splitlines()[-1])
    assert payload[0]["status"] == "Overdue"
    assert payload[0]["fine_amount"] == "10.00"


def test_sweep(cli, clock):
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=8)
    result = runner.invoke(app, ["sweep"])
    assert result.exit_code == 0
    assert "Refreshed 1 open loans." in result.stdout


def test_status_command(cli):
    runner.invoke(app, ["issue", "2021-0001", "--copy", "ACC-101", "--due", DUE])
    result = runner.invoke(app, ["status", "9789710810743"])
    assert result.exit_code == 0
    assert "Not Available" in result.stdout
    assert "ACC-101: Borrowed" in result.stdout
    assert "ACC-102: Reserve" in result.stdout


def test_copy_status_command(cli):
    result = runner.invoke(app, ["copy-status", "ACC-003", "Lost"])
    assert result.exit_code == 0
    assert "ACC-003: Lost" in result.stdout

    result = runner.invoke(app, ["copy-status", "ACC-003", "Available"])
    assert result.exit_code == 1


def test_fix_single_copy(cli):
    result = runner.invoke(app, ["fix-single-copy"])
    assert result.exit_code == 0
    assert "ACC-201: Reserve" in result.stdout
    assert "Reserved 1 copies." in result.stdout

    result = runner.invoke(app, ["fix-single-copy"])
    assert "No single-copy books need fixing." in result.stdout


def test_notify_overdue(cli, clock, monkeypatch):
    dispatcher = LogDispatcher()
    monkeypatch.setattr(notifications, "default_dispatcher", lambda: dispatcher)
    monkeypatch.setattr(notifications.settings, "notify_admin_recipients", ["admin@example.edu"])
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=8)

    result = runner.invoke(app, ["notify-overdue"])
    assert result.exit_code == 0
    assert "Overdue loans: 1" in result.stdout
    assert "Notices sent: 2, skipped: 0, failed: 0" in result.stdout
    assert [m["recipient"] for m in dispatcher.sent] == ["maria@example.edu", "admin@example.edu"]


def test_notify_overdue_reports_failures(cli, clock, monkeypatch):
    dispatcher = MagicMock()
    dispatcher.send.side_effect = notifications.NotificationError("webhook down")
    monkeypatch.setattr(notifications, "default_dispatcher", lambda: dispatcher)
    monkeypatch.setattr(notifications.settings, "notify_admin_recipients", [])
    runner.invoke(app, ["issue", "2021-0001", "--book", "9789710810736", "--due", DUE])
    clock.advance(days=8)

    result = runner.invoke(app, ["notify-overdue"])
    assert result.exit_code == 1
    assert "failed: 1" in result.stdout


def test_serve_runs_uvicorn(monkeypatch):
    run = MagicMock()
    monkeypatch.setattr(main.subprocess, "run", run)
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting circulation API on" in result.stdout
    args = run.call_args[0][0]
    assert args[1:4] == ["-m", "uvicorn", "api:app"]
