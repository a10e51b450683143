import logging
import os
import subprocess
import sys
import webbrowser
from typing import Optional

import typer
from rich.console import Console

from circulation.errors import CirculationError
from circulation.models import CopyStatus, FineStatus, LoanStatus
from circulation.service import CirculationService
from circulation.services.notifications import NotificationError, OverdueNotifier
from config import settings
from utils.ui_helpers import (
    print_book_status,
    print_loan_result,
    print_loans_result,
    print_receipt_result,
    print_report_result,
    set_output_mode,
)

logger = logging.getLogger(__name__)

console = Console(stderr=True)


class ServiceManager:
    """Holds one circulation service per database file for the CLI process."""

    _instance: Optional[CirculationService] = None
    _db_file: Optional[str] = None

    @classmethod
    def use_database(cls, db_file: Optional[str]) -> None:
        if db_file != cls._db_file:
            cls._instance = None
            cls._db_file = db_file

    @classmethod
    def get_instance(cls) -> CirculationService:
        if cls._instance is None:
            cls._instance = CirculationService(cls._db_file or settings.database_file)
        return cls._instance


def get_service() -> CirculationService:
    return ServiceManager.get_instance()


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


# --- Typer CLI application ---
app = typer.Typer(help="Library circulation desk")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Global options for the CLI (output mode, database file)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    if db:
        ServiceManager.use_database(db)


@app.command("issue")
def cli_issue(
    school_id: str = typer.Argument(..., help="Patron school or guest id"),
    due: str = typer.Option(..., "--due", help="Due date, ISO format, library local time"),
    book: Optional[str] = typer.Option(None, "--book", "-b", help="ISBN, call number or book id"),
    copy: Optional[str] = typer.Option(None, "--copy", "-c", help="Accession number; first available copy if omitted"),
):
    """Issue a book copy to a patron."""
    service = get_service()
    try:
        due_at = service.clock.parse(due)
    except ValueError:
        _fail(f"Invalid due date: {due!r}")
    try:
        loan = service.issue(school_id, book, copy, due_at)
    except CirculationError as e:
        _fail(str(e))
    print_loan_result(loan, f"Issued loan {loan.id} to {school_id}.")


@app.command("return")
def cli_return(
    loan_id: int = typer.Argument(..., help="Loan id"),
    paid: bool = typer.Option(False, "--paid", help="The fine was settled at the desk"),
):
    """Return a loan and print the frozen fine."""
    fine_status = FineStatus.CLEARED if paid else None
    try:
        receipt = get_service().return_book(loan_id, fine_status=fine_status)
    except CirculationError as e:
        _fail(str(e))
    print_receipt_result(receipt)


@app.command("loans")
def cli_loans(
    patron: Optional[str] = typer.Option(None, "--patron", "-p", help="Filter by school id"),
    status: Optional[LoanStatus] = typer.Option(None, "--status", "-s", help="Issued | Overdue | Returned"),
):
    """List loans (refreshed against the current time)."""
    try:
        loans = get_service().list_loans(patron=patron, status=status)
    except CirculationError as e:
        _fail(str(e))
    print_loans_result(loans)


@app.command("fines")
def cli_fines(
    fine_status: Optional[FineStatus] = typer.Option(None, "--status", "-s", help="unpaid | cleared | no fine"),
):
    """List loans carrying a fine."""
    print_loans_result(get_service().list_fines(fine_status), empty_message="No fines found.")


@app.command("fine-status")
def cli_fine_status(
    loan_id: int = typer.Argument(..., help="Loan id"),
    fine_status: FineStatus = typer.Argument(..., help="unpaid | cleared | no fine"),
):
    """Set a loan's fine status (bookkeeping override)."""
    try:
        loan = get_service().update_fine_status(loan_id, fine_status)
    except CirculationError as e:
        _fail(str(e))
    print_loan_result(loan, f"Loan {loan_id} fine status: {loan.fine_status.value}.")


@app.command("sweep")
def cli_sweep():
    """Refresh every open loan once. Meant for cron or another scheduler."""
    count = get_service().refresh_all()
    logger.info(f"Sweep refreshed {count} open loans")
    print(f"Refreshed {count} open loans.")


@app.command("notify-overdue")
def cli_notify_overdue():
    """Send overdue notices to patrons and the configured admins."""
    try:
        report = OverdueNotifier(get_service()).run()
    except (CirculationError, NotificationError) as e:
        _fail(str(e))
    print_report_result(report)
    if report.failed:
        raise typer.Exit(code=1)


@app.command("fix-single-copy")
def cli_fix_single_copy():
    """Move the only shelved copy of single-copy books to Reserve."""
    moved = get_service().reserve_single_copy_books()
    if not moved:
        print("No single-copy books need fixing.")
        return
    for copy in moved:
        print(f"{copy.accession_number}: {copy.status.value}")
    print(f"Reserved {len(moved)} copies.")


@app.command("status")
def cli_status(book: str = typer.Argument(..., help="ISBN, call number or book id")):
    """Show a book's availability and the state of every copy."""
    try:
        status = get_service().book_status(book)
    except CirculationError as e:
        _fail(str(e))
    print_book_status(status)


@app.command("copy-status")
def cli_copy_status(
    accession_number: str = typer.Argument(..., help="Accession number or copy id"),
    status: CopyStatus = typer.Argument(..., help="Reserve | Available | Lost | Old | Damaged"),
):
    """Reserve, release or archive a single copy."""
    service = get_service()
    try:
        if status == CopyStatus.RESERVE:
            copy = service.reserve_copy(accession_number)
        elif status == CopyStatus.AVAILABLE:
            copy = service.release_copy(accession_number)
        elif status == CopyStatus.BORROWED:
            _fail("Copies are borrowed by issuing a loan.")
        else:
            copy = service.archive_copy(accession_number, status)
    except CirculationError as e:
        _fail(str(e))
    print(f"{copy.accession_number}: {copy.status.value}")


@app.command("serve")
def cli_serve(
    open_browser: bool = typer.Option(False, "--open", help="Open the API docs in a browser"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting circulation API on {url}")
    if open_browser:
        webbrowser.open(url)
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    env = dict(os.environ)
    if ServiceManager._db_file:
        env["LIBRARY_DB_FILE"] = ServiceManager._db_file
    try:
        subprocess.run(args, check=True, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` not found. Make sure it is installed in this environment.")
        raise typer.Exit(code=1)
    except subprocess.CalledProcessError as e:
        raise typer.Exit(code=e.returncode)
    except KeyboardInterrupt:
        console.print("[green]Server stopped.[/]")


if __name__ == "__main__":
    app()
