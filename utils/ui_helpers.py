import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

_STATUS_STYLES = {
    "Issued": "green",
    "Overdue": "bold red",
    "Returned": "dim",
}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _plain_loan(loan: Dict[str, Any]) -> str:
    line = f"#{loan['id']} patron={loan['patron_id']} copy={loan['copy_id']} due={loan['due_at']} {loan['status']}"
    if loan["fine_status"] != "no fine":
        line += f" fine={loan['fine_amount']} ({loan['fine_status']})"
    return line


def print_loans_result(loans: List[Any], empty_message: str = "No loans found.") -> None:
    """Print loans in the current output mode.
    - plain: one '#id patron=.. copy=.. due=.. Status' line per loan
    - json: JSON array of loan objects
    - rich: Rich table with coloured status
    """
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    payload = [loan.to_dict() for loan in loans]
    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Patron")
        table.add_column("Copy")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        table.add_column("Fine Status")
        for loan in payload:
            style = _STATUS_STYLES.get(loan["status"], "white")
            table.add_row(
                str(loan["id"]),
                str(loan["patron_id"]),
                str(loan["copy_id"]),
                loan["due_at"],
                f"[{style}]{loan['status']}[/]",
                loan["fine_amount"],
                loan["fine_status"],
            )
        _console.print(table)
    else:
        for loan in payload:
            print(_plain_loan(loan))


def print_loan_result(loan: Any, headline: str) -> None:
    """Print a single loan after a mutation."""
    mode = get_output_mode()
    data = loan.to_dict()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        _console.print(Panel.fit(_plain_loan(data), title=headline, border_style="green"))
    else:
        print(headline)
        print(_plain_loan(data))


def print_receipt_result(receipt: Any) -> None:
    mode = get_output_mode()
    data = receipt.to_dict()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
        return
    loan = data["loan"]
    text = f"Loan {loan['id']} returned. Fine: {data['fine']} ({loan['fine_status']})"
    if mode == "rich":
        border = "green" if loan["fine_status"] == "cleared" else "red"
        _console.print(Panel.fit(text, title="Return", border_style=border))
    else:
        print(text)


def print_book_status(status: Dict[str, Any]) -> None:
    """Print a book's aggregates and its copies.
    - plain: header line then one 'accession: Status' line per copy
    - json: the status object as is
    - rich: Panel with the aggregates and a copies table
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(status, ensure_ascii=False))
        return

    header = (
        f"{status['title']} [{status['isbn']}] {status['status']}: "
        f"{status['copies_available']} of {status['copies_total']} copies on the shelf"
    )
    if mode == "rich":
        _console.print(Panel.fit(header, title=status["call_number"], border_style="blue"))
        table = Table(show_lines=False, header_style="bold cyan")
        table.add_column("Accession", style="magenta", no_wrap=True)
        table.add_column("Status")
        for copy in status["copies"]:
            table.add_row(copy["accession_number"], copy["status"])
        _console.print(table)
    else:
        print(header)
        for copy in status["copies"]:
            print(f"  {copy['accession_number']}: {copy['status']}")


def print_report_result(report: Any) -> None:
    mode = get_output_mode()
    data = {
        "notices": report.notices,
        "sent": report.sent,
        "skipped": report.skipped,
        "failed": list(report.failed),
    }
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Overdue:[/] {report.notices}\n[bold]Sent:[/] {report.sent}\n"
            f"[bold]Skipped:[/] {report.skipped}\n[bold]Failed:[/] {len(report.failed)}"
        )
        _console.print(Panel.fit(content, title="Overdue notices", border_style="yellow"))
    else:
        print(f"Overdue loans: {report.notices}")
        print(f"Notices sent: {report.sent}, skipped: {report.skipped}, failed: {len(report.failed)}")
