import os
import json
from typing import Any, Dict, Iterable, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

_LOAN_COLUMNS = ("id", "copy_id", "borrower_id", "loan_date", "due_date", "status")
_FINE_COLUMNS = ("id", "user_id", "kind", "amount", "paid", "payment_date", "created_on")


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_rows(rows: List[Dict[str, Any]], columns: Iterable[str], title: str) -> None:
    columns = list(columns)
    table = Table(title=title, show_lines=True, header_style="bold cyan")
    for col in columns:
        table.add_column(col.replace("_", " ").title(), style="white", no_wrap=(col == "id"))
    for row in rows:
        table.add_row(*("" if row.get(col) is None else str(row.get(col)) for col in columns))
    _console.print(table)


def print_loans(loans: List[Any], as_of=None) -> None:
    """Print loans in the current output mode.
    - plain: '#id copy=.. borrower=.. loan -> due [status]' lines, or 'No loans found.'
    - json: JSON array of loan dicts
    - rich: Rich table
    """
    if not loans:
        print("No loans found.")
        return

    rows = [l.to_dict(as_of=as_of) for l in loans]
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        columns = _LOAN_COLUMNS + (("effective_status", "days_overdue") if as_of is not None else ())
        _print_rows(rows, columns, "Loans")
    else:
        for r in rows:
            status = r.get("effective_status", r["status"])
            line = f"#{r['id']} copy={r['copy_id']} borrower={r['borrower_id']} {r['loan_date']} -> {r['due_date']} [{status}]"
            if r.get("days_overdue"):
                line += f" {r['days_overdue']} day(s) overdue"
            print(line)


def print_fines(fines: List[Any], currency: Optional[str] = None) -> None:
    if not fines:
        print("No fines found.")
        return

    rows = [f.to_dict() for f in fines]
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        _print_rows(rows, _FINE_COLUMNS, "Fines")
    else:
        prefix = currency or ""
        for r in rows:
            state = f"paid {r['payment_date']}" if r["paid"] else "unpaid"
            print(f"#{r['id']} user={r['user_id']} {r['kind']} {prefix}{r['amount']} ({state})")


def print_record(kind: str, record: Dict[str, Any]) -> None:
    """Print a single record (loan, return or fine) after a command."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in record.items() if v is not None)
        _console.print(Panel.fit(content, title=kind, border_style="green"))
    else:
        fields = " ".join(f"{k}={v}" for k, v in record.items() if v is not None)
        print(f"{kind}: {fields}")

