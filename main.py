import logging
import os
import subprocess
import sys
from datetime import date
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape

import database
from config import settings
from errors import LibraryError
from library import Library
from seed import seed_demo_data
from utils.ui_helpers import (
    print_fines,
    print_loans,
    print_record,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"

console = Console(soft_wrap=True)


class LibraryManager:
    """Lazily built Library, rebuilt when the configured database file changes."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = database.resolve_database_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = Library()
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def _fail(error: LibraryError) -> NoReturn:
    console.print(f"[bold red]Error: {escape(str(error))}[/]")
    raise typer.Exit(code=1)


def _parse_day(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"'{value}' is not a YYYY-MM-DD date")


# --- Typer CLI ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create tables and reference data."""
    lib = LibraryManager.get_instance()
    console.print(f"[green]Database ready:[/] {escape(lib.db_file)}")


@app.command("seed")
def cli_seed():
    """Load demo users, copies and loans into an empty database."""
    summary = seed_demo_data(LibraryManager.get_instance())
    if summary.get("seeded"):
        console.print(
            f"Seeded {summary['users']} users, {summary['copies']} copies, "
            f"{summary['active_loans']} active loans, {summary['fines']} fines."
        )
    else:
        console.print("[dim]Database already contains data; nothing seeded.[/]")


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Active | Overdue | Returned | Cancelled"),
    borrower: Optional[int] = typer.Option(None, "--borrower", "-b", help="Only this borrower's loans"),
    overdue: bool = typer.Option(False, "--overdue", help="Only overdue loans"),
):
    """List loans with their effective status."""
    lib = LibraryManager.get_instance()
    try:
        loans = lib.list_loans(status=status, borrower_id=borrower, overdue_only=overdue)
    except LibraryError as e:
        _fail(e)
    print_loans(loans, as_of=lib.today())


@app.command("lend")
def cli_lend(
    borrower_id: int,
    copy_id: int,
    agent: int = typer.Option(..., "--agent", "-a", help="Staff user recording the loan"),
    loan_date: Optional[str] = typer.Option(None, "--loan-date", help="YYYY-MM-DD, defaults to today"),
    due: Optional[str] = typer.Option(None, "--due", help="YYYY-MM-DD, defaults to the standard loan period"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Lend a copy to a borrower."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.open_loan(
            borrower_id, copy_id, agent, loan_date=_parse_day(loan_date), due_date=_parse_day(due), notes=notes
        )
    except LibraryError as e:
        _fail(e)
    print_record("Loan", loan.to_dict())


@app.command("return")
def cli_return(
    loan_id: int,
    agent: int = typer.Option(..., "--agent", "-a", help="Staff user receiving the copy"),
    on: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD, defaults to today"),
    condition: Optional[str] = typer.Option(None, "--condition", "-c", help="Good | Fair | Damaged | Lost"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Record the return of a loan."""
    lib = LibraryManager.get_instance()
    try:
        outcome = lib.record_return(loan_id, agent, return_date=_parse_day(on), condition=condition, notes=notes)
    except LibraryError as e:
        _fail(e)
    print_record("Return", outcome.record.to_dict())
    if outcome.fine:
        print_record("Fine", outcome.fine.to_dict())
    if outcome.fine_error:
        console.print(
            f"[bold yellow]Warning: return recorded but the overdue fine failed: {escape(outcome.fine_error)}[/]"
        )


@app.command("cancel")
def cli_cancel(loan_id: int):
    """Cancel an active loan."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.cancel_loan(loan_id)
    except LibraryError as e:
        _fail(e)
    console.print(f"Loan {loan.id} cancelled.")


@app.command("fines")
def cli_fines(
    user: Optional[int] = typer.Option(None, "--user", "-u", help="Only this user's fines"),
    paid: Optional[bool] = typer.Option(None, "--paid/--unpaid", help="Filter by payment state"),
):
    """List fines."""
    lib = LibraryManager.get_instance()
    print_fines(lib.list_fines(user_id=user, paid=paid), currency=settings.currency_symbol)


@app.command("pay")
def cli_pay(
    fine_id: int,
    on: Optional[str] = typer.Option(None, "--date", help="Payment date YYYY-MM-DD, defaults to today"),
):
    """Mark a fine as paid."""
    lib = LibraryManager.get_instance()
    try:
        fine = lib.mark_paid(fine_id, _parse_day(on))
    except LibraryError as e:
        _fail(e)
    console.print(f"Fine {fine.id} paid on {fine.payment_date.isoformat()}.")


@app.command("unpay")
def cli_unpay(fine_id: int):
    """Mark a fine as unpaid again."""
    lib = LibraryManager.get_instance()
    try:
        fine = lib.mark_unpaid(fine_id)
    except LibraryError as e:
        _fail(e)
    console.print(f"Fine {fine.id} marked unpaid.")


@app.command("owed")
def cli_owed(user_id: int):
    """Show the total a user owes in unpaid fines."""
    lib = LibraryManager.get_instance()
    total = lib.total_owed(user_id)
    console.print(f"User {user_id} owes {settings.currency_symbol or ''}{total}")


@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    console.print(f"[bold]Starting API on http://{host}:{port}/[/]")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    if timeout and timeout > 0:
        proc = subprocess.Popen(args, start_new_session=(os.name != "nt"))
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)
    else:
        subprocess.run(args)


if __name__ == "__main__":
    app()
