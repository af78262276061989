import logging
import os
import subprocess
import sys
import webbrowser
from datetime import date, datetime
from typing import Callable, Dict, Iterable, NoReturn, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

import database
from config import settings
from lending import LendingError
from library import Library
from utils.ui_helpers import (
    money,
    print_book_list,
    print_fine_details,
    print_loan_list,
    print_member_list,
    print_member_status,
    print_overdue_report,
    print_stats_result,
    set_output_mode,
)

APP_NAME = settings.app_name

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=settings.debug, show_path=False)],
    )


# Single Library instance per database file
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        """Return the shared Library, reopening it if the database file changed."""
        current_db = database.DATABASE_FILE
        if cls._instance is not None and cls._db_file_snapshot != current_db:
            cls._instance.close()
            cls._instance = None
        if cls._instance is None:
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
            logger.debug(f"Library opened on {current_db}")
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None
        cls._db_file_snapshot = None


def _titles(lib: Library, book_ids: Iterable[int]) -> Dict[int, str]:
    titles: Dict[int, str] = {}
    for book_id in set(book_ids):
        book = lib.find_book(book_id)
        titles[book_id] = book.title if book else "Unknown"
    return titles


def _as_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value else None


def _fail(message: str) -> NoReturn:
    print(message)
    raise typer.Exit(code=1)


def _report_lending_error(e: LendingError) -> NoReturn:
    _fail(f"Error [{e.reason.value}]: {e.message}")


# --- Typer CLI ---
app = typer.Typer(help="Library lending CLI")

DateOption = typer.Option(None, "--on", formats=["%Y-%m-%d"], help="Treat this date as today (YYYY-MM-DD)")


@app.callback(invoke_without_command=True)
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (default: LOG_LEVEL)"),
):
    """Global options (output mode, logging)."""
    configure_logging(log_level)
    if output:
        set_output_mode(output)
    if ctx.invoked_subcommand is None:
        run_menu()


# ---- Catalogue ----
@app.command("book-add")
def cli_book_add(
    title: str = typer.Argument(..., help="Book title"),
    author: str = typer.Argument(..., help="Author name"),
    isbn: str = typer.Argument(..., help="ISBN-10 or ISBN-13"),
    year: Optional[int] = typer.Option(None, "--year", "-y", help="Publication year"),
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
):
    """Add a new book to the catalogue."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_book(title, author, isbn, publication_year=year, total_copies=copies)
    except ValueError as e:
        _fail(f"Error: {e}")
    print(f"Successfully added: {book.title} by {book.author} (ID: {book.book_id}, copies: {book.total_copies})")


@app.command("add-copies")
def cli_add_copies(book_id: int, copies: int = typer.Argument(..., help="Copies to add")):
    """Add copies of an existing book."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.add_copies(book_id, copies)
    except ValueError as e:
        _fail(f"Error: {e}")
    if book is None:
        _fail(f"Book with ID {book_id} not found.")
    print(f"{book.title} now has {book.total_copies} copies ({book.available_copies} available).")


@app.command("book-list")
def cli_book_list():
    """List every book in the catalogue."""
    print_book_list(LibraryManager.get_instance().list_books())


@app.command("available")
def cli_available():
    """List all books with at least one copy on the shelf."""
    print_book_list(LibraryManager.get_instance().available_books(),
                    empty_message="No books currently available in the library.")


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Title, author or ISBN fragment")):
    """Search available books by title, author or ISBN."""
    books = LibraryManager.get_instance().check_availability(query)
    print_book_list(books, empty_message="No available books found matching your query.")


@app.command("book-delete")
def cli_book_delete(book_id: int, yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Delete a book (refused while it is on loan or has unpaid fines)."""
    lib = LibraryManager.get_instance()
    book = lib.find_book(book_id)
    if book is None:
        _fail(f"Book with ID {book_id} not found.")
    if not yes and not typer.confirm(f"Delete '{book.title}'?"):
        print("Deletion cancelled.")
        return
    if lib.remove_book(book_id):
        print(f"Book with ID {book_id} has been removed.")
    else:
        _fail("Failed to delete book. It has active loans or unpaid fines.")


# ---- Members ----
@app.command("member-add")
def cli_member_add(
    first_name: str,
    last_name: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone", "-p", help="Phone number"),
):
    """Register a new member."""
    lib = LibraryManager.get_instance()
    try:
        member = lib.add_member(first_name, last_name, email, phone)
    except ValueError as e:
        _fail(f"Error: {e}")
    print(f"Member added successfully! Member ID: {member.member_id}")


@app.command("member-list")
def cli_member_list():
    """List all members with their outstanding fines."""
    print_member_list(LibraryManager.get_instance().list_members())


@app.command("member-status")
def cli_member_status(member_id: int):
    """Show a member's profile, balance and borrowed books."""
    lib = LibraryManager.get_instance()
    try:
        status = lib.member_status(member_id)
    except LendingError as e:
        _report_lending_error(e)
    print_member_status(status, _titles(lib, (loan.book_id for loan in status.open_loans)))


@app.command("member-delete")
def cli_member_delete(member_id: int, yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Delete a member (refused while they hold books or owe fines)."""
    lib = LibraryManager.get_instance()
    member = lib.find_member(member_id)
    if member is None:
        _fail(f"Member with ID {member_id} not found.")
    if not yes and not typer.confirm(f"Delete member {member.full_name}?"):
        print("Deletion cancelled.")
        return
    if lib.remove_member(member_id):
        print(f"Member with ID {member_id} has been removed.")
    else:
        _fail("Failed to delete member. They have active loans or outstanding fines.")


# ---- Lending ----
@app.command("borrow")
def cli_borrow(member_id: int, book_id: int, on: Optional[datetime] = DateOption):
    """Lend a book to a member."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.borrow_book(member_id, book_id, today=_as_date(on))
    except LendingError as e:
        _report_lending_error(e)
    print(f"Book borrowed successfully. Loan ID: {loan.loan_id}, Due date: {loan.due_date.isoformat()}")


@app.command("return")
def cli_return(loan_id: int, on: Optional[datetime] = DateOption):
    """Return a borrowed book and report any fine."""
    lib = LibraryManager.get_instance()
    try:
        fine = lib.return_book(loan_id, today=_as_date(on))
    except LendingError as e:
        _report_lending_error(e)
    if fine > 0:
        print(f"Loan {loan_id} returned. Fine incurred: {money(fine)}")
    else:
        print(f"Loan {loan_id} returned. No fine incurred.")


@app.command("renew")
def cli_renew(loan_id: int, on: Optional[datetime] = DateOption):
    """Renew a loan once."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.renew_book(loan_id, today=_as_date(on))
    except LendingError as e:
        _report_lending_error(e)
    print(f"Loan {loan_id} renewed successfully. New due date: {loan.due_date.isoformat()}")


@app.command("loans")
def cli_loans(member_id: int, history: bool = typer.Option(False, "--all", "-a", help="Include returned loans")):
    """List a member's borrowed books."""
    lib = LibraryManager.get_instance()
    try:
        loans = lib.loan_history(member_id) if history else lib.borrowed_books(member_id)
    except LendingError as e:
        _report_lending_error(e)
    print_loan_list(loans, _titles(lib, (loan.book_id for loan in loans)),
                    empty_message="No books currently borrowed.")


@app.command("fines")
def cli_fines(member_id: int):
    """Show a member's outstanding fines."""
    lib = LibraryManager.get_instance()
    try:
        details = lib.fine_details(member_id)
    except LendingError as e:
        _report_lending_error(e)
    print_fine_details(details, _titles(lib, (loan.book_id for loan in details.unpaid_loans)))


@app.command("pay")
def cli_pay(member_id: int):
    """Pay all of a member's outstanding fines."""
    lib = LibraryManager.get_instance()
    try:
        paid = lib.pay_fines(member_id)
    except LendingError as e:
        _report_lending_error(e)
    if paid > 0:
        print(f"All outstanding fines ({money(paid)}) have been paid.")
    else:
        print("No outstanding fines.")


@app.command("overdue")
def cli_overdue(on: Optional[datetime] = DateOption):
    """Report all overdue loans with their current fines."""
    print_overdue_report(LibraryManager.get_instance().overdue_report(today=_as_date(on)))


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    serve(timeout=timeout)


def serve(host: Optional[str] = None, port: Optional[int] = None, timeout: Optional[int] = None) -> None:
    """Run the API under uvicorn in a child process."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        logger.warning("Could not open a web browser automatically")

    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    try:
        if timeout and timeout > 0:
            # No reloader in timed mode so the child shuts down cleanly
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, start_new_session=start_new_session)
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
            args.append("--reload")
            subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` not found. Make sure it is installed.")


# --- Interactive menu ---
def _ask_int(label: str) -> int:
    return IntPrompt.ask(label)


def _run_action(action: Callable[[Library], None]) -> None:
    """Run one menu action, reporting refusals instead of crashing the menu."""
    lib = LibraryManager.get_instance()
    try:
        action(lib)
    except LendingError as e:
        console.print(f"[bold red]Error ({e.reason.value}):[/] {escape(e.message)}")
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {escape(str(e))}")


def _menu_borrow(lib: Library) -> None:
    member_id = _ask_int("Enter Member ID")
    book_id = _ask_int("Enter Book ID to borrow")
    loan = lib.borrow_book(member_id, book_id)
    book = lib.find_book(book_id)
    console.print(Panel.fit(
        f"[bold]{escape(book.title if book else str(book_id))}[/] borrowed.\nDue date: {loan.due_date.isoformat()}",
        title=f"✅ Loan {loan.loan_id}", border_style="green"))


def _menu_return(lib: Library) -> None:
    fine = lib.return_book(_ask_int("Enter Loan ID to return"))
    if fine > 0:
        console.print(f"[yellow]Book returned. Fine incurred: {money(fine)}[/]")
    else:
        console.print("[green]Book returned. No fine incurred.[/]")


def _menu_renew(lib: Library) -> None:
    loan = lib.renew_book(_ask_int("Enter Loan ID to renew"))
    console.print(f"[green]Renewed. New due date: {loan.due_date.isoformat()}[/]")


def _menu_search(lib: Library) -> None:
    query = Prompt.ask("Search (title, author, ISBN)")
    print_book_list(lib.check_availability(query), empty_message="No available books found matching your query.")


def _menu_borrowed(lib: Library) -> None:
    loans = lib.borrowed_books(_ask_int("Enter your Member ID"))
    print_loan_list(loans, _titles(lib, (loan.book_id for loan in loans)),
                    empty_message="You have no books currently borrowed.")


def _menu_fines(lib: Library) -> None:
    details = lib.fine_details(_ask_int("Enter your Member ID"))
    print_fine_details(details, _titles(lib, (loan.book_id for loan in details.unpaid_loans)))


def _menu_pay(lib: Library) -> None:
    member_id = _ask_int("Enter Member ID")
    details = lib.fine_details(member_id)
    if details.balance <= 0:
        console.print("[green]No outstanding fines.[/]")
        return
    if Confirm.ask(f"Pay {money(details.balance)} now?", default=True):
        paid = lib.pay_fines(member_id)
        console.print(f"[green]Paid {money(paid)}.[/]")


def _menu_add_book(lib: Library) -> None:
    title = Prompt.ask("Title")
    author = Prompt.ask("Author")
    isbn = Prompt.ask("ISBN")
    year = IntPrompt.ask("Publication Year")
    copies = IntPrompt.ask("Total Copies", default=1)
    book = lib.add_book(title, author, isbn, publication_year=year, total_copies=copies)
    console.print(f"[green]Added [bold]{escape(book.title)}[/] with ID {book.book_id}.[/]")


def _menu_add_member(lib: Library) -> None:
    first_name = Prompt.ask("First Name")
    last_name = Prompt.ask("Last Name")
    email = Prompt.ask("Email")
    phone = Prompt.ask("Phone Number (optional)", default="")
    member = lib.add_member(first_name, last_name, email, phone or None)
    console.print(f"[green]Member added successfully! Member ID: {member.member_id}[/]")


def _menu_member_status(lib: Library) -> None:
    status = lib.member_status(_ask_int("Enter Member ID"))
    print_member_status(status, _titles(lib, (loan.book_id for loan in status.open_loans)))


def _menu_delete_book(lib: Library) -> None:
    book_id = _ask_int("Enter Book ID to delete")
    book = lib.find_book(book_id)
    if book is None:
        console.print(f"[yellow]Book with ID {book_id} not found.[/]")
        return
    if not Confirm.ask(f"Delete '{escape(book.title)}'?", default=False):
        console.print("[blue]Deletion cancelled.[/]")
        return
    if lib.remove_book(book_id):
        console.print("[green]Book deleted successfully.[/]")
    else:
        console.print("[red]Failed to delete book. It has active loans or unpaid fines.[/]")


def _render_menu(title: str, items) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(justify="right", style="bold cyan", width=4)
    table.add_column(justify="left", style="white")
    for key, label in items:
        table.add_row(f"[reverse]{key}[/]", label)
    console.print(Panel(table, title=title, border_style="cyan", box=box.HEAVY, padding=(1, 2)))


def _submenu(title: str, actions) -> None:
    items = [(key, label) for key, label, _ in actions] + [("0", "Back to Main Menu")]
    handlers = {key: handler for key, _, handler in actions}
    while True:
        _render_menu(title, items)
        choice = Prompt.ask("Enter your choice", choices=[key for key, _ in items], default="0")
        if choice == "0":
            return
        _run_action(handlers[choice])
        print()


USER_ACTIONS = [
    ("1", "Borrow Book", _menu_borrow),
    ("2", "Return Book", _menu_return),
    ("3", "Renew Book", _menu_renew),
    ("4", "Check Book Availability", _menu_search),
    ("5", "View Borrowed Books", _menu_borrowed),
    ("6", "Check My Fine Details", _menu_fines),
    ("7", "Pay Fines", _menu_pay),
]

LIBRARIAN_ACTIONS = [
    ("1", "Add New Book", _menu_add_book),
    ("2", "Add New Member", _menu_add_member),
    ("3", "Check Member Status", _menu_member_status),
    ("4", "View All Available Books", lambda lib: print_book_list(lib.available_books())),
    ("5", "View All Overdue Loans", lambda lib: print_overdue_report(lib.overdue_report())),
    ("6", "Delete Book", _menu_delete_book),
    ("7", "Statistics", lambda lib: print_stats_result(lib.get_statistics())),
]


def run_menu() -> None:
    """Interactive menu for the single operator at the desk."""
    set_output_mode("rich")
    while True:
        _render_menu(APP_NAME, [("1", "User Actions"), ("2", "Librarian Actions"), ("0", "Exit")])
        choice = Prompt.ask("Enter your choice", choices=["1", "2", "0"], default="1")
        if choice == "1":
            _submenu("User Menu", USER_ACTIONS)
        elif choice == "2":
            _submenu("Librarian Menu", LIBRARIAN_ACTIONS)
        else:
            console.print("[green]Exiting Library System. Goodbye![/]")
            LibraryManager.reset()
            break


if __name__ == "__main__":
    app()
