import os
import json
from typing import List, Any, Dict

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from config import settings

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode
    # anything else keeps the current mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def money(amount: float) -> str:
    return f"{settings.currency} {amount:.2f}"


def print_book_list(books: List[Any], empty_message: str = "No books in library.") -> None:
    """Print books in the current output mode.
    - plain: 'ID - Title by Author (available/total)' lines
    - json: array of book dicts
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("ISBN", style="dim")
        table.add_column("Year", justify="right")
        table.add_column("Available", justify="right", style="green")
        for b in books:
            table.add_row(str(b.book_id), b.title, b.author, b.isbn,
                          str(b.publication_year or ""), f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.book_id} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies} available)")


def print_loan_list(loans: List[Any], titles: Dict[int, str], empty_message: str = "No loans found.") -> None:
    """Print loans; ``titles`` maps book_id to title for display."""
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        payload = []
        for loan in loans:
            item = loan.to_dict()
            item["title"] = titles.get(loan.book_id, "Unknown")
            payload.append(item)
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Due", style="white")
        table.add_column("Returned", style="white")
        table.add_column("Renewed", justify="center")
        table.add_column("Fine", justify="right", style="yellow")
        for loan in loans:
            table.add_row(
                str(loan.loan_id),
                titles.get(loan.book_id, "Unknown"),
                loan.due_date.isoformat(),
                loan.return_date.isoformat() if loan.return_date else "-",
                "Yes" if loan.renewed else "No",
                money(loan.fine_amount) if loan.fine_amount else "-",
            )
        _console.print(table)
    else:
        for loan in loans:
            print(f"Loan {loan.loan_id}: {titles.get(loan.book_id, 'Unknown')}, "
                  f"Due Date: {loan.due_date.isoformat()}, Renewed: {'Yes' if loan.renewed else 'No'}")


def print_member_list(members: List[Any]) -> None:
    mode = get_output_mode()

    if not members:
        print("No members registered.")
        return

    if mode == "json":
        print(json.dumps([m.to_dict() for m in members], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="👥 Members", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name", style="white")
        table.add_column("Email", style="white")
        table.add_column("Joined", style="dim")
        table.add_column("Fine Due", justify="right", style="yellow")
        for m in members:
            table.add_row(str(m.member_id), m.full_name, m.email, m.join_date.isoformat(),
                          money(m.total_fine_due))
        _console.print(table)
    else:
        for m in members:
            print(f"{m.member_id} - {m.full_name} <{m.email}> Fine Due: {money(m.total_fine_due)}")


def print_member_status(status: Any, titles: Dict[int, str]) -> None:
    mode = get_output_mode()
    member = status.member

    if mode == "json":
        payload = {
            "member": member.to_dict(),
            "balance": status.balance,
            "max_loans": status.max_loans,
            "open_loans": [loan.to_dict() for loan in status.open_loans],
        }
        print(json.dumps(payload, ensure_ascii=False))
        return

    lines = [
        f"Member: {member.full_name} (ID: {member.member_id})",
        f"Email: {member.email}",
        f"Phone: {member.phone_number or 'N/A'}",
        f"Joined: {member.join_date.isoformat()}",
        f"Total Outstanding Fine: {money(status.balance)}",
        f"Books Borrowed ({len(status.open_loans)}/{status.max_loans})",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="👤 Member Status", border_style="blue"))
    else:
        for line in lines:
            print(line)
    print_loan_list(status.open_loans, titles, empty_message="No books currently borrowed.")


def print_fine_details(details: Any, titles: Dict[int, str]) -> None:
    mode = get_output_mode()

    if mode == "json":
        payload = {
            "member_id": details.member.member_id,
            "balance": details.balance,
            "unpaid_loans": [loan.to_dict() for loan in details.unpaid_loans],
        }
        print(json.dumps(payload, ensure_ascii=False))
        return

    print(f"Total Outstanding Fine: {money(details.balance)}")
    if not details.unpaid_loans:
        print("No individual loan fines currently outstanding.")
        return
    for loan in details.unpaid_loans:
        print(f"  - Loan {loan.loan_id}: {titles.get(loan.book_id, 'Unknown')}, "
              f"Due Date: {loan.due_date.isoformat()}, Fine: {money(loan.fine_amount)}")


def print_overdue_report(entries: List[Any]) -> None:
    mode = get_output_mode()

    if not entries:
        print("No overdue loans found.")
        return

    if mode == "json":
        payload = [
            {
                "loan": e.loan.to_dict(),
                "title": e.book.title if e.book else None,
                "member": e.member.full_name if e.member else None,
                "days_overdue": e.days_overdue,
                "fine": e.fine,
            }
            for e in entries
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue Loans", show_lines=True, header_style="bold red")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Member", style="white")
        table.add_column("Due", style="white")
        table.add_column("Days", justify="right")
        table.add_column("Fine", justify="right", style="yellow")
        for e in entries:
            table.add_row(
                str(e.loan.loan_id),
                e.book.title if e.book else "Unknown",
                e.member.full_name if e.member else "Unknown",
                e.loan.due_date.isoformat(),
                str(e.days_overdue),
                money(e.fine),
            )
        _console.print(table)
    else:
        for e in entries:
            print(f"Loan {e.loan.loan_id}: {e.book.title if e.book else 'Unknown'}, "
                  f"Member: {e.member.full_name if e.member else 'Unknown'}, "
                  f"Due Date: {e.loan.due_date.isoformat()}, Fine: {money(e.fine)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Titles:[/] {stats['total_books']}\n"
            f"[bold]Copies:[/] {stats['available_copies']}/{stats['total_copies']} on the shelf\n"
            f"[bold]Members:[/] {stats['total_members']}\n"
            f"[bold]Active Loans:[/] {stats['active_loans']} ({stats['overdue_loans']} overdue)\n"
            f"[bold]Outstanding Fines:[/] {money(stats['outstanding_fines'])}"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats['total_books']}")
        print(f"Available Copies: {stats['available_copies']}/{stats['total_copies']}")
        print(f"Members: {stats['total_members']}")
        print(f"Active Loans: {stats['active_loans']}")
        print(f"Overdue Loans: {stats['overdue_loans']}")
        print(f"Outstanding Fines: {money(stats['outstanding_fines'])}")
