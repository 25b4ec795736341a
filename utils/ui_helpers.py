import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# İzin verilen değerler: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Any]) -> None:
    """Kitap listesini mevcut çıktı moduna göre yazdır.
    - plain: 'B001 - Title by Author [available/quantity]' satırları veya 'No books in library.'
    - json: kitap sözlüklerinden oluşan dizi
    - rich: Rich tablosu
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            style = "green" if b.is_available else "red"
            table.add_row(b.book_id, b.title, b.author, b.category,
                          f"[{style}]{b.available_copies}/{b.quantity}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.book_id} - {b.title} by {b.author} [{b.available_copies}/{b.quantity}]")


def print_entries(entries: List[Any], empty_message: str, title: str = "Ledger") -> None:
    """Defter kayıtlarını (aktif ödünçler veya geçmiş kayıtları) yazdır."""
    mode = get_output_mode()

    if not entries:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([e.to_dict() for e in entries], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, header_style="bold cyan")
        table.add_column("When", no_wrap=True)
        table.add_column("User", style="magenta")
        table.add_column("Book")
        table.add_column("Status")
        for e in entries:
            table.add_row(e.occurred_at, e.username, f"{e.book_id} {e.book_title}", e.status.value)
        _console.print(table)
    else:
        for e in entries:
            print(f"{e.occurred_at} {e.username} {e.status.value} {e.book_id} - {e.book_title}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Katalog istatistiklerini mevcut çıktı moduna göre yazdır."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key.replace('_', ' ').title()}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Total Books: {stats.get('total_books', 0)}")
        print(f"Total Copies: {stats.get('total_copies', 0)}")
        print(f"Available Copies: {stats.get('available_copies', 0)}")
        print(f"On Loan: {stats.get('on_loan', 0)}")
