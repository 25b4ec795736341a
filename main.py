import logging
import os
import subprocess
import sys
from typing import Optional

import typer

import database
from access import ROLE_ADMIN, AccessControl
from config import settings
from errors import LibraryError
from ledger import LoanLedger
from library import Library
from loan_service import LoanService
from utils.ui_helpers import print_entries, print_list_result, print_stats_result, set_output_mode

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


class ServiceManager:
    """CLI komutlarının paylaştığı, ihtiyaç anında oluşturulan servisler."""

    _instance: Optional[LoanService] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> LoanService:
        current_db = database.DATABASE_FILE
        # Veritabanı dosyası değiştiyse yeniden oluştur (ör. test başına veritabanı)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            library = Library()
            cls._instance = LoanService(library, LoanLedger(), AccessControl())
            cls._db_file_snapshot = current_db
        return cls._instance


# --- Typer CLI uygulaması ---
app = typer.Typer(help="Library catalog CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """CLI için genel seçenekler (ör. çıktı modu)."""
    if output:
        set_output_mode(output)


@app.command("list")
def cli_list(category: Optional[str] = typer.Option(None, "--category", "-c", help="Only this category")):
    """Tüm kitapları ID sırasına göre listele."""
    service = ServiceManager.get_instance()
    print_list_result(service.library.list_books(category=category))


@app.command("find")
def cli_find(book_id: str):
    """Bir kitabı ve stok durumunu göster."""
    book = ServiceManager.get_instance().library.find_book(book_id)
    if not book:
        print(f"Book {book_id} not found.")
        return
    print("Book Found")
    print(f"Title: {book.title}")
    print(f"Author: {book.author}")
    print(f"Category: {book.category}")
    print(f"Available: {book.available_copies}/{book.quantity}")


@app.command("loans")
def cli_loans(username: str):
    """Bir kullanıcının açık ödünçlerini göster."""
    loans = ServiceManager.get_instance().active_loans(username)
    print_entries(loans, f"No active loans for {username}.", title=f"Loans of {username}")


@app.command("history")
def cli_history(user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user's history")):
    """Denetim geçmişini en yeniden eskiye göster."""
    service = ServiceManager.get_instance()
    entries = service.user_history(user) if user else service.full_history()
    print_entries(entries, "No history recorded.", title="History")


@app.command("stats")
def cli_stats():
    """Katalog istatistiklerini göster."""
    print_stats_result(ServiceManager.get_instance().library.get_statistics())


@app.command("block")
def cli_block(username: str):
    """Bir kullanıcı hesabını engelle."""
    _set_blocked(username, True)


@app.command("unblock")
def cli_unblock(username: str):
    """Bir kullanıcı hesabının engelini kaldır."""
    _set_blocked(username, False)


def _set_blocked(username: str, blocked: bool) -> None:
    try:
        user = ServiceManager.get_instance().access.set_blocked(username, blocked)
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)
    print(f"User {user.username} has been {'blocked' if blocked else 'unblocked'}.")


@app.command("create-admin")
def cli_create_admin(
    username: str,
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Bir yönetici hesabı oluştur."""
    access = ServiceManager.get_instance().access
    try:
        user = access.register(username, password, password, "Library", "Administrator", email, role=ROLE_ADMIN)
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)
    print(f"Administrator {user.username} created.")


@app.command("seed")
def cli_seed(file_path: str):
    """Bir JSON tohum dosyasından kitap ve kullanıcı yükle."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    service = ServiceManager.get_instance()
    try:
        books, users = database.seed_from_json(file_path, service.library, service.access)
    except ValueError as e:
        print(f"Invalid seed file: {e}")
        raise typer.Exit(code=1)
    print(f"Seeded {books} books and {users} users.")


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Uvicorn kullanarak HTTP API'yi başlat."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args)


if __name__ == "__main__":
    app()
