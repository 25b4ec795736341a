import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Tuple

from dotenv import load_dotenv

from config import settings
from errors import StorageUnavailable

# .env'nin, içe aktarma sırasından bağımsız olarak varsayılan yol çözülmeden önce yüklendiğinden emin olun.
load_dotenv()

logger = logging.getLogger(__name__)

# Varsayılan veritabanı dosyası. Öncelik LIBRARY_DB_FILE; Library(db_file=...) çalışma anında geçersiz kılabilir.
DATABASE_FILE = settings.database_file or os.environ.get("LIBRARY_DB_FILE") or "library.db"

DEFAULT_CATEGORY = "Uncategorized"


def utcnow_iso() -> str:
    """Şu anki zamanı açık UTC ofsetli bir ISO-8601 dizesi olarak döndür."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def get_db_connection() -> sqlite3.Connection:
    """SQLite veritabanına bir bağlantı kurar.

    Bağlantılar otomatik onay modunda çalışır; yazmalar ``transaction()`` üzerinden yapılır.
    ``timeout``, başka bir yazarın kilidi için ne kadar bekleneceğini sınırlar.
    """
    try:
        conn = sqlite3.connect(
            DATABASE_FILE,
            timeout=settings.db_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        # WAL modunda okuyucular yazarı beklemez
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn
    except sqlite3.OperationalError as e:
        logger.error(f"Could not open database {DATABASE_FILE}: {e}")
        raise StorageUnavailable() from e


@contextmanager
def connection() -> Iterator[sqlite3.Connection]:
    """Salt okunur kapsam: tek bağlantı, çıkışta kapatılır."""
    conn = get_db_connection()
    try:
        yield conn
    except sqlite3.OperationalError as e:
        logger.exception("Database read failed")
        raise StorageUnavailable() from e
    finally:
        conn.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """İlk ifadeden itibaren veritabanı yazma kilidini tutan yazma kapsamı.

    ``BEGIN IMMEDIATE`` her kontrol-ve-değiştir dizisini diğer yazarlara karşı
    sıraya koyar. İçerideki her şey birlikte onaylanır ya da hiçbiri onaylanmaz.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.OperationalError as e:
        _rollback(conn)
        logger.warning(f"Write transaction aborted: {e}")
        raise StorageUnavailable() from e
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")


def create_tables() -> None:
    """Veritabanında mevcut değilse gerekli tabloları oluşturur."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS books (
                book_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT '{DEFAULT_CATEGORY}',
                quantity INTEGER NOT NULL CHECK (quantity >= 0),
                available_copies INTEGER NOT NULL
                    CHECK (available_copies >= 0 AND available_copies <= quantity),
                description TEXT NOT NULL DEFAULT '',
                cover_image TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
        """)

        # Aktif ödünçler ve denetim kayıtları tek tabloda; is_history_only ile ayrılır
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loan_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL,
                book_id TEXT NOT NULL DEFAULT '',
                book_title TEXT NOT NULL,
                status TEXT NOT NULL,
                occurred_at TEXT NOT NULL,
                returned_at TEXT,
                is_history_only INTEGER NOT NULL DEFAULT 0
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                username TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
                blocked INTEGER NOT NULL DEFAULT 0,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                phone TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                username TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)

        # (username, book_id) başına en fazla bir açık ödünç
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loan_events_open
            ON loan_events(username, book_id)
            WHERE is_history_only = 0 AND returned_at IS NULL
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loan_events_user ON loan_events(username, is_history_only)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loan_events_book ON loan_events(book_id, is_history_only)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loan_events_time ON loan_events(is_history_only, occurred_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_username ON sessions(username)")
    except sqlite3.OperationalError as e:
        raise StorageUnavailable() from e
    finally:
        conn.close()


def is_empty() -> bool:
    """Henüz ne kitap ne kullanıcı kaydedilmemişse True."""
    with connection() as conn:
        books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        users = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
    return books == 0 and users == 0


def load_seed_file(path: str) -> Dict[str, Any]:
    """``{"books": [...], "users": [...]}`` biçimindeki bir tohum dosyasını oku."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Seed file {path} must contain a JSON object")
    return {"books": data.get("books", []) or [], "users": data.get("users", []) or []}


def seed_from_json(path: str, library, access) -> Tuple[int, int]:
    """Kitapları ve kullanıcıları katalog ve erişim katmanları üzerinden bir tohum dosyasından yükle.

    Zaten var olan kayıtlar atlanır. (books_added, users_added) döndürür.
    """
    data = load_seed_file(path)
    books_added = library.import_books(data["books"])
    users_added = access.import_users(data["users"])
    logger.info(f"Seeded {books_added} books and {users_added} users from {path}")
    return books_added, users_added


def initialize_database() -> None:
    """Veritabanını başlat, gerekirse tabloları oluştur."""
    create_tables()
