import logging
import os
import secrets
from pathlib import Path
from typing import Optional, Tuple

from fastapi import Depends, FastAPI, File, Form, Query, Request, Security, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from werkzeug.utils import secure_filename

import database
from access import SYSTEM_USER, AccessControl, User
from book import Book
from config import settings
from database import connection
from errors import AccessDenied, DuplicateId, LibraryError, NotFound, ValidationError
from ledger import LoanLedger
from library import Library
from loan_service import LoanService
from utils.validators import BookValidator, TextValidator

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


library = Library(db_file=os.environ.get("LIBRARY_DB_FILE"))
ledger = LoanLedger()
access = AccessControl()
loans = LoanService(library, ledger, access)

if settings.seed_file and os.path.exists(settings.seed_file) and database.is_empty():
    database.seed_from_json(settings.seed_file, library, access)
access.ensure_admin(settings.admin_username, settings.admin_password, settings.admin_email)

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Hatalar ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    """Tipli alan hatalarını durum koduna ve istemciye gösterilebilir bir mesaja çevir."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Hatalı veya eksik istek girdisi, diğer doğrulama hataları gibi 400 döner."""
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        detail = errors[0].get("msg", "invalid value")
        message = f"{location}: {detail}" if location else detail
    else:
        message = None
    logger.warning(f"Rejected request to {request.url.path}: {message}")
    error = ValidationError(message)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# --- Güvenlik ---
bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    api_key: Optional[str] = Security(api_key_header),
) -> User:
    """Çağıranı oturum belirtecinden veya servis API anahtarından çöz."""
    if api_key is not None:
        if api_key == settings.api_key:
            return SYSTEM_USER
        raise AccessDenied("Could not validate credentials")
    return access.user_for_token(credentials.credentials if credentials else None)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise AccessDenied("Administrator role required")
    return user


def _ensure_self_or_admin(user: User, username: str) -> str:
    name = (username or "").strip().lower()
    if not user.is_admin and user.username != name:
        raise AccessDenied("You can only act on your own account")
    return name


def _actor(user: User, claimed: Optional[str]) -> str:
    # servis anahtarı, çağıran ön yüzün adlandırdığı kullanıcı adına işlem yapar
    if user is SYSTEM_USER and not TextValidator.is_blank(claimed):
        return claimed.strip().lower()
    return user.username


# --- İstek modelleri ---
class LoanRequest(BaseModel):
    username: str = ""


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    quantity: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    username: Optional[str] = None


class LoginModel(BaseModel):
    username: str = ""
    password: str = ""


class RegisterModel(BaseModel):
    username: str = ""
    password: str = ""
    confirmPassword: str = ""
    firstName: str = ""
    lastName: str = ""
    email: str = ""
    phone: str = ""


class ChangePasswordModel(BaseModel):
    username: str = ""
    currentPassword: str = ""
    newPassword: str = ""
    confirmPassword: str = ""


class UpdateUserModel(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class BlockModel(BaseModel):
    block: bool = True


# --- Yardımcılar ---
def _read_cover(book_id: str, upload: UploadFile) -> Tuple[str, bytes]:
    """Yüklenen kapağı denetle ve kayıt dosya adını seç; henüz hiçbir şey yazılmaz."""
    ext = Path(upload.filename or "").suffix.lower()
    if ext not in settings.allowed_image_extensions:
        raise ValidationError(f"Cover image must be one of {', '.join(settings.allowed_image_extensions)}")
    data = upload.file.read(settings.max_upload_size + 1)
    if len(data) > settings.max_upload_size:
        raise ValidationError("Cover image is too large")
    # her yükleme için benzersiz; farklı ID'ler aynı ada temizlenebilir
    filename = f"{secure_filename(book_id) or 'cover'}-{secrets.token_hex(8)}{ext}"
    return filename, data


def _write_cover(filename: str, data: bytes) -> None:
    target_dir = Path(settings.upload_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / filename).write_bytes(data)


# --- Sağlık Kontrolü ---
@app.get("/health")
def health():
    db_ok = True
    try:
        with connection() as conn:
            conn.execute("SELECT 1")
    except LibraryError:
        db_ok = False
    return {"status": "healthy" if db_ok else "degraded", "db": db_ok, "version": settings.app_version}


# --- Kitaplar ---
@app.get("/books")
def get_books(q: Optional[str] = Query(None, description="Search title, author or ISBN"),
              category: Optional[str] = Query(None)):
    """bookId sırasına göre tüm kitaplar (B2, B10'dan önce)."""
    if q:
        books = library.search_books(q)
        if category:
            books = [b for b in books if b.category.lower() == category.lower()]
    else:
        books = library.list_books(category=category)
    return [b.to_dict() for b in books]


@app.get("/books/history")
def get_full_history(user: User = Depends(require_admin)):
    """Tüm yalnızca-geçmiş defter kayıtları, en yeniden eskiye."""
    return [entry.to_dict() for entry in loans.full_history()]


@app.get("/books/user/{username}/loans")
def get_user_loans(username: str, user: User = Depends(get_current_user)):
    name = _ensure_self_or_admin(user, username)
    return [loan.to_dict() for loan in loans.active_loans(name)]


@app.get("/books/user/{username}/history")
def get_user_history(username: str, user: User = Depends(get_current_user)):
    name = _ensure_self_or_admin(user, username)
    return [entry.to_dict() for entry in loans.user_history(name)]


@app.get("/books/{book_id}")
def get_book(book_id: str):
    return library.get_book(book_id).to_dict()


@app.post("/books", status_code=201)
def add_book(
    bookId: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    isbn: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    coverImage: Optional[UploadFile] = File(None),
    user: User = Depends(require_admin),
):
    book_id = TextValidator.require(bookId, "bookId")
    TextValidator.require(title, "title")
    TextValidator.require(author, "author")
    if quantity is None or not str(quantity).strip():
        raise ValidationError("quantity is required")
    copies = BookValidator.parse_quantity(quantity)
    if library.find_book(book_id) is not None:
        raise DuplicateId(f"Book with ID {book_id} already exists")

    cover = None
    if coverImage is not None and coverImage.filename:
        cover = _read_cover(book_id, coverImage)

    book = Book(
        book_id=book_id,
        title=title,
        author=author,
        isbn=isbn or "",
        quantity=copies,
        category=category,
        description=TextValidator.sanitize_text(description),
        cover_image=f"/covers/{cover[0]}" if cover else "",
    )
    created = loans.create_book(book, actor=_actor(user, username))
    if cover:
        _write_cover(*cover)
    return created.to_dict()


@app.put("/books/{book_id}")
def update_book(book_id: str, update: UpdateBookModel, user: User = Depends(require_admin)):
    patch = update.model_dump(exclude={"username"}, exclude_none=True)
    if not patch:
        raise ValidationError("Nothing to update")
    book = loans.edit_book(book_id, patch, actor=_actor(user, update.username))
    return book.to_dict()


@app.delete("/books/{book_id}")
def delete_book(book_id: str, username: Optional[str] = Query(None), user: User = Depends(require_admin)):
    removed = loans.delete_book(book_id, actor=_actor(user, username))
    return {"message": "Book deleted successfully", "bookId": removed.book_id}


@app.post("/books/{book_id}/loan")
def loan_book(book_id: str, payload: LoanRequest, user: User = Depends(get_current_user)):
    name = _ensure_self_or_admin(user, payload.username or user.username)
    book = loans.borrow(name, book_id)
    return {"message": "Book loaned successfully", "book": book.to_dict()}


@app.post("/books/{book_id}/return")
def return_book(book_id: str, payload: LoanRequest, user: User = Depends(get_current_user)):
    name = _ensure_self_or_admin(user, payload.username or user.username)
    book = loans.return_book(name, book_id)
    return {"message": "Book returned successfully", "book": book.to_dict()}


@app.get("/categories")
def get_categories():
    return library.list_categories()


@app.get("/covers/{filename}")
def get_cover(filename: str):
    path = Path(settings.upload_dir) / secure_filename(filename)
    if not filename or not path.is_file():
        raise NotFound("Cover not found")
    return FileResponse(path)


# --- Hesaplar ---
@app.post("/login")
def login(payload: LoginModel):
    token, user = access.login(payload.username, payload.password)
    return {"message": "Login successful", "token": token, "user": user.to_dict()}


@app.post("/logout")
def logout(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)):
    if credentials is None or not access.logout(credentials.credentials):
        raise NotFound("Session not found")
    return {"message": "Logged out"}


@app.post("/register", status_code=201)
def register(payload: RegisterModel):
    user = access.register(
        username=payload.username,
        password=payload.password,
        confirm_password=payload.confirmPassword,
        first_name=payload.firstName,
        last_name=payload.lastName,
        email=payload.email,
        phone=payload.phone,
    )
    return {"message": "Registration successful", "user": user.to_dict()}


@app.post("/change-password")
def change_password(payload: ChangePasswordModel):
    access.change_password(payload.username, payload.currentPassword, payload.newPassword, payload.confirmPassword)
    return {"message": "Password updated"}


@app.get("/users")
def get_users(user: User = Depends(require_admin)):
    return [u.to_dict() for u in access.list_users()]


@app.put("/users/{username}")
def update_user(username: str, update: UpdateUserModel, user: User = Depends(get_current_user)):
    name = _ensure_self_or_admin(user, username)
    updated = access.update_profile(name, update.model_dump(exclude_none=True), allow_role=user.is_admin)
    return {"message": "User updated", "user": updated.to_dict()}


@app.post("/users/{username}/block")
def block_user(username: str, payload: BlockModel, user: User = Depends(require_admin)):
    updated = access.set_blocked(username, payload.block)
    return {"message": f"User {'blocked' if payload.block else 'unblocked'}", "user": updated.to_dict()}
