import re
from typing import Any, Optional

from errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4


class TextValidator:
    """Basic text checks shared by the catalog and account forms."""

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not str(text).strip()

    @staticmethod
    def require(value: Optional[str], field_name: str) -> str:
        if TextValidator.is_blank(value):
            raise ValidationError(f"{field_name} is required")
        return str(value).strip()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags; the catalog never stores markup
        return re.sub(r"<[^>]*>", "", text).strip()


class BookValidator:

    @staticmethod
    def parse_quantity(raw: Any) -> int:
        """Coerce a quantity from form/JSON input; must be a whole number >= 0."""
        if isinstance(raw, bool):
            raise ValidationError("quantity must be a whole number")
        try:
            value = int(str(raw).strip())
        except (TypeError, ValueError):
            raise ValidationError("quantity must be a whole number")
        if value < 0:
            raise ValidationError("quantity cannot be negative")
        return value


class UserValidator:
    """Registration and password rules."""

    @staticmethod
    def validate_username(username: Optional[str]) -> str:
        name = TextValidator.require(username, "username")
        if len(name) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        return name.lower()

    @staticmethod
    def validate_password(password: Optional[str], field_name: str = "Password") -> str:
        if not password:
            raise ValidationError(f"{field_name} is required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"{field_name} must be at least {MIN_PASSWORD_LENGTH} characters")
        return password

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        value = TextValidator.require(email, "email")
        if not EMAIL_RE.match(value):
            raise ValidationError("Invalid email")
        return value.lower()
