import warnings
import secrets

# ── passlib reads bcrypt.__about__, which bcrypt >= 4.0 no longer ships ──────
import bcrypt as _bcrypt
if not hasattr(_bcrypt, '__about__'):
    import types as _types
    _about = _types.ModuleType('bcrypt.__about__')
    _about.__version__ = getattr(_bcrypt, '__version__', '4.0.0')
    _bcrypt.__about__ = _about

warnings.filterwarnings("ignore", ".*error reading bcrypt version.*")

from passlib.context import CryptContext

from exceptions import ValidationError

CODE_LENGTH = 6
_CODE_MIN = 10 ** (CODE_LENGTH - 1)
_CODE_SPAN = 9 * _CODE_MIN


class PasswordHasher:
    """Salted bcrypt hashing for the access gate. Unrelated to the shard key."""

    def __init__(self, rounds: int = 10):
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        """Never raises; a malformed digest is a mismatch."""
        try:
            return self._context.verify(password, digest)
        except (ValueError, TypeError):
            return False


def validate_password(password: str, min_length: int) -> None:
    if not password:
        raise ValidationError("Password is required")
    if len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters long")
    if len(password.encode("utf-8")) > 72:
        # bcrypt only looks at the first 72 bytes
        raise ValidationError("Password must be at most 72 bytes")


def generate_code() -> str:
    """Six digits, uniform over 100000..999999."""
    return str(_CODE_MIN + secrets.randbelow(_CODE_SPAN))


def is_valid_code(code: str) -> bool:
    return isinstance(code, str) and len(code) == CODE_LENGTH and code.isascii() and code.isdigit()
