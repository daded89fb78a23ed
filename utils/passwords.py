import re

from werkzeug.security import check_password_hash, generate_password_hash

# The method prefix of a stored hash doubles as its format version.
PASSWORD_METHOD = "scrypt:16384:8:1"
SALT_LENGTH = 16
DEFAULT_MIN_LENGTH = 10

_LETTER = re.compile(r"[A-Za-z]")
_DIGIT = re.compile(r"[0-9]")

_dummy_hash = None


def hash_password(password: str) -> str:
    return generate_password_hash(
        password, method=PASSWORD_METHOD, salt_length=SALT_LENGTH
    )


def verify_password(password: str, stored_hash) -> bool:
    """Check a password against a stored hash.

    A missing hash is checked against a throwaway hash so unknown accounts take as
    long to reject as wrong passwords.
    """
    global _dummy_hash
    if not stored_hash:
        if _dummy_hash is None:
            _dummy_hash = hash_password("not-a-real-password-0")
        check_password_hash(_dummy_hash, password or "")
        return False
    try:
        return check_password_hash(stored_hash, password or "")
    except ValueError:
        # Unknown hash method
        return False


def needs_rehash(stored_hash) -> bool:
    if not stored_hash:
        return False
    method = stored_hash.split("$", 1)[0]
    return method != PASSWORD_METHOD


def password_policy_error(password, min_length=DEFAULT_MIN_LENGTH):
    """Return a message describing why the password is too weak, or None."""
    if not isinstance(password, str) or len(password) < min_length:
        return f"Password must be at least {min_length} characters."
    if not _LETTER.search(password) or not _DIGIT.search(password):
        return "Password must contain at least one letter and one number."
    return None
