import re

import bcrypt
import structlog

logger = structlog.get_logger()

MAX_USERNAME_LENGTH = 100

_SQL_INJECTION_PATTERNS = [
    re.compile(r"(\s|^)(SELECT|INSERT|UPDATE|DELETE|DROP|ALTER|UNION|EXEC|EXECUTE)(\s|$)", re.IGNORECASE),
    re.compile(r"['\"];"),
    re.compile(r"--"),
    re.compile(r"/\*"),
    re.compile(r"\*/"),
    re.compile(r"xp_", re.IGNORECASE),
]


def hash_password(password: str) -> str:
    """bcrypt hash suitable for ADMIN_PASSWORD_HASH."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str | None) -> bool:
    """Constant-time bcrypt comparison. A missing or malformed hash never matches."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        logger.warning("password_hash_malformed")
        return False


def contains_sql_injection(value: str) -> bool:
    """Basic screen for SQL injection patterns. Not a substitute for parameter binding."""
    if not value:
        return False
    return any(pattern.search(value) for pattern in _SQL_INJECTION_PATTERNS)


def validate_login_credentials(username: str) -> list[str]:
    """Screen a login username. Returns a list of security warnings (empty = valid).

    Password strength is deliberately not checked at login.
    """
    warnings = []
    if contains_sql_injection(username):
        warnings.append("Username contains potential SQL injection patterns")
        logger.warning("login_sql_injection_attempt")
    if len(username) > MAX_USERNAME_LENGTH:
        warnings.append("Username exceeds maximum allowed length")
    return warnings
