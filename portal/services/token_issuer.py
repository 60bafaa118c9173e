import datetime
import re

import jwt
import structlog

from portal.config import settings
from portal.core.exceptions import AuthenticationError

logger = structlog.get_logger()

DEFAULT_EXPIRATION_SECONDS = 3600

_EXPIRATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expiration(value: str | None) -> int:
    """Convert `<int>[smhd]` to seconds. Anything else yields 3600."""
    match = _EXPIRATION_PATTERN.match(value or "")
    if not match:
        return DEFAULT_EXPIRATION_SECONDS
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


class TokenIssuer:
    """Create and validate access/refresh JWT pairs.

    Unset constructor arguments are read from settings on every call, so a
    changed environment takes effect at the next issuance.
    """

    def __init__(
        self,
        secret: str | None = None,
        refresh_secret: str | None = None,
        algorithm: str | None = None,
        expiration: str | None = None,
        refresh_expiration: str | None = None,
        rotate_refresh: bool | None = None,
    ):
        self._secret = secret
        self._refresh_secret = refresh_secret
        self._algorithm = algorithm
        self._expiration = expiration
        self._refresh_expiration = refresh_expiration
        self._rotate_refresh = rotate_refresh

    @property
    def secret(self) -> str:
        return self._secret or settings.jwt_secret

    @property
    def refresh_secret(self) -> str:
        return self._refresh_secret or settings.jwt_refresh_secret

    @property
    def algorithm(self) -> str:
        return self._algorithm or settings.jwt_algorithm

    @property
    def expires_in(self) -> int:
        return parse_expiration(self._expiration or settings.jwt_expiration)

    @property
    def refresh_expires_in(self) -> int:
        return parse_expiration(self._refresh_expiration or settings.jwt_refresh_expiration)

    @property
    def rotate_refresh(self) -> bool:
        if self._rotate_refresh is not None:
            return self._rotate_refresh
        return settings.jwt_refresh_rotation

    @staticmethod
    def _claims(user: dict) -> dict:
        return {
            "sub": user["id"],
            "username": user.get("username"),
            "email": user.get("email"),
            "roles": list(user.get("roles") or []),
        }

    def _encode(self, claims: dict, token_type: str, secret: str, lifetime: int) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload = {
            **claims,
            "type": token_type,
            "iat": now,
            "exp": now + datetime.timedelta(seconds=lifetime),
        }
        return jwt.encode(payload, secret, algorithm=self.algorithm)

    def create_access_token(self, claims: dict) -> str:
        return self._encode(claims, "access", self.secret, self.expires_in)

    def create_refresh_token(self, claims: dict) -> str:
        return self._encode(claims, "refresh", self.refresh_secret, self.refresh_expires_in)

    def issue(self, user: dict) -> dict:
        """Issue an access/refresh pair for a user profile ({id, username, email, roles})."""
        claims = self._claims(user)
        return {
            "access_token": self.create_access_token(claims),
            "refresh_token": self.create_refresh_token(claims),
            "token_type": "Bearer",
            "expires_in": self.expires_in,
        }

    def refresh(self, refresh_token: str) -> dict:
        """Exchange a refresh token for a new access token.

        A new refresh token is included only when rotation is enabled.
        """
        try:
            payload = jwt.decode(refresh_token, self.refresh_secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as exc:
            logger.debug("refresh_token_invalid", error=str(exc))
            raise AuthenticationError("Invalid or expired refresh token") from exc

        if payload.get("type") != "refresh":
            logger.warning("refresh_token_wrong_type", token_type=payload.get("type"), sub=payload.get("sub"))
            raise AuthenticationError("Invalid or expired refresh token")

        claims = {
            "sub": payload.get("sub"),
            "username": payload.get("username"),
            "email": payload.get("email"),
            "roles": payload.get("roles") or [],
        }
        result = {
            "access_token": self.create_access_token(claims),
            "token_type": "Bearer",
            "expires_in": self.expires_in,
        }
        if self.rotate_refresh:
            result["refresh_token"] = self.create_refresh_token(claims)
        return result

    def decode_access_token(self, token: str) -> dict | None:
        """Decode and validate an access token. Returns claims or None if invalid/expired."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.debug("jwt_expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug("jwt_invalid", error=str(e))
            return None

        if payload.get("type") != "access":
            logger.debug("jwt_wrong_type", token_type=payload.get("type"))
            return None
        return payload
