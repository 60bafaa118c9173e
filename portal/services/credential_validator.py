import structlog

from portal.config import settings
from portal.core.exceptions import PortalError
from portal.core.security import verify_password

logger = structlog.get_logger()

ADMIN_USER_ID = "admin"


def admin_profile(username: str) -> dict:
    return {
        "id": ADMIN_USER_ID,
        "username": username,
        "display_name": "Administrator",
        "email": "admin@example.com",
        "roles": ["admin"],
    }


class CredentialValidator:
    """Check a username/password against the built-in admin or the directory.

    `directory_login` is an async callable `(username, password, config_id)`
    returning a user profile dict.
    """

    def __init__(self, directory_login, admin_username: str | None = None, admin_password_hash: str | None = None):
        self._directory_login = directory_login
        self._admin_username = admin_username
        self._admin_password_hash = admin_password_hash

    @property
    def admin_username(self) -> str | None:
        return self._admin_username or settings.admin_username

    @property
    def admin_password_hash(self) -> str | None:
        return self._admin_password_hash or settings.admin_password_hash

    async def validate(
        self, username: str, password: str, directory_configuration_id: str | None = None
    ) -> dict | None:
        """Return the user profile for valid credentials, None otherwise."""
        if self.admin_username and username == self.admin_username:
            if verify_password(password, self.admin_password_hash):
                return admin_profile(username)
            logger.info("admin_login_rejected")
            return None

        try:
            return await self._directory_login(username, password, directory_configuration_id)
        except PortalError as exc:
            logger.info("credential_validation_failed", username=username, error=exc.message)
            return None
