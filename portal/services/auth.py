import structlog
from sqlalchemy import select

import portal.core.database as db_module
from portal.core.database import Role, UserRole
from portal.core.exceptions import AuthenticationError, NotFoundError
from portal.core.security import validate_login_credentials
from portal.services.attribute_mapper import map_entry
from portal.services.credential_validator import CredentialValidator
from portal.services.directory_client import DirectoryClient, resolve_configuration
from portal.services.token_issuer import TokenIssuer
from portal.services.user_reconciler import UserReconciler

logger = structlog.get_logger()


class AuthService:
    """Login pipeline: credentials → directory → reconciliation → tokens."""

    def __init__(
        self,
        session_factory=None,
        directory_client: DirectoryClient | None = None,
        token_issuer: TokenIssuer | None = None,
        reconciler: UserReconciler | None = None,
        credential_validator: CredentialValidator | None = None,
    ):
        self._session_factory = session_factory or db_module.async_session
        self._directory = directory_client or DirectoryClient()
        self._tokens = token_issuer or TokenIssuer()
        self._reconciler = reconciler or UserReconciler(self._session_factory)
        self._validator = credential_validator or CredentialValidator(self.authenticate_directory_user)

    @property
    def token_issuer(self) -> TokenIssuer:
        return self._tokens

    async def _role_names(self, user_id: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Role.name)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            return sorted(set(result.scalars().all()))

    async def authenticate_directory_user(
        self, username: str, password: str, directory_configuration_id: str | None = None
    ) -> dict:
        """Bind against the directory and reconcile the local user. Returns the user profile."""
        try:
            params, config = await resolve_configuration(directory_configuration_id, self._session_factory)
        except (NotFoundError, AuthenticationError) as exc:
            # Missing and inactive configurations look the same to the caller.
            logger.warning("ldap_config_unresolved", config_id=directory_configuration_id, error=exc.message)
            raise AuthenticationError("Invalid LDAP configuration") from exc

        entry = await self._directory.authenticate(params, username, password)
        canonical = map_entry(entry, config)
        if not canonical.username:
            canonical.username = username
            canonical.display_name = canonical.display_name or username

        try:
            user = await self._reconciler.reconcile(canonical, config.id)
        except Exception as exc:
            logger.error("user_reconcile_failed", username=username, error=str(exc))
            raise AuthenticationError("User registration failed") from exc

        return {
            "id": user.id,
            "username": user.username,
            "display_name": user.display_name,
            "email": user.email,
            "roles": await self._role_names(user.id),
        }

    def _screen(self, username: str) -> None:
        warnings = validate_login_credentials(username)
        if warnings:
            logger.warning("login_rejected_by_validation", warnings=warnings)
            raise AuthenticationError("Invalid credentials", details={"warnings": warnings})

    async def login(self, username: str, password: str) -> dict:
        """Admin credential or default directory login."""
        self._screen(username)
        profile = await self._validator.validate(username, password)
        if profile is None:
            raise AuthenticationError("Invalid credentials")
        logger.info("user_login", user_id=profile["id"], method="local")
        return self.build_auth_response(profile)

    async def login_directory(
        self, username: str, password: str, directory_configuration_id: str | None = None
    ) -> dict:
        """Directory-only login against a named or the default configuration."""
        self._screen(username)
        profile = await self.authenticate_directory_user(username, password, directory_configuration_id)
        logger.info("user_login", user_id=profile["id"], method="ldap")
        return self.build_auth_response(profile)

    def build_auth_response(self, profile: dict) -> dict:
        return {
            "success": True,
            "token": self._tokens.issue(profile),
            "user_id": profile["id"],
            "username": profile["username"],
            "display_name": profile.get("display_name"),
            "email": profile.get("email"),
            "roles": profile.get("roles", []),
        }

    def refresh(self, refresh_token: str) -> dict:
        return {"success": True, **self._tokens.refresh(refresh_token)}
