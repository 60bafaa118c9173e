from fastapi import Request

from portal.core.cache import PermissionCache
from portal.core.exceptions import AuthenticationError, AuthorizationError
from portal.services.config_store import ConfigStore
from portal.services.directory_client import DirectoryClient
from portal.services.permissions import PermissionService

ADMIN_ROLE = "admin"


def get_permission_cache(request: Request) -> PermissionCache:
    """Return the permission cache stored on app state."""
    return request.app.state.permission_cache


def get_directory_client(request: Request) -> DirectoryClient:
    return request.app.state.directory_client


def get_config_store(request: Request) -> ConfigStore:
    """Return the shared config store, creating it on first use."""
    store = getattr(request.app.state, "config_store", None)
    if store is None:
        store = ConfigStore()
        request.app.state.config_store = store
    return store


def current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise AuthenticationError("Authentication required.")
    return user_id


def current_roles(request: Request) -> list[str]:
    return list(getattr(request.state, "user_roles", None) or [])


def require_roles(*names: str):
    """Dependency factory: the token must carry at least one of `names`."""

    def _check(request: Request) -> None:
        current_user_id(request)
        if not set(names) & set(current_roles(request)):
            raise AuthorizationError(f"This endpoint requires one of the roles: {', '.join(names)}.")

    return _check


require_admin = require_roles(ADMIN_ROLE)


def require_permission(key: str):
    """Dependency factory: the user must hold `resource:action` through a role. Admins always pass."""

    async def _check(request: Request) -> None:
        user_id = current_user_id(request)
        if ADMIN_ROLE in current_roles(request):
            return
        service = PermissionService(cache=get_permission_cache(request))
        if not await service.user_has_permission(user_id, key):
            raise AuthorizationError(f"Missing permission '{key}'.")

    return _check
