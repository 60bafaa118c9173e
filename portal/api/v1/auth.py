import structlog
from fastapi import APIRouter, Depends, Request

from portal.core.cache import PermissionCache
from portal.dependencies import get_directory_client, get_permission_cache
from portal.schemas.auth import (
    AuthResponse,
    LdapLoginRequest,
    LoginRequest,
    ProfileResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from portal.services.auth import AuthService
from portal.services.directory_client import DirectoryClient
from portal.services.user_reconciler import UserReconciler

logger = structlog.get_logger()
router = APIRouter()


def _auth_service(directory_client: DirectoryClient, cache: PermissionCache) -> AuthService:
    return AuthService(directory_client=directory_client, reconciler=UserReconciler(cache=cache))


@router.post("/auth/login")
async def login(
    body: LoginRequest,
    directory_client: DirectoryClient = Depends(get_directory_client),
    cache: PermissionCache = Depends(get_permission_cache),
) -> AuthResponse:
    """Authenticate the built-in admin or a user of the default directory."""
    service = _auth_service(directory_client, cache)
    return AuthResponse.model_validate(await service.login(body.username, body.password))


@router.post("/auth/login/ldap")
async def login_ldap(
    body: LdapLoginRequest,
    directory_client: DirectoryClient = Depends(get_directory_client),
    cache: PermissionCache = Depends(get_permission_cache),
) -> AuthResponse:
    """Authenticate against a named (or the default) directory configuration."""
    service = _auth_service(directory_client, cache)
    result = await service.login_directory(body.username, body.password, body.directory_configuration_id)
    return AuthResponse.model_validate(result)


@router.post("/auth/refresh", response_model_exclude_none=True)
async def refresh_token(body: TokenRefreshRequest) -> TokenRefreshResponse:
    service = AuthService()
    return TokenRefreshResponse.model_validate(service.refresh(body.refresh_token))


@router.get("/auth/profile")
async def get_profile(request: Request) -> ProfileResponse:
    """Claims of the current access token."""
    return ProfileResponse.model_validate(request.state.claims)
