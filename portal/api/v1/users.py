from fastapi import APIRouter, Depends, Request

from portal.core.cache import PermissionCache
from portal.dependencies import current_user_id, get_permission_cache, require_admin, require_permission
from portal.schemas.users import PreferencesResponse, PreferencesUpdate, UserCreate, UserResponse, UserUpdate
from portal.services.profile import ProfileService
from portal.services.users import UserService

router = APIRouter()


def _format_dt(dt) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def _user(user) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        display_name=user.display_name,
        email=user.email,
        is_active=user.is_active,
        last_login_at=_format_dt(user.last_login_at),
        directory_configuration_id=user.directory_configuration_id,
        created_at=_format_dt(user.created_at),
        updated_at=_format_dt(user.updated_at),
    )


def _preferences(p) -> PreferencesResponse:
    return PreferencesResponse(
        id=p.id,
        user_id=p.user_id,
        theme=p.theme,
        language=p.language,
        dashboard_layout=p.dashboard_layout or {},
        notifications=p.notifications or {},
        module_preferences=p.module_preferences or {},
        updated_at=_format_dt(p.updated_at),
    )


# ── Users ────────────────────────────────────────────────────────────────────


@router.get("/users", dependencies=[Depends(require_permission("users:read"))])
async def list_users(include_inactive: bool = True) -> list[UserResponse]:
    service = UserService()
    return [_user(u) for u in await service.list_users(include_inactive)]


@router.get("/users/{user_id}", dependencies=[Depends(require_permission("users:read"))])
async def get_user(user_id: str) -> UserResponse:
    service = UserService()
    return _user(await service.get_user(user_id))


@router.post("/users", status_code=201, dependencies=[Depends(require_admin)])
async def create_user(body: UserCreate, request: Request) -> UserResponse:
    service = UserService()
    user = await service.create_user(
        body.username, body.display_name, body.email, body.is_active, actor_id=request.state.user_id
    )
    return _user(user)


@router.put("/users/{user_id}", dependencies=[Depends(require_admin)])
async def update_user(user_id: str, body: UserUpdate, request: Request) -> UserResponse:
    service = UserService()
    user = await service.update_user(user_id, body.model_dump(exclude_unset=True), actor_id=request.state.user_id)
    return _user(user)


@router.delete("/users/{user_id}", dependencies=[Depends(require_admin)])
async def delete_user(
    user_id: str, request: Request, cache: PermissionCache = Depends(get_permission_cache)
) -> dict:
    service = UserService(cache=cache)
    await service.delete_user(user_id, actor_id=request.state.user_id)
    return {"success": True}


# ── Current user's preferences ───────────────────────────────────────────────


@router.get("/profile/preferences")
async def get_preferences(request: Request) -> PreferencesResponse:
    service = ProfileService()
    return _preferences(await service.get_preferences(current_user_id(request)))


@router.put("/profile/preferences")
async def update_preferences(body: PreferencesUpdate, request: Request) -> PreferencesResponse:
    service = ProfileService()
    preferences = await service.update_preferences(current_user_id(request), body.model_dump(exclude_unset=True))
    return _preferences(preferences)
