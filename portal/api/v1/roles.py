from fastapi import APIRouter, Depends, Request

from portal.core.cache import PermissionCache
from portal.dependencies import get_permission_cache, require_admin, require_permission
from portal.schemas.roles import (
    PermissionCreate,
    PermissionResponse,
    RoleCreate,
    RoleMappingCreate,
    RoleMappingResponse,
    RolePermissionAssign,
    RoleResponse,
    RoleUpdate,
    UserRoleAssign,
)
from portal.services.permissions import PermissionService
from portal.services.roles import RoleService
from portal.services.users import UserService

router = APIRouter()


def _format_dt(dt) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def _role(role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        is_system=role.is_system,
        created_at=_format_dt(role.created_at),
    )


def _permission(p) -> PermissionResponse:
    return PermissionResponse(
        id=p.id,
        key=f"{p.resource}:{p.action}",
        resource=p.resource,
        action=p.action,
        scope=p.scope,
        description=p.description,
        is_system=p.is_system,
    )


def _mapping(m) -> RoleMappingResponse:
    return RoleMappingResponse(
        id=m.id,
        directory_configuration_id=m.directory_configuration_id,
        group_dn=m.group_dn,
        group_name=m.group_name,
        role_id=m.role_id,
        mapping_type=m.mapping_type,
        created_at=_format_dt(m.created_at),
    )


# ── Directory group mappings (registered before /roles/{role_id}) ─────────


@router.get("/roles/mappings", dependencies=[Depends(require_permission("roles:read"))])
async def list_role_mappings(directory_configuration_id: str | None = None) -> list[RoleMappingResponse]:
    service = RoleService()
    return [_mapping(m) for m in await service.list_mappings(directory_configuration_id)]


@router.post("/roles/mappings", status_code=201, dependencies=[Depends(require_admin)])
async def create_role_mapping(body: RoleMappingCreate, request: Request) -> RoleMappingResponse:
    service = RoleService()
    mapping = await service.create_mapping(
        group_dn=body.group_dn,
        role_id=body.role_id,
        group_name=body.group_name,
        directory_configuration_id=body.directory_configuration_id,
        mapping_type=body.mapping_type,
        actor_id=request.state.user_id,
    )
    return _mapping(mapping)


@router.delete("/roles/mappings/{mapping_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_role_mapping(mapping_id: str, request: Request) -> None:
    service = RoleService()
    await service.delete_mapping(mapping_id, actor_id=request.state.user_id)


# ── Roles ────────────────────────────────────────────────────────────────────


@router.get("/roles", dependencies=[Depends(require_permission("roles:read"))])
async def list_roles() -> list[RoleResponse]:
    service = RoleService()
    return [_role(r) for r in await service.list_roles()]


@router.get("/roles/{role_id}", dependencies=[Depends(require_permission("roles:read"))])
async def get_role(role_id: str) -> RoleResponse:
    service = RoleService()
    return _role(await service.get_role(role_id))


@router.post("/roles", status_code=201, dependencies=[Depends(require_admin)])
async def create_role(body: RoleCreate, request: Request) -> RoleResponse:
    service = RoleService()
    return _role(await service.create_role(body.name, body.description, actor_id=request.state.user_id))


@router.put("/roles/{role_id}", dependencies=[Depends(require_admin)])
async def update_role(role_id: str, body: RoleUpdate, request: Request) -> RoleResponse:
    service = RoleService()
    role = await service.update_role(role_id, body.model_dump(exclude_unset=True), actor_id=request.state.user_id)
    return _role(role)


@router.delete("/roles/{role_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_role(
    role_id: str, request: Request, cache: PermissionCache = Depends(get_permission_cache)
) -> None:
    service = RoleService(cache=cache)
    await service.delete_role(role_id, actor_id=request.state.user_id)


@router.get("/roles/{role_id}/permissions", dependencies=[Depends(require_permission("roles:read"))])
async def list_role_permissions(role_id: str) -> list[PermissionResponse]:
    await RoleService().get_role(role_id)
    service = PermissionService()
    return [_permission(p) for p in await service.get_permissions_by_role_id(role_id)]


@router.post("/roles/{role_id}/permissions", status_code=201, dependencies=[Depends(require_admin)])
async def assign_role_permission(
    role_id: str,
    body: RolePermissionAssign,
    request: Request,
    cache: PermissionCache = Depends(get_permission_cache),
) -> dict:
    service = PermissionService(cache=cache)
    await service.assign_permission_to_role(role_id, body.permission_id, actor_id=request.state.user_id)
    return {"success": True}


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}", status_code=204, dependencies=[Depends(require_admin)]
)
async def remove_role_permission(
    role_id: str,
    permission_id: str,
    request: Request,
    cache: PermissionCache = Depends(get_permission_cache),
) -> None:
    service = PermissionService(cache=cache)
    await service.remove_permission_from_role(role_id, permission_id, actor_id=request.state.user_id)


# ── Permissions ──────────────────────────────────────────────────────────────


@router.get("/permissions", dependencies=[Depends(require_permission("permissions:read"))])
async def list_permissions() -> list[PermissionResponse]:
    service = PermissionService()
    return [_permission(p) for p in await service.list_permissions()]


@router.post("/permissions", status_code=201, dependencies=[Depends(require_admin)])
async def create_permission(body: PermissionCreate, request: Request) -> PermissionResponse:
    service = PermissionService()
    permission = await service.create_permission(
        body.resource, body.action, body.scope, body.description, actor_id=request.state.user_id
    )
    return _permission(permission)


@router.delete("/permissions/{permission_id}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_permission(
    permission_id: str, request: Request, cache: PermissionCache = Depends(get_permission_cache)
) -> None:
    service = PermissionService(cache=cache)
    await service.delete_permission(permission_id, actor_id=request.state.user_id)


# ── User role assignments ────────────────────────────────────────────────────


@router.get("/users/{user_id}/roles", dependencies=[Depends(require_permission("users:read"))])
async def list_user_roles(user_id: str) -> list[RoleResponse]:
    await UserService().get_user(user_id)
    service = RoleService()
    return [_role(r) for r in await service.get_roles_by_user_id(user_id)]


@router.get("/users/{user_id}/permissions", dependencies=[Depends(require_permission("users:read"))])
async def list_user_permissions(user_id: str) -> list[str]:
    service = PermissionService()
    return await service.get_user_permissions(user_id)


@router.post("/users/{user_id}/roles", status_code=201, dependencies=[Depends(require_admin)])
async def assign_user_role(
    user_id: str,
    body: UserRoleAssign,
    request: Request,
    cache: PermissionCache = Depends(get_permission_cache),
) -> dict:
    service = RoleService(cache=cache)
    await service.assign_role_to_user(user_id, body.role_id, body.source, actor_id=request.state.user_id)
    return {"success": True}


@router.delete("/users/{user_id}/roles/{role_id}", status_code=204, dependencies=[Depends(require_admin)])
async def remove_user_role(
    user_id: str,
    role_id: str,
    request: Request,
    source: str | None = None,
    cache: PermissionCache = Depends(get_permission_cache),
) -> None:
    service = RoleService(cache=cache)
    await service.remove_role_from_user(user_id, role_id, source, actor_id=request.state.user_id)
