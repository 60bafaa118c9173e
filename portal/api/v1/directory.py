from fastapi import APIRouter, Depends, Request

from portal.dependencies import require_admin
from portal.schemas.directory import (
    ConnectionTestResult,
    DirectoryConfigCreate,
    DirectoryConfigResponse,
    DirectoryConfigUpdate,
)
from portal.services.directory_config import DirectoryConfigService

router = APIRouter(dependencies=[Depends(require_admin)])


def _format_dt(dt) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def _to_response(config) -> DirectoryConfigResponse:
    return DirectoryConfigResponse(
        id=config.id,
        name=config.name,
        description=config.description,
        host=config.host,
        port=config.port,
        base_dn=config.base_dn,
        bind_dn=config.bind_dn,
        search_filter=config.search_filter,
        is_default=config.is_default,
        is_active=config.is_active,
        use_tls=config.use_tls,
        tls_cert_path=config.tls_cert_path,
        username_suffix=config.username_suffix,
        attribute_map=config.attribute_map or {},
        sync_schedule=config.sync_schedule,
        created_at=_format_dt(config.created_at),
        updated_at=_format_dt(config.updated_at),
    )


@router.get("/auth/ldap")
async def list_directory_configs() -> list[DirectoryConfigResponse]:
    service = DirectoryConfigService()
    return [_to_response(c) for c in await service.list_configurations()]


@router.get("/auth/ldap/{config_id}")
async def get_directory_config(config_id: str) -> DirectoryConfigResponse:
    service = DirectoryConfigService()
    return _to_response(await service.get_configuration(config_id))


@router.post("/auth/ldap", status_code=201)
async def create_directory_config(body: DirectoryConfigCreate, request: Request) -> DirectoryConfigResponse:
    service = DirectoryConfigService()
    config = await service.create_configuration(body.model_dump(), actor_id=request.state.user_id)
    return _to_response(config)


@router.put("/auth/ldap/{config_id}")
async def update_directory_config(
    config_id: str, body: DirectoryConfigUpdate, request: Request
) -> DirectoryConfigResponse:
    service = DirectoryConfigService()
    config = await service.update_configuration(
        config_id, body.model_dump(exclude_unset=True), actor_id=request.state.user_id
    )
    return _to_response(config)


@router.delete("/auth/ldap/{config_id}")
async def delete_directory_config(config_id: str, request: Request) -> dict:
    service = DirectoryConfigService()
    return {"success": await service.delete_configuration(config_id, actor_id=request.state.user_id)}


@router.post("/auth/ldap/{config_id}/test")
async def check_directory_config(config_id: str) -> ConnectionTestResult:
    service = DirectoryConfigService()
    return ConnectionTestResult(**await service.test_connection(config_id))
