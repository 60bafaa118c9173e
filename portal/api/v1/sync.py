from fastapi import APIRouter, Depends

from portal.core.cache import PermissionCache
from portal.dependencies import get_directory_client, get_permission_cache, require_admin
from portal.schemas.sync import SyncConfigCreate, SyncConfigResponse, SyncConfigUpdate, SyncResult
from portal.services.directory_client import DirectoryClient
from portal.services.directory_sync import DirectorySyncService
from portal.services.user_reconciler import UserReconciler

router = APIRouter(dependencies=[Depends(require_admin)])


def _format_dt(dt) -> str | None:
    if dt is None:
        return None
    return dt.isoformat() + "Z"


def _to_response(config) -> SyncConfigResponse:
    return SyncConfigResponse(
        id=config.id,
        name=config.name,
        description=config.description,
        frequency=config.frequency,
        cron_expression=config.cron_expression,
        scope=config.scope,
        conflict_policy=config.conflict_policy,
        field_exceptions=config.field_exceptions,
        is_active=config.is_active,
        batch_size=config.batch_size,
        last_sync_at=_format_dt(config.last_sync_at),
        next_sync_at=_format_dt(config.next_sync_at),
        sync_count=config.sync_count or 0,
        last_sync_stats=config.last_sync_stats,
        directory_configuration_id=config.directory_configuration_id,
    )


@router.get("/ldap-sync/configs")
async def list_sync_configs() -> list[SyncConfigResponse]:
    service = DirectorySyncService()
    return [_to_response(c) for c in await service.list_configs()]


@router.get("/ldap-sync/configs/{sync_config_id}")
async def get_sync_config(sync_config_id: str) -> SyncConfigResponse:
    service = DirectorySyncService()
    return _to_response(await service.get_config(sync_config_id))


@router.post("/ldap-sync/configs", status_code=201)
async def create_sync_config(body: SyncConfigCreate) -> SyncConfigResponse:
    service = DirectorySyncService()
    return _to_response(await service.create_config(body.model_dump()))


@router.put("/ldap-sync/configs/{sync_config_id}")
async def update_sync_config(sync_config_id: str, body: SyncConfigUpdate) -> SyncConfigResponse:
    service = DirectorySyncService()
    return _to_response(await service.update_config(sync_config_id, body.model_dump(exclude_unset=True)))


@router.delete("/ldap-sync/configs/{sync_config_id}", status_code=204)
async def delete_sync_config(sync_config_id: str) -> None:
    service = DirectorySyncService()
    await service.delete_config(sync_config_id)


@router.post("/ldap-sync/configs/{sync_config_id}/run")
async def run_sync(
    sync_config_id: str,
    directory_client: DirectoryClient = Depends(get_directory_client),
    cache: PermissionCache = Depends(get_permission_cache),
) -> SyncResult:
    """Run a sync immediately and return its result."""
    service = DirectorySyncService(directory_client=directory_client, reconciler=UserReconciler(cache=cache))
    return SyncResult(**await service.trigger_now(sync_config_id))
