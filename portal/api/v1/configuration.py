from fastapi import APIRouter, Depends

from portal.core.exceptions import NotFoundError
from portal.dependencies import get_config_store, require_admin, require_permission
from portal.schemas.config import CategoryResponse, ConfigEntry, ConfigValueResponse, ConfigValueSet
from portal.services.config_store import ConfigStore

router = APIRouter()


@router.get("/config", dependencies=[Depends(require_permission("config:read"))])
async def list_configurations(store: ConfigStore = Depends(get_config_store)) -> list[ConfigEntry]:
    return [ConfigEntry(**entry) for entry in await store.get_all_configurations()]


@router.get("/config/categories", dependencies=[Depends(require_permission("config:read"))])
async def list_categories(store: ConfigStore = Depends(get_config_store)) -> list[CategoryResponse]:
    return [
        CategoryResponse(id=c.id, name=c.name, description=c.description, display_order=c.display_order)
        for c in await store.list_categories()
    ]


@router.get("/config/categories/{name}", dependencies=[Depends(require_permission("config:read"))])
async def list_category_configurations(
    name: str, store: ConfigStore = Depends(get_config_store)
) -> list[ConfigEntry]:
    return [ConfigEntry(**entry) for entry in await store.get_configurations_by_category(name)]


@router.get("/config/values/{key}", dependencies=[Depends(require_permission("config:read"))])
async def get_value(key: str, store: ConfigStore = Depends(get_config_store)) -> ConfigValueResponse:
    return ConfigValueResponse(key=key, value=await store.get_stored(key))


@router.put("/config/values/{key}", dependencies=[Depends(require_admin)])
async def set_value(
    key: str, body: ConfigValueSet, store: ConfigStore = Depends(get_config_store)
) -> ConfigValueResponse:
    await store.set(key, body.value, body.environment)
    return ConfigValueResponse(key=key, value=body.value, environment=body.environment)


@router.delete("/config/values/{key}", status_code=204, dependencies=[Depends(require_admin)])
async def delete_value(
    key: str, environment: str | None = None, store: ConfigStore = Depends(get_config_store)
) -> None:
    if not await store.delete(key, environment):
        raise NotFoundError(f"No active value for configuration key '{key}'")


@router.post("/config/refresh", dependencies=[Depends(require_admin)])
async def refresh_configuration(store: ConfigStore = Depends(get_config_store)) -> dict:
    return {"success": True, "items": await store.refresh_cache()}
