from typing import Any

from pydantic import BaseModel


class CategoryResponse(BaseModel):
    id: str
    name: str
    description: str | None
    display_order: int


class ConfigEntry(BaseModel):
    id: str
    key: str
    category: str | None
    data_type: str
    value: Any = None
    default_value: str | None = None
    is_editable: bool = True
    description: str | None = None


class ConfigValueSet(BaseModel):
    value: Any
    environment: str | None = None


class ConfigValueResponse(BaseModel):
    key: str
    value: Any = None
    environment: str | None = None
