from typing import Literal

from pydantic import BaseModel, Field


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str | None
    is_system: bool
    created_at: str


class PermissionCreate(BaseModel):
    resource: str = Field(min_length=1)
    action: str = Field(min_length=1)
    scope: str | None = None
    description: str | None = None


class PermissionResponse(BaseModel):
    id: str
    key: str  # "resource:action"
    resource: str
    action: str
    scope: str | None
    description: str | None
    is_system: bool


class RolePermissionAssign(BaseModel):
    permission_id: str


class UserRoleAssign(BaseModel):
    role_id: str
    source: Literal["manual", "directory-mapping"] = "manual"


class RoleMappingCreate(BaseModel):
    group_dn: str = Field(min_length=1)
    role_id: str
    group_name: str | None = None
    directory_configuration_id: str | None = None
    mapping_type: Literal["group", "ou"] = "group"


class RoleMappingResponse(BaseModel):
    id: str
    directory_configuration_id: str
    group_dn: str
    group_name: str
    role_id: str
    mapping_type: str
    created_at: str
