from fastapi import APIRouter

from portal.api.v1.audit import router as audit_router
from portal.api.v1.auth import router as auth_router
from portal.api.v1.configuration import router as configuration_router
from portal.api.v1.directory import router as directory_router
from portal.api.v1.health import router as health_router
from portal.api.v1.roles import router as roles_router
from portal.api.v1.sync import router as sync_router
from portal.api.v1.users import router as users_router

v1_router = APIRouter()

v1_router.include_router(health_router, tags=["Health"])
v1_router.include_router(auth_router, tags=["Auth"])
v1_router.include_router(directory_router, tags=["Directory"])
v1_router.include_router(users_router, tags=["Users"])
v1_router.include_router(roles_router, tags=["Roles"])
v1_router.include_router(configuration_router, tags=["Configuration"])
v1_router.include_router(sync_router, tags=["Directory Sync"])
v1_router.include_router(audit_router, tags=["Audit"])
