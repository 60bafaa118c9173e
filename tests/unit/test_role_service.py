"""Unit tests for roles, assignments and group mappings."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from portal.core.cache import permission_key
from portal.core.database import (
    ROLE_SOURCE_DIRECTORY,
    WILDCARD_CONFIGURATION_ID,
    AuditLog,
    DirectoryRoleMapping,
    User,
    UserRole,
)
from portal.core.exceptions import ConflictError, NotFoundError, ValidationFailedError
from portal.services.roles import RoleService


@pytest_asyncio.fixture
async def user(db_session):
    user = User(id="u-1", username="jdoe", display_name="John Doe")
    db_session.add(user)
    await db_session.commit()
    return user


class TestRoles:

    @pytest.mark.asyncio
    async def test_create_and_get(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("auditor", "Reads the audit log", actor_id="admin")

        assert (await service.get_role(role.id)).name == "auditor"
        assert (await service.get_role_by_name("auditor")).id == role.id
        assert [r.name for r in await service.list_roles()] == ["auditor"]

    @pytest.mark.asyncio
    async def test_creation_audited(self, session_factory):
        role = await RoleService(session_factory).create_role("auditor", actor_id="admin")
        async with session_factory() as session:
            entry = (await session.execute(select(AuditLog).where(AuditLog.entity_id == role.id))).scalar_one()
        assert entry.action == "create"
        assert entry.user_id == "admin"
        assert entry.new_values["name"] == "auditor"

    @pytest.mark.asyncio
    async def test_duplicate_name(self, session_factory):
        service = RoleService(session_factory)
        await service.create_role("auditor")
        with pytest.raises(ConflictError):
            await service.create_role("auditor")

    @pytest.mark.asyncio
    async def test_update(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("auditor")
        updated = await service.update_role(role.id, {"description": "Audit readers"})
        assert updated.description == "Audit readers"

    @pytest.mark.asyncio
    async def test_get_missing(self, session_factory):
        with pytest.raises(NotFoundError):
            await RoleService(session_factory).get_role("missing")

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_deleted(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("admin", is_system=True)
        with pytest.raises(ValidationFailedError):
            await service.delete_role(role.id)

    @pytest.mark.asyncio
    async def test_delete_cascades_and_invalidates(self, session_factory, cache, user):
        service = RoleService(session_factory, cache)
        role = await service.create_role("temp")
        await service.assign_role_to_user(user.id, role.id)
        await service.create_mapping("CN=Temp,OU=Groups,DC=x,DC=com", role.id)
        await cache.set(permission_key(user.id, "roles:read"), True)

        await service.delete_role(role.id)

        assert await cache.get(permission_key(user.id, "roles:read")) is None
        assert await service.get_roles_by_user_id(user.id) == []
        assert await service.list_mappings() == []


class TestAssignments:

    @pytest.mark.asyncio
    async def test_assign_and_remove(self, session_factory, user):
        service = RoleService(session_factory)
        role = await service.create_role("auditor")

        await service.assign_role_to_user(user.id, role.id)
        assert [r.name for r in await service.get_roles_by_user_id(user.id)] == ["auditor"]

        assert await service.remove_role_from_user(user.id, role.id) == 1
        assert await service.get_roles_by_user_id(user.id) == []

    @pytest.mark.asyncio
    async def test_assign_twice_conflicts(self, session_factory, user):
        service = RoleService(session_factory)
        role = await service.create_role("auditor")
        await service.assign_role_to_user(user.id, role.id)
        with pytest.raises(ConflictError):
            await service.assign_role_to_user(user.id, role.id)

    @pytest.mark.asyncio
    async def test_same_role_from_two_sources(self, session_factory, user):
        service = RoleService(session_factory)
        role = await service.create_role("auditor")
        await service.assign_role_to_user(user.id, role.id)
        await service.assign_role_to_user(user.id, role.id, source=ROLE_SOURCE_DIRECTORY)

        assert [r.name for r in await service.get_roles_by_user_id(user.id)] == ["auditor"]

        await service.remove_role_from_user(user.id, role.id, source=ROLE_SOURCE_DIRECTORY)
        async with session_factory() as session:
            sources = (await session.execute(select(UserRole.source))).scalars().all()
        assert sources == ["manual"]

    @pytest.mark.asyncio
    async def test_assign_unknown_user(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("auditor")
        with pytest.raises(NotFoundError, match="User"):
            await service.assign_role_to_user("nobody", role.id)

    @pytest.mark.asyncio
    async def test_assign_unknown_role(self, session_factory, user):
        with pytest.raises(NotFoundError, match="Role"):
            await RoleService(session_factory).assign_role_to_user(user.id, "missing")

    @pytest.mark.asyncio
    async def test_remove_unassigned(self, session_factory, user):
        with pytest.raises(NotFoundError):
            await RoleService(session_factory).remove_role_from_user(user.id, "missing")

    @pytest.mark.asyncio
    async def test_assignment_invalidates_cache(self, session_factory, cache, user):
        service = RoleService(session_factory, cache)
        role = await service.create_role("auditor")
        await cache.set(permission_key(user.id, "roles:read"), False)

        await service.assign_role_to_user(user.id, role.id)
        assert await cache.get(permission_key(user.id, "roles:read")) is None


class TestMappings:

    @pytest.mark.asyncio
    async def test_defaults(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("it")
        mapping = await service.create_mapping("CN=IT Staff,OU=Groups,DC=x,DC=com", role.id)

        assert mapping.group_name == "IT Staff"
        assert mapping.directory_configuration_id == WILDCARD_CONFIGURATION_ID
        assert mapping.mapping_type == "group"

    @pytest.mark.asyncio
    async def test_scoped_to_configuration(self, session_factory, directory_config):
        service = RoleService(session_factory)
        role = await service.create_role("it")
        await service.create_mapping("CN=IT,DC=x", role.id, directory_configuration_id=directory_config.id)
        await service.create_mapping("CN=Ops,DC=x", role.id)

        scoped = await service.list_mappings(directory_config.id)
        assert [m.group_dn for m in scoped] == ["CN=IT,DC=x"]
        assert len(await service.list_mappings()) == 2

    @pytest.mark.asyncio
    async def test_unknown_role(self, session_factory):
        with pytest.raises(NotFoundError):
            await RoleService(session_factory).create_mapping("CN=IT,DC=x", "missing")

    @pytest.mark.asyncio
    async def test_delete(self, session_factory):
        service = RoleService(session_factory)
        role = await service.create_role("it")
        mapping = await service.create_mapping("CN=IT,DC=x", role.id)

        await service.delete_mapping(mapping.id)
        assert await service.list_mappings() == []
        with pytest.raises(NotFoundError):
            await service.delete_mapping(mapping.id)

        async with session_factory() as session:
            remaining = (await session.execute(select(DirectoryRoleMapping))).scalars().all()
        assert remaining == []
