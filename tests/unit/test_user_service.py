"""Unit tests for direct user administration."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from portal.core.cache import permission_key
from portal.core.database import AuditLog, Role, User, UserDirectoryDetail, UserPreferences, UserRole, utcnow
from portal.core.exceptions import ConflictError, NotFoundError
from portal.services.users import UserService


@pytest_asyncio.fixture
async def linked_user(db_session, directory_config):
    """A directory user with a role, a directory detail and preferences."""
    user = User(id="u-1", username="jdoe", display_name="John Doe", email="jdoe@x.com")
    role = Role(name="it")
    db_session.add_all([user, role])
    await db_session.flush()
    db_session.add_all(
        [
            UserRole(user_id=user.id, role_id=role.id),
            UserDirectoryDetail(
                user_id=user.id,
                directory_configuration_id=directory_config.id,
                distinguished_name="CN=John Doe,OU=Users,DC=x,DC=com",
                last_sync_at=utcnow(),
            ),
            UserPreferences(user_id=user.id),
        ]
    )
    await db_session.commit()
    return user


class TestUserService:

    @pytest.mark.asyncio
    async def test_create_and_list(self, session_factory):
        service = UserService(session_factory)
        created = await service.create_user("bsmith", "Bob Smith", "bob@x.com", actor_id="admin")
        await service.create_user("adams", "Ann Adams", is_active=False)

        assert (await service.get_user(created.id)).email == "bob@x.com"
        assert (await service.get_user_by_username("bsmith")).id == created.id
        assert [u.username for u in await service.list_users()] == ["adams", "bsmith"]
        assert [u.username for u in await service.list_users(include_inactive=False)] == ["bsmith"]

    @pytest.mark.asyncio
    async def test_creation_audited(self, session_factory):
        user = await UserService(session_factory).create_user("bsmith", "Bob Smith", actor_id="admin")
        async with session_factory() as session:
            entry = (await session.execute(select(AuditLog).where(AuditLog.entity_id == user.id))).scalar_one()
        assert entry.action == "create"
        assert entry.entity_type == "user"
        assert entry.user_id == "admin"
        assert entry.new_values["username"] == "bsmith"

    @pytest.mark.asyncio
    async def test_duplicate_username(self, session_factory):
        service = UserService(session_factory)
        await service.create_user("bsmith", "Bob Smith")
        with pytest.raises(ConflictError):
            await service.create_user("bsmith", "Other Bob")

    @pytest.mark.asyncio
    async def test_update(self, session_factory):
        service = UserService(session_factory)
        user = await service.create_user("bsmith", "Bob Smith", "bob@x.com")

        updated = await service.update_user(
            user.id, {"display_name": "Robert Smith", "is_active": False, "username": "ignored"}, actor_id="admin"
        )
        assert updated.display_name == "Robert Smith"
        assert updated.is_active is False
        assert updated.username == "bsmith"

        async with session_factory() as session:
            entry = (
                await session.execute(select(AuditLog).where(AuditLog.action == "update", AuditLog.entity_id == user.id))
            ).scalar_one()
        assert entry.old_values["display_name"] == "Bob Smith"
        assert entry.new_values["display_name"] == "Robert Smith"

    @pytest.mark.asyncio
    async def test_update_keeps_required_fields(self, session_factory):
        service = UserService(session_factory)
        user = await service.create_user("bsmith", "Bob Smith", "bob@x.com")
        updated = await service.update_user(user.id, {"display_name": None, "email": None})
        assert updated.display_name == "Bob Smith"
        assert updated.email is None

    @pytest.mark.asyncio
    async def test_update_duplicate_email(self, session_factory):
        service = UserService(session_factory)
        await service.create_user("bsmith", "Bob Smith", "bob@x.com")
        other = await service.create_user("adams", "Ann Adams", "ann@x.com")
        with pytest.raises(ConflictError):
            await service.update_user(other.id, {"email": "bob@x.com"})

    @pytest.mark.asyncio
    async def test_missing_user(self, session_factory):
        service = UserService(session_factory)
        with pytest.raises(NotFoundError, match="User with ID nope not found"):
            await service.get_user("nope")
        with pytest.raises(NotFoundError):
            await service.update_user("nope", {"display_name": "x"})
        with pytest.raises(NotFoundError):
            await service.delete_user("nope")

    @pytest.mark.asyncio
    async def test_delete_removes_dependents(self, session_factory, linked_user, cache):
        await cache.set(permission_key(linked_user.id, "roles:read"), True)

        await UserService(session_factory, cache=cache).delete_user(linked_user.id, actor_id="admin")

        async with session_factory() as session:
            assert await session.get(User, linked_user.id) is None
            for model in (UserRole, UserDirectoryDetail, UserPreferences):
                rows = (await session.execute(select(model).where(model.user_id == linked_user.id))).all()
                assert rows == []
            entry = (await session.execute(select(AuditLog).where(AuditLog.action == "delete"))).scalar_one()
        assert entry.old_values["username"] == "jdoe"
        assert await cache.get(permission_key(linked_user.id, "roles:read")) is None
