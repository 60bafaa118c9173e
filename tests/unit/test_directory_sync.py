"""Unit tests for scheduled directory synchronization."""

import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError
from sqlalchemy import select

from portal.core.database import User, utcnow
from portal.core.exceptions import NotFoundError
from portal.services.directory_sync import DirectorySyncService, SyncScheduler, calculate_next_sync
from portal.services.user_reconciler import UserReconciler


def _person(username, email=None, display_name=None):
    entry = {
        "dn": f"CN={username},OU=Users,DC=x,DC=com",
        "sAMAccountName": [username],
        "mail": [email or f"{username}@x.com"],
        "displayName": [display_name or username.title()],
        "memberOf": [],
    }
    return entry


def _service(session_factory, entries=None, error=None):
    directory = AsyncMock()
    if error is not None:
        directory.search_entries.side_effect = error
    else:
        directory.search_entries.return_value = entries or []
    return DirectorySyncService(
        session_factory=session_factory,
        directory_client=directory,
        reconciler=UserReconciler(session_factory),
    )


async def _users(session_factory) -> dict[str, User]:
    async with session_factory() as session:
        return {u.username: u for u in (await session.execute(select(User))).scalars().all()}


class TestCalculateNextSync:
    # 2024-03-13 is a Wednesday.
    NOW = datetime.datetime(2024, 3, 13, 15, 30, 12)

    def test_hourly(self):
        assert calculate_next_sync("hourly", self.NOW) == datetime.datetime(2024, 3, 13, 16, 30, 12)

    def test_daily(self):
        assert calculate_next_sync("daily", self.NOW) == datetime.datetime(2024, 3, 14, 2, 0)

    def test_weekly_goes_to_next_sunday(self):
        assert calculate_next_sync("weekly", self.NOW) == datetime.datetime(2024, 3, 17, 2, 0)

    def test_weekly_from_sunday_skips_a_week(self):
        sunday = datetime.datetime(2024, 3, 17, 10, 0)
        assert calculate_next_sync("weekly", sunday) == datetime.datetime(2024, 3, 24, 2, 0)

    def test_monthly(self):
        assert calculate_next_sync("monthly", self.NOW) == datetime.datetime(2024, 4, 1, 2, 0)

    def test_monthly_december_rolls_year(self):
        december = datetime.datetime(2024, 12, 15, 8, 0)
        assert calculate_next_sync("monthly", december) == datetime.datetime(2025, 1, 1, 2, 0)

    def test_custom_and_unknown_default_to_a_day(self):
        assert calculate_next_sync("custom", self.NOW) == datetime.datetime(2024, 3, 14, 15, 30, 12)
        assert calculate_next_sync("fortnightly", self.NOW) == datetime.datetime(2024, 3, 14, 15, 30, 12)


class TestSyncConfigs:

    @pytest.mark.asyncio
    async def test_create_schedules_next_run(self, session_factory, directory_config):
        service = _service(session_factory)
        config = await service.create_config(
            {"name": "nightly", "frequency": "hourly", "directory_configuration_id": directory_config.id}
        )
        assert config.next_sync_at is not None
        assert config.next_sync_at > utcnow()

    @pytest.mark.asyncio
    async def test_frequency_change_reschedules(self, session_factory, directory_config):
        service = _service(session_factory)
        config = await service.create_config(
            {"name": "nightly", "frequency": "hourly", "directory_configuration_id": directory_config.id}
        )
        updated = await service.update_config(config.id, {"frequency": "monthly"})
        assert updated.next_sync_at.day == 1
        assert updated.next_sync_at.hour == 2

    @pytest.mark.asyncio
    async def test_missing_config(self, session_factory):
        service = _service(session_factory)
        with pytest.raises(NotFoundError):
            await service.get_config("missing")
        with pytest.raises(NotFoundError):
            await service.delete_config("missing")

    @pytest.mark.asyncio
    async def test_due_configs(self, session_factory, directory_config):
        service = _service(session_factory)
        active = await service.create_config({"name": "a", "directory_configuration_id": directory_config.id})
        await service.create_config(
            {"name": "b", "is_active": False, "directory_configuration_id": directory_config.id}
        )

        assert await service.due_configs(datetime.datetime(2000, 1, 1)) == []
        due = await service.due_configs(datetime.datetime(2100, 1, 1))
        assert [c.id for c in due] == [active.id]


class TestExecuteSync:

    @pytest.mark.asyncio
    async def test_creates_users_and_skips_unnamed(self, session_factory, directory_config, user_role):
        entries = [_person("jdoe"), _person("asmith"), {"dn": "CN=Printer,OU=Devices,DC=x,DC=com"}]
        service = _service(session_factory, entries)
        config = await service.create_config({"name": "all", "directory_configuration_id": directory_config.id})

        result = await service.execute_sync(config.id)

        assert result["success"] is True
        assert result["users_processed"] == 3
        assert result["users_created"] == 2
        assert result["users_updated"] == 0
        assert result["users_skipped"] == 1
        assert result["errors"] == []
        assert set(await _users(session_factory)) == {"jdoe", "asmith"}

        stored = await service.get_config(config.id)
        assert stored.sync_count == 1
        assert stored.last_sync_at is not None
        assert stored.last_sync_stats["users_created"] == 2

    @pytest.mark.asyncio
    async def test_second_run_updates(self, session_factory, directory_config, user_role):
        service = _service(session_factory, [_person("jdoe")])
        config = await service.create_config(
            {"name": "all", "batch_size": 1, "directory_configuration_id": directory_config.id}
        )
        await service.execute_sync(config.id)
        result = await service.execute_sync(config.id)

        assert result["users_created"] == 0
        assert result["users_updated"] == 1
        assert (await service.get_config(config.id)).sync_count == 2

    @pytest.mark.asyncio
    async def test_local_wins_skips_existing(self, session_factory, directory_config, user_role):
        first = _service(session_factory, [_person("jdoe")])
        seed = await first.create_config({"name": "seed", "directory_configuration_id": directory_config.id})
        await first.execute_sync(seed.id)

        service = _service(session_factory, [_person("jdoe", email="changed@x.com"), _person("new")])
        config = await service.create_config(
            {"name": "local", "conflict_policy": "local_wins", "directory_configuration_id": directory_config.id}
        )
        result = await service.execute_sync(config.id)

        assert result["users_skipped"] == 1
        assert result["users_created"] == 1
        assert (await _users(session_factory))["jdoe"].email == "jdoe@x.com"

    @pytest.mark.asyncio
    async def test_selective_keeps_excepted_fields(self, session_factory, directory_config, user_role):
        first = _service(session_factory, [_person("jdoe")])
        seed = await first.create_config({"name": "seed", "directory_configuration_id": directory_config.id})
        await first.execute_sync(seed.id)

        service = _service(session_factory, [_person("jdoe", email="changed@x.com", display_name="Johnny")])
        config = await service.create_config(
            {
                "name": "selective",
                "conflict_policy": "selective",
                "field_exceptions": ["email"],
                "directory_configuration_id": directory_config.id,
            }
        )
        result = await service.execute_sync(config.id)

        assert result["users_updated"] == 1
        user = (await _users(session_factory))["jdoe"]
        assert user.email == "jdoe@x.com"
        assert user.display_name == "Johnny"

    @pytest.mark.asyncio
    async def test_groups_scope_ignores_unknown_users(self, session_factory, directory_config, user_role):
        service = _service(session_factory, [_person("stranger")])
        config = await service.create_config(
            {"name": "groups", "scope": "groups", "directory_configuration_id": directory_config.id}
        )
        result = await service.execute_sync(config.id)

        assert result["users_skipped"] == 1
        assert await _users(session_factory) == {}

    @pytest.mark.asyncio
    async def test_entry_failure_recorded_and_run_continues(self, session_factory, directory_config, user_role):
        service = _service(session_factory, [_person("broken"), _person("fine")])
        reconciler = UserReconciler(session_factory)
        real_reconcile = reconciler.reconcile

        async def flaky(canonical, config_id):
            if canonical.username == "broken":
                raise RuntimeError("constraint violated")
            return await real_reconcile(canonical, config_id)

        reconciler.reconcile = flaky
        service._reconciler = reconciler
        config = await service.create_config({"name": "all", "directory_configuration_id": directory_config.id})

        result = await service.execute_sync(config.id)

        assert result["success"] is True
        assert result["users_created"] == 1
        assert result["users_skipped"] == 1
        assert result["errors"] == ["Error syncing CN=broken,OU=Users,DC=x,DC=com: constraint violated"]

    @pytest.mark.asyncio
    async def test_directory_unreachable(self, session_factory, directory_config):
        service = _service(session_factory, error=LDAPSocketOpenError("unreachable"))
        config = await service.create_config({"name": "all", "directory_configuration_id": directory_config.id})

        result = await service.execute_sync(config.id)

        assert result["success"] is False
        assert result["errors"] == ["unreachable"]
        stored = await service.get_config(config.id)
        assert stored.sync_count == 0
        assert stored.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_inactive_directory(self, session_factory, db_session, directory_config):
        service = _service(session_factory, [_person("jdoe")])
        config = await service.create_config({"name": "all", "directory_configuration_id": directory_config.id})
        directory_config.is_active = False
        await db_session.commit()

        result = await service.execute_sync(config.id)
        assert result["success"] is False
        assert result["errors"] == ["LDAP configuration is inactive"]


class TestSyncScheduler:

    @pytest.mark.asyncio
    async def test_run_pending_executes_due(self):
        sync_service = AsyncMock()
        sync_service.due_configs.return_value = [SimpleNamespace(id="a"), SimpleNamespace(id="b")]
        sync_service.execute_sync.side_effect = [{"success": True}, NotFoundError("gone")]

        scheduler = SyncScheduler(sync_service, poll_interval=3600)
        assert await scheduler.run_pending() == 2
        assert [c.args[0] for c in sync_service.execute_sync.await_args_list] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_start_stop(self):
        scheduler = SyncScheduler(AsyncMock(), poll_interval=3600)
        assert scheduler.running is False
        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()
        assert scheduler.running is False
