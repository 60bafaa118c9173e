"""Scheduled bulk reconciliation of directory users."""

import asyncio
import datetime

import structlog
from ldap3.core.exceptions import LDAPException
from sqlalchemy import select

import portal.core.database as db_module
from portal.config import settings
from portal.core.database import DirectorySyncConfig, User, utcnow
from portal.core.exceptions import NotFoundError, PortalError
from portal.services.attribute_mapper import map_entry
from portal.services.directory_client import DirectoryClient, resolve_configuration
from portal.services.user_reconciler import UserReconciler

logger = structlog.get_logger()


SYNC_HOUR = 2


def calculate_next_sync(frequency: str, now: datetime.datetime | None = None) -> datetime.datetime:
    """Next run time for a frequency.

    hourly: one hour from now. daily: 02:00 tomorrow. weekly: 02:00 next
    Sunday. monthly: 02:00 on the 1st of next month. custom (and anything
    unrecognised): one day from now.
    """
    now = now or utcnow()
    at_two = {"hour": SYNC_HOUR, "minute": 0, "second": 0, "microsecond": 0}

    if frequency == "hourly":
        return now + datetime.timedelta(hours=1)
    if frequency == "daily":
        return (now + datetime.timedelta(days=1)).replace(**at_two)
    if frequency == "weekly":
        # Sunday is day 0 of the week here; a Sunday rolls to the following one.
        days_since_sunday = (now.weekday() + 1) % 7
        return (now + datetime.timedelta(days=7 - days_since_sunday)).replace(**at_two)
    if frequency == "monthly":
        if now.month == 12:
            return now.replace(year=now.year + 1, month=1, day=1, **at_two)
        return now.replace(month=now.month + 1, day=1, **at_two)
    return now + datetime.timedelta(days=1)


class DirectorySyncService:
    """Sync configuration CRUD and the bulk reconciliation run."""

    def __init__(
        self,
        session_factory=None,
        directory_client: DirectoryClient | None = None,
        reconciler: UserReconciler | None = None,
    ):
        self._session_factory = session_factory or db_module.async_session
        self._directory = directory_client or DirectoryClient()
        self._reconciler = reconciler or UserReconciler(self._session_factory)

    # ── Configurations ───────────────────────────────────────────────────────

    async def list_configs(self) -> list[DirectorySyncConfig]:
        async with self._session_factory() as session:
            result = await session.execute(select(DirectorySyncConfig).order_by(DirectorySyncConfig.name))
            return list(result.scalars().all())

    async def get_config(self, sync_config_id: str) -> DirectorySyncConfig:
        async with self._session_factory() as session:
            config = await session.get(DirectorySyncConfig, sync_config_id)
        if config is None:
            raise NotFoundError.for_entity("LDAP sync configuration", sync_config_id)
        return config

    async def create_config(self, data: dict) -> DirectorySyncConfig:
        config = DirectorySyncConfig(**data)
        config.next_sync_at = calculate_next_sync(config.frequency or "daily")
        async with self._session_factory() as session:
            session.add(config)
            await session.commit()
        logger.info("sync_config_created", sync_config_id=config.id, name=config.name, next_sync_at=str(config.next_sync_at))
        return config

    async def update_config(self, sync_config_id: str, data: dict) -> DirectorySyncConfig:
        async with self._session_factory() as session:
            config = await session.get(DirectorySyncConfig, sync_config_id)
            if config is None:
                raise NotFoundError.for_entity("LDAP sync configuration", sync_config_id)
            for field_name, value in data.items():
                setattr(config, field_name, value)
            if "frequency" in data or "cron_expression" in data:
                config.next_sync_at = calculate_next_sync(config.frequency)
            await session.commit()
        return config

    async def delete_config(self, sync_config_id: str) -> None:
        async with self._session_factory() as session:
            config = await session.get(DirectorySyncConfig, sync_config_id)
            if config is None:
                raise NotFoundError.for_entity("LDAP sync configuration", sync_config_id)
            await session.delete(config)
            await session.commit()

    async def due_configs(self, now: datetime.datetime | None = None) -> list[DirectorySyncConfig]:
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(DirectorySyncConfig)
                .where(
                    DirectorySyncConfig.is_active == True,  # noqa: E712
                    DirectorySyncConfig.next_sync_at <= now,
                )
                .order_by(DirectorySyncConfig.next_sync_at)
            )
            return list(result.scalars().all())

    # ── Execution ────────────────────────────────────────────────────────────

    async def _local_users(self) -> dict[str, User]:
        async with self._session_factory() as session:
            result = await session.execute(select(User))
            return {u.username: u for u in result.scalars().all()}

    async def execute_sync(self, sync_config_id: str) -> dict:
        """Reconcile every directory entry for one sync configuration.

        Per-entry failures are collected in `errors` and counted as skipped.
        A failure to reach the directory ends the run with success=False.
        """
        sync_config = await self.get_config(sync_config_id)
        start = utcnow()
        result = {
            "success": False,
            "start_time": start.isoformat(),
            "end_time": None,
            "users_processed": 0,
            "users_created": 0,
            "users_updated": 0,
            "users_skipped": 0,
            "errors": [],
        }
        logger.info("directory_sync_started", sync_config_id=sync_config.id, name=sync_config.name)

        try:
            params, directory_config = await resolve_configuration(
                sync_config.directory_configuration_id, self._session_factory
            )
            entries = await self._directory.search_entries(params)
        except (PortalError, LDAPException) as exc:
            message = exc.message if isinstance(exc, PortalError) else str(exc)
            logger.error("directory_sync_failed", sync_config_id=sync_config.id, error=message)
            result["errors"].append(message)
            result["end_time"] = utcnow().isoformat()
            await self._record_run(sync_config.id, result, succeeded=False)
            return result

        local_users = await self._local_users()
        exceptions = set(sync_config.field_exceptions or [])
        batch_size = max(1, sync_config.batch_size or 100)

        for offset in range(0, len(entries), batch_size):
            for entry in entries[offset : offset + batch_size]:
                result["users_processed"] += 1
                canonical = map_entry(entry, directory_config)
                if not canonical.username:
                    result["users_skipped"] += 1
                    continue

                local = local_users.get(canonical.username)
                if local is None and sync_config.scope == "groups":
                    # Group-only runs refresh memberships of known users.
                    result["users_skipped"] += 1
                    continue
                if local is not None and sync_config.conflict_policy == "local_wins":
                    result["users_skipped"] += 1
                    continue
                if local is not None and sync_config.conflict_policy == "selective":
                    if "email" in exceptions:
                        canonical.email = local.email
                    if "display_name" in exceptions or "displayName" in exceptions:
                        canonical.display_name = local.display_name

                try:
                    user = await self._reconciler.reconcile(canonical, directory_config.id)
                except Exception as exc:
                    logger.warning("directory_sync_entry_failed", dn=canonical.dn, error=str(exc))
                    result["errors"].append(f"Error syncing {canonical.dn}: {exc}")
                    result["users_skipped"] += 1
                    continue

                if local is None:
                    result["users_created"] += 1
                    local_users[user.username] = user
                else:
                    result["users_updated"] += 1

            logger.debug("directory_sync_batch_done", processed=result["users_processed"], total=len(entries))

        result["success"] = True
        result["end_time"] = utcnow().isoformat()
        await self._record_run(sync_config.id, result, succeeded=True)

        logger.info(
            "directory_sync_complete",
            sync_config_id=sync_config.id,
            processed=result["users_processed"],
            created=result["users_created"],
            updated=result["users_updated"],
            skipped=result["users_skipped"],
            errors=len(result["errors"]),
        )
        return result

    async def _record_run(self, sync_config_id: str, result: dict, succeeded: bool) -> None:
        async with self._session_factory() as session:
            config = await session.get(DirectorySyncConfig, sync_config_id)
            if config is None:
                logger.warning("sync_config_vanished", sync_config_id=sync_config_id)
                return
            config.last_sync_at = utcnow()
            config.next_sync_at = calculate_next_sync(config.frequency, config.last_sync_at)
            if succeeded:
                config.sync_count = (config.sync_count or 0) + 1
            config.last_sync_stats = dict(result)
            await session.commit()

    async def trigger_now(self, sync_config_id: str) -> dict:
        logger.info("directory_sync_triggered", sync_config_id=sync_config_id)
        return await self.execute_sync(sync_config_id)


class SyncScheduler:
    """Polls for due sync configurations and runs them one after another."""

    def __init__(self, sync_service: DirectorySyncService, poll_interval: int | None = None):
        self._sync_service = sync_service
        self._poll_interval = poll_interval or settings.sync_poll_interval
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background polling task."""
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("sync_scheduler_started", poll_interval=self._poll_interval)

    async def stop(self) -> None:
        """Stop the background polling task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sync_scheduler_stopped")

    async def run_pending(self, now: datetime.datetime | None = None) -> int:
        """Execute every due configuration. Returns how many ran."""
        due = await self._sync_service.due_configs(now)
        for config in due:
            try:
                await self._sync_service.execute_sync(config.id)
            except NotFoundError:
                logger.warning("sync_config_vanished", sync_config_id=config.id)
        return len(due)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._poll_interval)
                await self.run_pending()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("sync_scheduler_error")
