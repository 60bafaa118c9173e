import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

import portal.core.database as db_module
from portal.core.database import DirectoryConfiguration
from portal.core.exceptions import ConflictError, NotFoundError
from portal.services.audit import AuditService, snapshot
from portal.services.directory_client import check_configuration

logger = structlog.get_logger()


class DirectoryConfigService:
    """CRUD for directory configurations.

    Marking a configuration default unmarks the others first, in the same
    session but without locking, so two concurrent writers can both win.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or db_module.async_session

    async def list_configurations(self) -> list[DirectoryConfiguration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DirectoryConfiguration).order_by(DirectoryConfiguration.name)
            )
            return list(result.scalars().all())

    async def get_configuration(self, config_id: str) -> DirectoryConfiguration:
        async with self._session_factory() as session:
            config = await session.get(DirectoryConfiguration, config_id)
        if config is None:
            raise NotFoundError.for_entity("LDAP configuration", config_id)
        return config

    async def get_default_configuration(self) -> DirectoryConfiguration:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DirectoryConfiguration).where(DirectoryConfiguration.is_default == True)  # noqa: E712
            )
            config = result.scalars().first()
        if config is None:
            raise NotFoundError("No default LDAP configuration found")
        return config

    @staticmethod
    async def _unset_other_defaults(session, keep_id: str | None = None) -> None:
        stmt = update(DirectoryConfiguration).where(DirectoryConfiguration.is_default == True)  # noqa: E712
        if keep_id is not None:
            stmt = stmt.where(DirectoryConfiguration.id != keep_id)
        await session.execute(stmt.values(is_default=False))

    async def create_configuration(self, data: dict, actor_id: str | None = None) -> DirectoryConfiguration:
        async with self._session_factory() as session:
            if data.get("is_default"):
                await self._unset_other_defaults(session)

            config = DirectoryConfiguration(**data)
            session.add(config)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"LDAP configuration '{data.get('name')}' already exists") from exc

            AuditService.log_creation(session, "directory_configuration", config.id, snapshot(config), user_id=actor_id)
            await session.commit()

        logger.info("ldap_config_created", config_id=config.id, name=config.name, is_default=config.is_default)
        return config

    async def update_configuration(self, config_id: str, data: dict, actor_id: str | None = None) -> DirectoryConfiguration:
        async with self._session_factory() as session:
            config = await session.get(DirectoryConfiguration, config_id)
            if config is None:
                raise NotFoundError.for_entity("LDAP configuration", config_id)

            before = snapshot(config)
            if data.get("is_default"):
                await self._unset_other_defaults(session, keep_id=config_id)

            for field_name, value in data.items():
                setattr(config, field_name, value)

            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"LDAP configuration '{data.get('name')}' already exists") from exc

            AuditService.log_update(
                session, "directory_configuration", config.id, before, snapshot(config), user_id=actor_id
            )
            await session.commit()

        logger.info("ldap_config_updated", config_id=config_id, fields=sorted(data))
        return config

    async def delete_configuration(self, config_id: str, actor_id: str | None = None) -> bool:
        async with self._session_factory() as session:
            config = await session.get(DirectoryConfiguration, config_id)
            if config is None:
                raise NotFoundError.for_entity("LDAP configuration", config_id)

            AuditService.log_deletion(session, "directory_configuration", config.id, snapshot(config), user_id=actor_id)
            await session.delete(config)
            await session.commit()

        logger.info("ldap_config_deleted", config_id=config_id)
        return True

    async def test_connection(self, config_id: str) -> dict:
        """Static configuration check; no bind is attempted."""
        config = await self.get_configuration(config_id)
        result = check_configuration(config)
        logger.info("ldap_config_tested", config_id=config_id, success=result["success"])
        return result
