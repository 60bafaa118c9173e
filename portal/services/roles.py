import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

import portal.core.database as db_module
from portal.core.cache import PermissionCache, user_pattern
from portal.core.database import (
    ROLE_SOURCE_MANUAL,
    WILDCARD_CONFIGURATION_ID,
    DirectoryRoleMapping,
    Role,
    RolePermission,
    User,
    UserRole,
)
from portal.core.exceptions import ConflictError, NotFoundError, ValidationFailedError
from portal.services.audit import AuditService, snapshot
from portal.services.role_resolver import extract_cn

logger = structlog.get_logger()


class RoleService:
    """Roles, user-role assignments and directory group mappings."""

    def __init__(self, session_factory=None, cache: PermissionCache | None = None):
        self._session_factory = session_factory or db_module.async_session
        self._cache = cache

    async def _invalidate_users(self, user_ids) -> None:
        if self._cache is None:
            return
        for user_id in set(user_ids):
            await self._cache.clear_pattern(user_pattern(user_id))

    # ── Roles ────────────────────────────────────────────────────────────────

    async def list_roles(self) -> list[Role]:
        async with self._session_factory() as session:
            result = await session.execute(select(Role).order_by(Role.name))
            return list(result.scalars().all())

    async def get_role(self, role_id: str) -> Role:
        async with self._session_factory() as session:
            role = await session.get(Role, role_id)
        if role is None:
            raise NotFoundError.for_entity("Role", role_id)
        return role

    async def get_role_by_name(self, name: str) -> Role | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Role).where(Role.name == name))
            return result.scalar_one_or_none()

    async def create_role(
        self, name: str, description: str | None = None, is_system: bool = False, actor_id: str | None = None
    ) -> Role:
        async with self._session_factory() as session:
            role = Role(name=name, description=description, is_system=is_system)
            session.add(role)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Role '{name}' already exists") from exc
            AuditService.log_creation(session, "role", role.id, snapshot(role), user_id=actor_id)
            await session.commit()

        logger.info("role_created", role_id=role.id, name=name)
        return role

    async def update_role(self, role_id: str, data: dict, actor_id: str | None = None) -> Role:
        async with self._session_factory() as session:
            role = await session.get(Role, role_id)
            if role is None:
                raise NotFoundError.for_entity("Role", role_id)
            before = snapshot(role)
            for field_name, value in data.items():
                setattr(role, field_name, value)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"Role '{data.get('name')}' already exists") from exc
            AuditService.log_update(session, "role", role.id, before, snapshot(role), user_id=actor_id)
            await session.commit()
        return role

    async def delete_role(self, role_id: str, actor_id: str | None = None) -> None:
        async with self._session_factory() as session:
            role = await session.get(Role, role_id)
            if role is None:
                raise NotFoundError.for_entity("Role", role_id)
            if role.is_system:
                raise ValidationFailedError(f"System role '{role.name}' cannot be deleted")

            result = await session.execute(select(UserRole.user_id).where(UserRole.role_id == role_id))
            affected = list(result.scalars().all())

            await session.execute(delete(UserRole).where(UserRole.role_id == role_id))
            await session.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
            await session.execute(delete(DirectoryRoleMapping).where(DirectoryRoleMapping.role_id == role_id))
            AuditService.log_deletion(session, "role", role.id, snapshot(role), user_id=actor_id)
            await session.delete(role)
            await session.commit()

        await self._invalidate_users(affected)
        logger.info("role_deleted", role_id=role_id, affected_users=len(affected))

    # ── User assignments ─────────────────────────────────────────────────────

    async def get_roles_by_user_id(self, user_id: str) -> list[Role]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Role)
                .join(UserRole, UserRole.role_id == Role.id)
                .where(UserRole.user_id == user_id)
                .order_by(Role.name)
            )
            return list(result.unique().scalars().all())

    async def assign_role_to_user(
        self, user_id: str, role_id: str, source: str = ROLE_SOURCE_MANUAL, actor_id: str | None = None
    ) -> UserRole:
        async with self._session_factory() as session:
            if await session.get(User, user_id) is None:
                raise NotFoundError.for_entity("User", user_id)
            if await session.get(Role, role_id) is None:
                raise NotFoundError.for_entity("Role", role_id)

            assignment = UserRole(user_id=user_id, role_id=role_id, source=source)
            session.add(assignment)
            try:
                await session.flush()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError("Role already assigned to user") from exc
            AuditService.log_creation(
                session, "user_role", user_id, {"role_id": role_id, "source": source}, user_id=actor_id
            )
            await session.commit()

        await self._invalidate_users([user_id])
        logger.info("role_assigned", user_id=user_id, role_id=role_id, source=source)
        return assignment

    async def remove_role_from_user(
        self, user_id: str, role_id: str, source: str | None = None, actor_id: str | None = None
    ) -> int:
        async with self._session_factory() as session:
            stmt = delete(UserRole).where(UserRole.user_id == user_id, UserRole.role_id == role_id)
            if source is not None:
                stmt = stmt.where(UserRole.source == source)
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError("Role is not assigned to user")
            AuditService.log_deletion(
                session, "user_role", user_id, {"role_id": role_id, "source": source}, user_id=actor_id
            )
            await session.commit()

        await self._invalidate_users([user_id])
        logger.info("role_removed", user_id=user_id, role_id=role_id, removed=result.rowcount)
        return result.rowcount

    # ── Directory group mappings ─────────────────────────────────────────────

    async def list_mappings(self, directory_configuration_id: str | None = None) -> list[DirectoryRoleMapping]:
        async with self._session_factory() as session:
            stmt = select(DirectoryRoleMapping).order_by(DirectoryRoleMapping.created_at)
            if directory_configuration_id is not None:
                stmt = stmt.where(DirectoryRoleMapping.directory_configuration_id == directory_configuration_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create_mapping(
        self,
        group_dn: str,
        role_id: str,
        group_name: str | None = None,
        directory_configuration_id: str | None = None,
        mapping_type: str = "group",
        actor_id: str | None = None,
    ) -> DirectoryRoleMapping:
        """Map a directory group to a role. Without a configuration id the mapping applies to every directory."""
        async with self._session_factory() as session:
            if await session.get(Role, role_id) is None:
                raise NotFoundError.for_entity("Role", role_id)

            mapping = DirectoryRoleMapping(
                group_dn=group_dn,
                group_name=group_name or extract_cn(group_dn) or group_dn.split(",")[0],
                role_id=role_id,
                mapping_type=mapping_type,
                directory_configuration_id=directory_configuration_id or WILDCARD_CONFIGURATION_ID,
            )
            session.add(mapping)
            await session.flush()
            AuditService.log_creation(session, "directory_role_mapping", mapping.id, snapshot(mapping), user_id=actor_id)
            await session.commit()

        logger.info("role_mapping_created", mapping_id=mapping.id, group=mapping.group_name, role_id=role_id)
        return mapping

    async def delete_mapping(self, mapping_id: str, actor_id: str | None = None) -> None:
        async with self._session_factory() as session:
            mapping = await session.get(DirectoryRoleMapping, mapping_id)
            if mapping is None:
                raise NotFoundError.for_entity("Role mapping", mapping_id)
            AuditService.log_deletion(
                session, "directory_role_mapping", mapping.id, snapshot(mapping), user_id=actor_id
            )
            await session.delete(mapping)
            await session.commit()
