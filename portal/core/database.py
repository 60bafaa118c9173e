import datetime
import uuid
from pathlib import Path

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from portal.config import settings

# Mappings stored under this configuration id apply to every directory.
WILDCARD_CONFIGURATION_ID = "00000000-0000-0000-0000-000000000000"

ROLE_SOURCE_MANUAL = "manual"
ROLE_SOURCE_DIRECTORY = "directory-mapping"


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form SQLite hands DateTime columns back in."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# ── Directory configuration ────────────────────────────────────────────────


class DirectoryConfiguration(Base):
    __tablename__ = "directory_configurations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    host: Mapped[str] = mapped_column(String(255))
    port: Mapped[int] = mapped_column(Integer, default=389)
    base_dn: Mapped[str] = mapped_column(String(1000))
    bind_dn: Mapped[str] = mapped_column(String(1000))
    bind_credentials: Mapped[str] = mapped_column(String(1000))
    search_filter: Mapped[str] = mapped_column(String(1000), default="(sAMAccountName={{username}})")
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    use_tls: Mapped[bool] = mapped_column(Boolean, default=False)
    tls_cert_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    username_suffix: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attribute_map: Mapped[dict] = mapped_column(JSON, default=dict)
    sync_schedule: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


# ── Users ───────────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    display_name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    directory_configuration_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("directory_configurations.id"), nullable=True
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class UserDirectoryDetail(Base):
    __tablename__ = "user_directory_details"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # One detail row per user.
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True
    )
    directory_configuration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("directory_configurations.id")
    )
    distinguished_name: Mapped[str] = mapped_column(String(1000))
    object_guid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    groups: Mapped[list] = mapped_column(JSON, default=list)
    last_sync_at: Mapped[datetime.datetime] = mapped_column(DateTime)
    raw_data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


class UserPreferences(Base):
    __tablename__ = "user_preferences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    # Token subject, not a foreign key: the built-in admin has no users row.
    user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    theme: Mapped[str] = mapped_column(String(50), default="light")
    language: Mapped[str] = mapped_column(String(10), default="en")
    dashboard_layout: Mapped[dict] = mapped_column(JSON, default=dict)
    notifications: Mapped[dict] = mapped_column(JSON, default=dict)
    module_preferences: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


# ── Roles & Permissions ─────────────────────────────────────────────────────


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permission_resource_action"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    resource: Mapped[str] = mapped_column(String(100))
    action: Mapped[str] = mapped_column(String(100))
    scope: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    role_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE"), index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("permissions.id", ondelete="CASCADE"), index=True
    )


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id", "source", name="uq_user_role_source"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    role_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE"), index=True
    )
    source: Mapped[str] = mapped_column(String(30), default=ROLE_SOURCE_MANUAL)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


class DirectoryRoleMapping(Base):
    __tablename__ = "directory_role_mappings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    # Not a foreign key: may hold WILDCARD_CONFIGURATION_ID.
    directory_configuration_id: Mapped[str] = mapped_column(
        String(36), default=WILDCARD_CONFIGURATION_ID, index=True
    )
    group_dn: Mapped[str] = mapped_column(String(1000))
    group_name: Mapped[str] = mapped_column(String(255))
    role_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE")
    )
    mapping_type: Mapped[str] = mapped_column(String(10), default="group")  # group/ou
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


# ── Audit Log ───────────────────────────────────────────────────────────────


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )
    action: Mapped[str] = mapped_column(String(50))
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[float | None] = mapped_column(nullable=True)
    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)


# ── Dynamic Configuration ───────────────────────────────────────────────────


class ConfigurationCategory(Base):
    __tablename__ = "configuration_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)


class ConfigurationKey(Base):
    __tablename__ = "configuration_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    key: Mapped[str] = mapped_column(String(255), unique=True)
    category_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("configuration_categories.id")
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_type: Mapped[str] = mapped_column(String(20), default="string")  # string/number/boolean/json/date/enum
    default_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    is_editable: Mapped[bool] = mapped_column(Boolean, default=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)


class ConfigurationValue(Base):
    __tablename__ = "configuration_values"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    config_key_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("configuration_keys.id", ondelete="CASCADE"), index=True
    )
    value: Mapped[str] = mapped_column(Text)
    environment_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


# ── Directory Sync ──────────────────────────────────────────────────────────


class DirectorySyncConfig(Base):
    __tablename__ = "directory_sync_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    frequency: Mapped[str] = mapped_column(String(20), default="daily")  # hourly/daily/weekly/monthly/custom
    cron_expression: Mapped[str | None] = mapped_column(String(100), nullable=True)
    scope: Mapped[str] = mapped_column(String(20), default="both")  # users/groups/both
    conflict_policy: Mapped[str] = mapped_column(String(20), default="ldap_wins")
    field_exceptions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    batch_size: Mapped[int] = mapped_column(Integer, default=100)
    last_sync_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    next_sync_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    sync_count: Mapped[int] = mapped_column(Integer, default=0)
    last_sync_stats: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    directory_configuration_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("directory_configurations.id", ondelete="CASCADE")
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, default=utcnow
    )


# ── Engine & Session ──────────────────────────────────────────────────────────

engine = create_async_engine(settings.portal_db_url, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create any missing tables. A file-backed SQLite database gets its directory created first."""
    database = engine.url.database
    if engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine."""
    await engine.dispose()
