"""Database-backed runtime configuration with environment-variable fallback.

Values are stored as text and parsed by the key's declared data type. The
in-memory view is rebuilt by `refresh_cache()` and kept current by `set()`
and `delete()` on this instance.
"""

import json
from typing import Any

import structlog
from sqlalchemy import or_, select

import portal.core.database as db_module
from portal.config import settings
from portal.core.database import ConfigurationCategory, ConfigurationKey, ConfigurationValue
from portal.core.exceptions import NotFoundError, ValidationFailedError

logger = structlog.get_logger()

SYSTEM_CATEGORY = "System"

DEFAULT_CATEGORIES = [
    ("System", "System-wide configurations", 0),
    ("Authentication", "Authentication related configurations", 1),
    ("LDAP", "LDAP connection configurations", 2),
    ("Email", "Email configurations", 3),
    ("UI", "User interface configurations", 4),
]

# (key, value, category, description, data_type)
DEFAULT_KEYS = [
    ("system.name", "Admin Portal", "System", "Application name", "string"),
    ("system.maintenance_mode", False, "System", "Enable maintenance mode", "boolean"),
    ("auth.session_duration", "1d", "Authentication", "Default session duration", "string"),
    ("auth.lockout_threshold", 5, "Authentication", "Number of failed attempts before account lockout", "number"),
    ("auth.lockout_duration", 30, "Authentication", "Lockout duration in minutes", "number"),
    ("ldap.sync_schedule", "0 0 * * *", "LDAP", "CRON schedule for LDAP synchronization", "string"),
    ("ldap.default_mapping_type", "group", "LDAP", "Default LDAP mapping type (group or ou)", "string"),
    ("ui.default_theme", "light", "UI", "Default theme", "string"),
    ("ui.default_language", "en", "UI", "Default language", "string"),
    ("ui.available_languages", ["en", "ru"], "UI", "Available languages", "json"),
    ("ui.available_themes", ["light", "dark"], "UI", "Available themes", "json"),
]


def infer_data_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return "json"


def serialize_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_value(raw: str | None, data_type: str) -> Any:
    """Parse stored text by data type. Malformed JSON is logged and returned as text."""
    if raw is None:
        return None
    if data_type == "number":
        try:
            number = float(raw)
        except ValueError:
            logger.warning("config_value_not_a_number", value=raw)
            return raw
        return int(number) if number.is_integer() else number
    if data_type == "boolean":
        return raw == "true"
    if data_type == "json":
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("config_value_invalid_json", error=str(exc))
            return raw
    return raw


class ConfigStore:
    def __init__(self, session_factory=None, environment: str | None = None):
        self._session_factory = session_factory or db_module.async_session
        self._environment = environment
        self._cache: dict[str, Any] = {}
        self._loaded = False

    @property
    def environment(self) -> str:
        return self._environment or settings.portal_env

    def _applies(self, environment_name: str | None) -> bool:
        return environment_name is None or environment_name == self.environment

    async def refresh_cache(self) -> int:
        """Reload active values for this environment. Environment-specific values win over global ones."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfigurationValue, ConfigurationKey)
                .join(ConfigurationKey, ConfigurationKey.id == ConfigurationValue.config_key_id)
                .where(ConfigurationValue.is_active == True)  # noqa: E712
                .where(
                    or_(
                        ConfigurationValue.environment_name.is_(None),
                        ConfigurationValue.environment_name == self.environment,
                    )
                )
                # Global rows first so environment rows overwrite them.
                .order_by(ConfigurationValue.environment_name.is_not(None))
            )
            rows = result.all()

        cache = {}
        for value, key in rows:
            cache[key.key] = parse_value(value.value, key.data_type)
        self._cache = cache
        self._loaded = True

        logger.info("config_cache_refreshed", items=len(cache), environment=self.environment)
        return len(cache)

    def get(self, key: str, default: Any = None) -> Any:
        """Stored value, else the settings attribute of the same name, else `default`."""
        if key in self._cache:
            return self._cache[key]
        return getattr(settings, key.lower(), default)

    async def get_stored(self, key: str) -> Any:
        """Value stored for this environment. Never falls back to settings, which hold secrets."""
        if not self._loaded:
            await self.refresh_cache()
        if key not in self._cache:
            raise NotFoundError(f"No active value for configuration key '{key}'")
        return self._cache[key]

    async def _get_or_create_system_category(self, session) -> ConfigurationCategory:
        result = await session.execute(
            select(ConfigurationCategory).where(ConfigurationCategory.name == SYSTEM_CATEGORY)
        )
        category = result.scalar_one_or_none()
        if category is None:
            category = ConfigurationCategory(
                name=SYSTEM_CATEGORY, description="System configuration values", display_order=0
            )
            session.add(category)
            await session.flush()
        return category

    async def set(self, key: str, value: Any, environment: str | None = None) -> ConfigurationValue:
        async with self._session_factory() as session:
            result = await session.execute(select(ConfigurationKey).where(ConfigurationKey.key == key))
            config_key = result.scalar_one_or_none()

            if config_key is None:
                category = await self._get_or_create_system_category(session)
                config_key = ConfigurationKey(key=key, category_id=category.id, data_type=infer_data_type(value))
                session.add(config_key)
                await session.flush()
            elif not config_key.is_editable:
                raise ValidationFailedError(f"Configuration key '{key}' is not editable")

            result = await session.execute(
                select(ConfigurationValue).where(
                    ConfigurationValue.config_key_id == config_key.id,
                    ConfigurationValue.environment_name.is_(None)
                    if environment is None
                    else ConfigurationValue.environment_name == environment,
                )
            )
            config_value = result.scalar_one_or_none()

            if config_value is None:
                config_value = ConfigurationValue(
                    config_key_id=config_key.id, environment_name=environment, is_active=True
                )
                session.add(config_value)
            config_value.value = serialize_value(value)
            config_value.is_active = True
            await session.commit()

        if self._applies(environment):
            self._cache[key] = value

        logger.info("config_value_set", key=key, environment=environment)
        return config_value

    async def delete(self, key: str, environment: str | None = None) -> bool:
        """Deactivate a stored value. Returns False when there was nothing to delete."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfigurationValue)
                .join(ConfigurationKey, ConfigurationKey.id == ConfigurationValue.config_key_id)
                .where(
                    ConfigurationKey.key == key,
                    ConfigurationValue.is_active == True,  # noqa: E712
                    ConfigurationValue.environment_name.is_(None)
                    if environment is None
                    else ConfigurationValue.environment_name == environment,
                )
            )
            config_value = result.scalar_one_or_none()
            if config_value is None:
                return False

            config_value.is_active = False
            await session.commit()

        self._cache.pop(key, None)
        logger.info("config_value_deleted", key=key, environment=environment)
        return True

    async def list_categories(self) -> list[ConfigurationCategory]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfigurationCategory).order_by(ConfigurationCategory.display_order, ConfigurationCategory.name)
            )
            return list(result.scalars().all())

    async def _describe_keys(self, session, keys: list[ConfigurationKey], categories: dict[str, str]) -> list[dict]:
        result = await session.execute(
            select(ConfigurationValue).where(
                ConfigurationValue.config_key_id.in_([k.id for k in keys]),
                ConfigurationValue.is_active == True,  # noqa: E712
            )
        )
        values: dict[str, ConfigurationValue] = {}
        for value in result.scalars().all():
            if not self._applies(value.environment_name):
                continue
            current = values.get(value.config_key_id)
            if current is None or current.environment_name is None:
                values[value.config_key_id] = value

        described = []
        for key in keys:
            value = values.get(key.id)
            described.append(
                {
                    "id": key.id,
                    "key": key.key,
                    "category": categories.get(key.category_id),
                    "data_type": key.data_type,
                    "value": parse_value(value.value, key.data_type) if value else None,
                    "default_value": key.default_value,
                    "is_editable": key.is_editable,
                    "description": key.description,
                }
            )
        return described

    async def get_all_configurations(self) -> list[dict]:
        async with self._session_factory() as session:
            categories = {c.id: c.name for c in (await session.execute(select(ConfigurationCategory))).scalars()}
            result = await session.execute(
                select(ConfigurationKey)
                .where(ConfigurationKey.is_visible == True)  # noqa: E712
                .order_by(ConfigurationKey.display_order, ConfigurationKey.key)
            )
            return await self._describe_keys(session, list(result.scalars().all()), categories)

    async def get_configurations_by_category(self, category_name: str) -> list[dict]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConfigurationCategory).where(ConfigurationCategory.name == category_name)
            )
            category = result.scalar_one_or_none()
            if category is None:
                raise NotFoundError(f"Configuration category '{category_name}' not found")

            result = await session.execute(
                select(ConfigurationKey)
                .where(ConfigurationKey.category_id == category.id, ConfigurationKey.is_visible == True)  # noqa: E712
                .order_by(ConfigurationKey.display_order, ConfigurationKey.key)
            )
            return await self._describe_keys(session, list(result.scalars().all()), {category.id: category.name})

    async def seed_defaults(self) -> dict:
        """Install the default categories and keys. Existing rows are left untouched."""
        created = {"categories": 0, "keys": 0}
        async with self._session_factory() as session:
            result = await session.execute(select(ConfigurationCategory))
            categories = {c.name: c for c in result.scalars().all()}
            for name, description, order in DEFAULT_CATEGORIES:
                if name not in categories:
                    category = ConfigurationCategory(name=name, description=description, display_order=order)
                    session.add(category)
                    categories[name] = category
                    created["categories"] += 1
            await session.flush()

            result = await session.execute(select(ConfigurationKey.key))
            existing_keys = set(result.scalars().all())
            for order, (key, value, category_name, description, data_type) in enumerate(DEFAULT_KEYS):
                if key in existing_keys:
                    continue
                config_key = ConfigurationKey(
                    key=key,
                    category_id=categories[category_name].id,
                    description=description,
                    data_type=data_type,
                    default_value=serialize_value(value),
                    display_order=order,
                )
                session.add(config_key)
                await session.flush()
                session.add(
                    ConfigurationValue(config_key_id=config_key.id, value=serialize_value(value), is_active=True)
                )
                created["keys"] += 1
            await session.commit()

        logger.info("config_defaults_seeded", **created)
        return created
