import re

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.database import WILDCARD_CONFIGURATION_ID, DirectoryRoleMapping, Role

logger = structlog.get_logger()

_CN_PATTERN = re.compile(r"cn=([^,]+)", re.IGNORECASE)


def extract_cn(dn: str) -> str | None:
    match = _CN_PATTERN.search(dn)
    return match.group(1) if match else None


def group_matches(group_dn: str, mapping_dn: str) -> bool:
    """Permissive DN comparison tolerating formatting differences between servers.

    True on case-insensitive equality, containment in either direction, or an
    identical CN component.
    """
    group = group_dn.lower()
    mapped = mapping_dn.lower()

    if group == mapped:
        return True

    if group in mapped or mapped in group:
        return True

    group_cn = extract_cn(group)
    mapped_cn = extract_cn(mapped)
    return group_cn is not None and group_cn == mapped_cn


async def resolve_roles(
    session: AsyncSession, group_dns: list[str], directory_configuration_id: str
) -> list[Role]:
    """Roles granted by the mappings matching any of the given groups, de-duplicated by id."""
    if not group_dns:
        logger.debug("role_resolver_no_groups")
        return []

    result = await session.execute(
        select(DirectoryRoleMapping, Role)
        .join(Role, Role.id == DirectoryRoleMapping.role_id)
        .where(
            or_(
                DirectoryRoleMapping.directory_configuration_id == directory_configuration_id,
                DirectoryRoleMapping.directory_configuration_id == WILDCARD_CONFIGURATION_ID,
            )
        )
        .order_by(DirectoryRoleMapping.created_at, DirectoryRoleMapping.id)
    )
    rows = result.all()
    if not rows:
        logger.debug("role_resolver_no_mappings", directory_configuration_id=directory_configuration_id)
        return []

    roles: list[Role] = []
    seen: set[str] = set()
    for mapping, role in rows:
        if role.id in seen:
            continue
        if any(group_matches(group, mapping.group_dn) for group in group_dns):
            roles.append(role)
            seen.add(role.id)

    logger.debug("role_resolver_matched", groups=len(group_dns), roles=[r.name for r in roles])
    return roles
