"""Unit tests for group-to-role resolution."""

from unittest.mock import AsyncMock

import pytest

from portal.core.database import WILDCARD_CONFIGURATION_ID, DirectoryRoleMapping, Role
from portal.services.role_resolver import extract_cn, group_matches, resolve_roles


class TestGroupMatches:

    def test_case_insensitive_equality(self):
        assert group_matches("CN=IT,OU=Groups,DC=x,DC=com", "cn=it,ou=groups,dc=x,dc=com")

    def test_containment_either_direction(self):
        assert group_matches("CN=IT,OU=Groups,DC=x,DC=com", "CN=IT,OU=Groups")
        assert group_matches("CN=IT", "CN=IT,OU=Groups,DC=x,DC=com")

    def test_same_cn_in_different_ou(self):
        assert group_matches("CN=Admins,OU=A,DC=x,DC=com", "CN=Admins,OU=B,DC=y,DC=org")

    def test_different_groups_do_not_match(self):
        assert not group_matches("CN=Sales,OU=Groups,DC=x,DC=com", "CN=Marketing,OU=Groups,DC=x,DC=com")

    def test_substring_of_cn_matches(self):
        # Containment is intentionally loose.
        assert group_matches("CN=ITOps,OU=Groups,DC=x,DC=com", "CN=IT")

    def test_extract_cn(self):
        assert extract_cn("CN=Domain Users,OU=Groups,DC=x") == "Domain Users"
        assert extract_cn("OU=Groups,DC=x") is None


async def _add_role(session, name: str) -> Role:
    role = Role(name=name)
    session.add(role)
    await session.flush()
    return role


class TestResolveRoles:

    @pytest.mark.asyncio
    async def test_empty_groups_issue_no_query(self):
        session = AsyncMock()
        roles = await resolve_roles(session, [], "cfg-1")
        assert roles == []
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_matches_mapping_for_configuration(self, db_session, directory_config):
        it_role = await _add_role(db_session, "it")
        db_session.add(
            DirectoryRoleMapping(
                directory_configuration_id=directory_config.id,
                group_dn="cn=it,ou=groups,dc=x,dc=com",
                group_name="IT",
                role_id=it_role.id,
            )
        )
        await db_session.commit()

        roles = await resolve_roles(db_session, ["CN=IT,OU=Groups,DC=x,DC=com"], directory_config.id)
        assert [r.name for r in roles] == ["it"]

    @pytest.mark.asyncio
    async def test_wildcard_mapping_applies_to_every_configuration(self, db_session):
        role = await _add_role(db_session, "staff")
        db_session.add(
            DirectoryRoleMapping(
                directory_configuration_id=WILDCARD_CONFIGURATION_ID,
                group_dn="CN=Staff,OU=Groups,DC=x,DC=com",
                group_name="Staff",
                role_id=role.id,
            )
        )
        await db_session.commit()

        roles = await resolve_roles(db_session, ["CN=Staff,OU=Groups,DC=x,DC=com"], "any-config")
        assert [r.name for r in roles] == ["staff"]

    @pytest.mark.asyncio
    async def test_other_configuration_mappings_ignored(self, db_session, directory_config):
        role = await _add_role(db_session, "ops")
        db_session.add(
            DirectoryRoleMapping(
                directory_configuration_id="some-other-config",
                group_dn="CN=Ops,OU=Groups,DC=x,DC=com",
                group_name="Ops",
                role_id=role.id,
            )
        )
        await db_session.commit()

        roles = await resolve_roles(db_session, ["CN=Ops,OU=Groups,DC=x,DC=com"], directory_config.id)
        assert roles == []

    @pytest.mark.asyncio
    async def test_roles_deduplicated(self, db_session, directory_config):
        role = await _add_role(db_session, "engineering")
        for dn in ("CN=Dev,OU=Groups,DC=x,DC=com", "CN=QA,OU=Groups,DC=x,DC=com"):
            db_session.add(
                DirectoryRoleMapping(
                    directory_configuration_id=directory_config.id,
                    group_dn=dn,
                    group_name=extract_cn(dn),
                    role_id=role.id,
                )
            )
        await db_session.commit()

        roles = await resolve_roles(
            db_session,
            ["CN=Dev,OU=Groups,DC=x,DC=com", "CN=QA,OU=Groups,DC=x,DC=com"],
            directory_config.id,
        )
        assert len(roles) == 1
        assert roles[0].id == role.id

    @pytest.mark.asyncio
    async def test_no_mappings_returns_empty(self, db_session, directory_config):
        roles = await resolve_roles(db_session, ["CN=IT,OU=Groups,DC=x,DC=com"], directory_config.id)
        assert roles == []
