"""Unit tests for directory entry mapping."""

from types import SimpleNamespace

from portal.services.attribute_mapper import get_attribute, get_attribute_list, map_entry


def _entry(**overrides):
    entry = {
        "dn": "CN=John Doe,OU=Users,DC=x,DC=com",
        "sAMAccountName": ["jdoe"],
        "displayName": ["John Doe"],
        "mail": ["jdoe@x.com"],
        "objectGUID": ["{6f1e2c4a-0000-4000-8000-000000000001}"],
        "memberOf": ["CN=IT,OU=Groups,DC=x,DC=com", "CN=Staff,OU=Groups,DC=x,DC=com"],
    }
    entry.update(overrides)
    return entry


def test_maps_active_directory_defaults():
    user = map_entry(_entry())
    assert user.username == "jdoe"
    assert user.display_name == "John Doe"
    assert user.email == "jdoe@x.com"
    assert user.id == "{6f1e2c4a-0000-4000-8000-000000000001}"
    assert user.dn == "CN=John Doe,OU=Users,DC=x,DC=com"
    assert user.groups == ["CN=IT,OU=Groups,DC=x,DC=com", "CN=Staff,OU=Groups,DC=x,DC=com"]
    assert user.roles == ["user"]


def test_custom_attribute_map_overrides_defaults():
    config = SimpleNamespace(attribute_map={"username": "uid", "email": "userPrincipalName"})
    entry = _entry(uid=["john"], userPrincipalName="john@corp.example")
    user = map_entry(entry, config)
    assert user.username == "john"
    assert user.email == "john@corp.example"
    assert user.display_name == "John Doe"


def test_display_name_falls_back_to_username():
    entry = _entry()
    del entry["displayName"]
    assert map_entry(entry).display_name == "jdoe"


def test_id_falls_back_to_dn():
    entry = _entry()
    del entry["objectGUID"]
    assert map_entry(entry).id == "CN=John Doe,OU=Users,DC=x,DC=com"


def test_missing_groups_yield_empty_list():
    entry = _entry()
    del entry["memberOf"]
    assert map_entry(entry).groups == []


def test_single_valued_group_becomes_list():
    assert get_attribute_list({"memberOf": "CN=IT,DC=x"}, "memberOf") == ["CN=IT,DC=x"]


def test_binary_values_are_json_safe():
    user = map_entry(_entry(objectGUID=[b"\xff\xfe"]))
    assert user.id == "fffe"
    assert user.raw_data["objectGUID"] == ["fffe"]


def test_get_attribute_empty_values():
    assert get_attribute({"mail": []}, "mail") is None
    assert get_attribute({"mail": ""}, "mail") is None
    assert get_attribute({}, "mail") is None
    assert get_attribute({"mail": "a@x"}, None) is None
