import datetime
import uuid
from dataclasses import dataclass, field

DEFAULT_ATTRIBUTES = {
    "displayName": "displayName",
    "email": "mail",
    "userId": "objectGUID",
    "username": "sAMAccountName",
    "groups": "memberOf",
}


@dataclass
class CanonicalUser:
    """Directory entry reduced to the fields the portal keeps."""

    id: str
    username: str | None
    display_name: str | None
    email: str | None
    dn: str
    groups: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=lambda: ["user"])
    raw_data: dict = field(default_factory=dict)


def _json_safe(value):
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def get_attribute(entry: dict, name: str | None) -> str | None:
    """Single attribute value: first element for multi-valued attributes, None when absent."""
    if not entry or not name:
        return None
    value = entry.get(name)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None or value == "":
        return None
    return _json_safe(value)


def get_attribute_list(entry: dict, name: str | None) -> list[str]:
    if not entry or not name:
        return []
    value = entry.get(name)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [str(_json_safe(v)) for v in value if v]


def map_entry(entry: dict, config=None) -> CanonicalUser:
    """Map a raw directory entry onto a CanonicalUser.

    Attribute names come from `config.attribute_map`, falling back to the
    Active Directory defaults.
    """
    names = {**DEFAULT_ATTRIBUTES, **(getattr(config, "attribute_map", None) or {})}
    dn = entry.get("dn") or ""

    username = get_attribute(entry, names["username"])
    display_name = get_attribute(entry, names["displayName"])

    return CanonicalUser(
        id=get_attribute(entry, names["userId"]) or dn,
        username=username,
        display_name=display_name or username,
        email=get_attribute(entry, names["email"]),
        dn=dn,
        groups=get_attribute_list(entry, names["groups"]),
        raw_data=_json_safe(entry),
    )
