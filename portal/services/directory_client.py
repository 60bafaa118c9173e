import asyncio
import ssl
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from ldap3 import ALL_ATTRIBUTES, NONE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPException
from ldap3.utils.conv import escape_filter_chars
from sqlalchemy import select

import portal.core.database as db_module
from portal.config import settings
from portal.core.database import DirectoryConfiguration
from portal.core.exceptions import AuthenticationError, NotFoundError

logger = structlog.get_logger()

PERSON_FILTER = "(objectClass=person)"


@dataclass(frozen=True)
class ServerParams:
    """Connection parameters for one directory bind/search exchange."""

    url: str
    bind_dn: str
    bind_credentials: str = field(repr=False)
    search_base: str
    search_filter: str
    search_attributes: tuple[str, ...] = (ALL_ATTRIBUTES,)
    use_tls: bool = False
    ca_data: str | None = field(default=None, repr=False)
    username_suffix: str | None = None


def _load_certificate(path: str) -> str:
    try:
        return Path(path).read_text()
    except (OSError, UnicodeDecodeError) as exc:
        logger.error("ldap_tls_cert_unreadable", path=path, error=str(exc))
        raise AuthenticationError("Invalid LDAP configuration") from exc


def build_server_params(config: DirectoryConfiguration) -> ServerParams:
    """Derive connection parameters from a stored configuration.

    Called fresh for every request; the certificate is read synchronously and a
    read failure is fatal for the request.
    """
    scheme = "ldaps" if config.use_tls else "ldap"
    ca_data = None
    if config.use_tls and config.tls_cert_path:
        ca_data = _load_certificate(config.tls_cert_path)

    return ServerParams(
        url=f"{scheme}://{config.host}:{config.port}",
        bind_dn=config.bind_dn,
        bind_credentials=config.bind_credentials,
        search_base=config.base_dn,
        search_filter=config.search_filter,
        use_tls=bool(config.use_tls),
        ca_data=ca_data,
        username_suffix=config.username_suffix or None,
    )


async def resolve_configuration(
    config_id: str | None = None, session_factory=None
) -> tuple[ServerParams, DirectoryConfiguration]:
    """Load the named (or default) directory configuration and build its parameters."""
    session_factory = session_factory or db_module.async_session
    async with session_factory() as session:
        if config_id:
            config = await session.get(DirectoryConfiguration, config_id)
            if config is None:
                raise NotFoundError.for_entity("LDAP configuration", config_id)
        else:
            result = await session.execute(
                select(DirectoryConfiguration).where(DirectoryConfiguration.is_default == True)  # noqa: E712
            )
            config = result.scalars().first()
            if config is None:
                raise NotFoundError("No default LDAP configuration found")

    if not config.is_active:
        logger.warning("ldap_config_inactive", config_name=config.name)
        raise AuthenticationError("LDAP configuration is inactive")

    return build_server_params(config), config


def render_search_filter(template: str, username: str) -> str:
    """Substitute the escaped username into a `{{username}}` or `{username}` filter."""
    escaped = escape_filter_chars(username)
    return template.replace("{{username}}", escaped).replace("{username}", escaped)


def bind_identity(params: ServerParams, username: str, entry_dn: str) -> str:
    """Identity used for the user bind: `username + suffix` when a suffix is set, else the entry DN."""
    if params.username_suffix:
        return f"{username}{params.username_suffix}"
    return entry_dn


def check_configuration(config: DirectoryConfiguration) -> dict:
    """Static sanity check of a configuration (no network traffic)."""
    if not config.is_active:
        return {"success": False, "message": "LDAP configuration is inactive"}

    if not all([config.host, config.port, config.bind_dn, config.bind_credentials, config.base_dn]):
        return {"success": False, "message": "Missing required LDAP configuration parameters"}

    if config.use_tls and config.tls_cert_path:
        path = Path(config.tls_cert_path)
        if not path.is_file():
            return {"success": False, "message": f"Cannot access TLS certificate: {config.tls_cert_path}"}
        try:
            path.read_bytes()
        except OSError as exc:
            return {"success": False, "message": f"Cannot access TLS certificate: {exc}"}

    return {"success": True, "message": "LDAP configuration is valid"}


class DirectoryClient:
    """ldap3-backed bind/search client.

    All ldap3 calls are synchronous and wrapped in asyncio.to_thread().
    """

    def __init__(self, connect_timeout: int | None = None, receive_timeout: int | None = None):
        self._connect_timeout = connect_timeout or settings.ldap_connect_timeout
        self._receive_timeout = receive_timeout or settings.ldap_receive_timeout

    def _get_server(self, params: ServerParams) -> Server:
        tls = None
        if params.use_tls:
            tls = Tls(validate=ssl.CERT_REQUIRED, ca_certs_data=params.ca_data)
        return Server(
            params.url,
            use_ssl=params.use_tls,
            tls=tls,
            connect_timeout=self._connect_timeout,
            get_info=NONE,
        )

    def _connect(self, params: ServerParams, user: str, password: str) -> Connection:
        """Open and bind a connection. Raises LDAPBindError if the bind is refused."""
        conn = Connection(
            self._get_server(params),
            user=user,
            password=password,
            receive_timeout=self._receive_timeout,
        )
        if not conn.bind():
            raise LDAPBindError(f"bind refused for {user}")
        return conn

    async def authenticate(self, params: ServerParams, username: str, password: str) -> dict:
        """Verify credentials with a service bind, user search and user bind.

        Returns the raw entry as an attribute dict with its `dn`.
        """
        if not username or not password:
            raise AuthenticationError("Invalid LDAP credentials")

        def _auth() -> dict:
            try:
                conn = self._connect(params, params.bind_dn, params.bind_credentials)
                conn.search(
                    params.search_base,
                    render_search_filter(params.search_filter, username),
                    search_scope=SUBTREE,
                    attributes=list(params.search_attributes),
                )
                if not conn.entries:
                    logger.debug("ldap_user_not_found", username=username)
                    conn.unbind()
                    raise AuthenticationError("Invalid LDAP credentials")

                entry = conn.entries[0]
                entry_dn = str(entry.entry_dn)
                attributes = dict(entry.entry_attributes_as_dict)
                conn.unbind()

                user_conn = self._connect(params, bind_identity(params, username, entry_dn), password)
                user_conn.unbind()
            except LDAPException as exc:
                logger.warning("ldap_auth_error", username=username, error=str(exc))
                raise AuthenticationError("Invalid LDAP credentials") from exc

            attributes["dn"] = entry_dn
            return attributes

        return await asyncio.to_thread(_auth)

    async def search_entries(self, params: ServerParams, size_limit: int = 5000) -> list[dict]:
        """Return every person entry under the search base."""

        def _search() -> list[dict]:
            try:
                conn = self._connect(params, params.bind_dn, params.bind_credentials)
                conn.search(
                    params.search_base,
                    PERSON_FILTER,
                    search_scope=SUBTREE,
                    attributes=list(params.search_attributes),
                    size_limit=size_limit,
                )
                entries = []
                for entry in conn.entries:
                    attributes = dict(entry.entry_attributes_as_dict)
                    attributes["dn"] = str(entry.entry_dn)
                    entries.append(attributes)
                conn.unbind()
                return entries
            except LDAPException as exc:
                logger.warning("ldap_search_error", search_base=params.search_base, error=str(exc))
                raise

        return await asyncio.to_thread(_search)
