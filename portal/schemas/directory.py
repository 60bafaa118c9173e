from pydantic import BaseModel, Field

# minute hour day-of-month month day-of-week
CRON_PATTERN = (
    r"^(\*|[0-5]?[0-9]|\*/[0-5]?[0-9]) "
    r"(\*|1?[0-9]|2[0-3]|\*/(1?[0-9]|2[0-3])) "
    r"(\*|[1-9]|[12][0-9]|3[01]|\*/([1-9]|[12][0-9]|3[01])) "
    r"(\*|[1-9]|1[0-2]|\*/([1-9]|1[0-2])) "
    r"(\*|[0-6]|\*/[0-6])$"
)


class DirectoryConfigCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    host: str = Field(min_length=1)
    port: int = Field(default=389, ge=1, le=65535)
    base_dn: str = Field(min_length=1)
    bind_dn: str = Field(min_length=1)
    bind_credentials: str = Field(min_length=1)
    search_filter: str = "(sAMAccountName={{username}})"
    is_default: bool = False
    is_active: bool = True
    use_tls: bool = False
    tls_cert_path: str | None = None
    username_suffix: str | None = None
    attribute_map: dict[str, str] = {}
    sync_schedule: str | None = Field(default=None, pattern=CRON_PATTERN)


class DirectoryConfigUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    base_dn: str | None = None
    bind_dn: str | None = None
    bind_credentials: str | None = None
    search_filter: str | None = None
    is_default: bool | None = None
    is_active: bool | None = None
    use_tls: bool | None = None
    tls_cert_path: str | None = None
    username_suffix: str | None = None
    attribute_map: dict[str, str] | None = None
    sync_schedule: str | None = Field(default=None, pattern=CRON_PATTERN)


class DirectoryConfigResponse(BaseModel):
    """Never carries bind credentials."""

    id: str
    name: str
    description: str | None
    host: str
    port: int
    base_dn: str
    bind_dn: str
    search_filter: str
    is_default: bool
    is_active: bool
    use_tls: bool
    tls_cert_path: str | None
    username_suffix: str | None
    attribute_map: dict[str, str]
    sync_schedule: str | None
    created_at: str
    updated_at: str


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
