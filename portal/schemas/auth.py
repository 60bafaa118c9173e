from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serialized with camelCase keys; accepts camelCase or snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    username: str
    password: str


class LdapLoginRequest(LoginRequest):
    directory_configuration_id: str | None = None


class AuthToken(CamelModel):
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int


class AuthResponse(CamelModel):
    success: bool = True
    token: AuthToken
    user_id: str
    username: str
    display_name: str | None = None
    email: str | None = None
    roles: list[str] = []


class TokenRefreshRequest(CamelModel):
    refresh_token: str


class TokenRefreshResponse(CamelModel):
    success: bool = True
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int


class ProfileResponse(CamelModel):
    sub: str
    username: str | None = None
    email: str | None = None
    roles: list[str] = []
