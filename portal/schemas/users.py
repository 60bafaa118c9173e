from pydantic import BaseModel, Field

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    display_name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    is_active: bool = True


class UserUpdate(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    is_active: bool | None = None


class UserResponse(BaseModel):
    id: str
    username: str
    display_name: str
    email: str | None
    is_active: bool
    last_login_at: str | None
    directory_configuration_id: str | None
    created_at: str
    updated_at: str


class PreferencesUpdate(BaseModel):
    theme: str | None = Field(default=None, min_length=1, max_length=50)
    language: str | None = Field(default=None, min_length=2, max_length=10)
    dashboard_layout: dict | None = None
    notifications: dict | None = None
    module_preferences: dict | None = None


class PreferencesResponse(BaseModel):
    id: str
    user_id: str
    theme: str
    language: str
    dashboard_layout: dict
    notifications: dict
    module_preferences: dict
    updated_at: str
