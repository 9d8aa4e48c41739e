"""Pydantic schemas for application settings and directory configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from console_identity.exceptions import ConfigurationError

from .constants import (
    DEFAULT_BCRYPT_ROUNDS,
    DEFAULT_BIND_FORMATS,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DB_PATH,
    DEFAULT_LDAP_PORT,
    DEFAULT_LDAPS_PORT,
    DEFAULT_NON_HUMAN_OBJECT_CLASSES,
    DEFAULT_OPERATION_TIMEOUT,
    DEFAULT_PAGE_SIZE,
    DEFAULT_TOKEN_ISSUER,
)

BIND_FORMATS = frozenset({"search", "upn", "down_level", "rdn"})


class DirectoryConfig(BaseModel):
    """Directory connection settings, read-only at call time."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    enabled: bool = False
    host: str = ""
    port: int | None = Field(default=None, ge=1, le=65535)
    use_tls: bool = False
    base_dn: str = ""
    bind_dn: str = ""
    bind_password: str = Field(default="", repr=False)
    user_filter: str = "(objectClass=person)"
    group_filter: str = "(objectClass=group)"
    login_attribute: str = "sAMAccountName"
    display_name_attribute: str = "displayName"
    email_attribute: str = "mail"
    group_name_attribute: str = "cn"
    group_member_attribute: str = "member"
    member_of_attribute: str = "memberOf"
    non_human_object_classes: tuple[str, ...] = DEFAULT_NON_HUMAN_OBJECT_CLASSES
    bind_formats: tuple[str, ...] = DEFAULT_BIND_FORMATS
    connect_timeout: float = Field(default=DEFAULT_CONNECT_TIMEOUT, gt=0, le=300)
    operation_timeout: float = Field(default=DEFAULT_OPERATION_TIMEOUT, gt=0, le=600)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=5000)

    @field_validator("non_human_object_classes", "bind_formats", mode="before")
    @classmethod
    def _split_lists(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return value

    @field_validator("user_filter", "group_filter")
    @classmethod
    def _validate_filter(cls, value: str) -> str:
        value = value.strip()
        if not (value.startswith("(") and value.endswith(")")):
            raise ValueError("LDAP filters must be enclosed in parentheses")
        return value

    @field_validator("bind_formats")
    @classmethod
    def _validate_bind_formats(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = [fmt for fmt in value if fmt not in BIND_FORMATS]
        if unknown:
            raise ValueError(f"Unknown bind formats: {', '.join(unknown)}")
        if not value:
            raise ValueError("At least one bind format is required")
        return value

    @property
    def effective_port(self) -> int:
        if self.port:
            return self.port
        return DEFAULT_LDAPS_PORT if self.use_tls else DEFAULT_LDAP_PORT

    @property
    def server_url(self) -> str:
        scheme = "ldaps" if self.use_tls else "ldap"
        return f"{scheme}://{self.host}:{self.effective_port}"

    @property
    def has_service_account(self) -> bool:
        return bool(self.bind_dn and self.bind_password)

    def require_enabled(self) -> DirectoryConfig:
        """Return self, or raise ConfigurationError when unusable."""
        if not self.enabled:
            raise ConfigurationError("Directory integration is disabled", field="enabled")
        if not self.host:
            raise ConfigurationError("Directory host is not configured", field="host")
        if not self.base_dn:
            raise ConfigurationError("Directory base DN is not configured", field="base_dn")
        return self


class DatabaseSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    path: str = Field(default=DEFAULT_DB_PATH, min_length=1)


class AuthSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    bcrypt_rounds: int = Field(default=DEFAULT_BCRYPT_ROUNDS, ge=4, le=31)
    token_secret: str = Field(..., min_length=16, repr=False)
    token_issuer: str = Field(default=DEFAULT_TOKEN_ISSUER, min_length=1)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")
    level: str = Field(default="INFO")

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth: AuthSettings
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    directory: DirectoryConfig = Field(default_factory=DirectoryConfig)
