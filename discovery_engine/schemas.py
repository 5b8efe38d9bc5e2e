"""Configuration payload models.

Credentials are never stored inline: every credential field holds the *name* of a
secret that is resolved at call time.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MAX_STATIC_PAYLOAD_BYTES = 10 * 1024


class ProtocolType(str, Enum):
    """Supported remote location protocols."""

    FTP = "ftp"
    HTTPS = "https"
    OBJECT_STORAGE = "object_storage"


class HttpsAuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class ObjectStorageAuthType(str, Enum):
    MANAGED_IDENTITY = "managed_identity"
    ACCESS_KEY = "access_key"


class FtpSettings(BaseModel):
    """FTP/FTPS connection settings."""

    model_config = ConfigDict(extra="forbid")

    protocol: Literal["ftp"] = "ftp"
    server: str = Field(min_length=1, max_length=255)
    port: int = Field(default=21, ge=1, le=65535)
    username: str = Field(min_length=1, max_length=255)
    password_secret_name: str = Field(min_length=1, max_length=255)
    use_tls: bool = True
    passive_mode: bool = True
    connection_timeout_seconds: float = Field(default=30.0, gt=0, le=300)


class HttpsSettings(BaseModel):
    """HTTPS endpoint settings."""

    model_config = ConfigDict(extra="forbid")

    protocol: Literal["https"] = "https"
    base_url: str = Field(min_length=1, max_length=2048)
    auth_type: HttpsAuthType = HttpsAuthType.NONE
    username: Optional[str] = None
    password_secret_name: Optional[str] = None
    token_secret_name: Optional[str] = None
    api_key_secret_name: Optional[str] = None
    api_key_header: str = "X-API-Key"
    follow_redirects: bool = True
    max_redirects: int = Field(default=3, ge=0, le=10)
    listing_mode: Literal["probe", "json_index"] = "probe"
    connection_timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    @field_validator("base_url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        if not value.lower().startswith("https://"):
            raise ValueError("base_url must start with https://")
        return value

    @model_validator(mode="after")
    def _require_auth_secrets(self) -> "HttpsSettings":
        if self.auth_type == HttpsAuthType.BASIC and not (
            self.username and self.password_secret_name
        ):
            raise ValueError("basic auth requires username and password_secret_name")
        if self.auth_type == HttpsAuthType.BEARER and not self.token_secret_name:
            raise ValueError("bearer auth requires token_secret_name")
        if self.auth_type == HttpsAuthType.API_KEY and not self.api_key_secret_name:
            raise ValueError("api_key auth requires api_key_secret_name")
        return self


class ObjectStorageSettings(BaseModel):
    """S3-compatible object storage settings."""

    model_config = ConfigDict(extra="forbid")

    protocol: Literal["object_storage"] = "object_storage"
    endpoint: str = Field(min_length=1, max_length=255)
    bucket: str = Field(min_length=3, max_length=63)
    prefix: str = ""
    region: Optional[str] = None
    secure: bool = True
    auth_type: ObjectStorageAuthType = ObjectStorageAuthType.MANAGED_IDENTITY
    access_key_secret_name: Optional[str] = None
    secret_key_secret_name: Optional[str] = None

    @model_validator(mode="after")
    def _require_keys(self) -> "ObjectStorageSettings":
        if self.auth_type == ObjectStorageAuthType.ACCESS_KEY and not (
            self.access_key_secret_name and self.secret_key_secret_name
        ):
            raise ValueError(
                "access_key auth requires access_key_secret_name and secret_key_secret_name"
            )
        return self


ProtocolSettings = Annotated[
    Union[FtpSettings, HttpsSettings, ObjectStorageSettings],
    Field(discriminator="protocol"),
]


class NotificationTarget(BaseModel):
    """An event or command to dispatch for every newly discovered file."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["event", "command"] = "event"
    message_type: str = Field(min_length=1, max_length=200)
    destination: str = Field(min_length=1, max_length=2048)
    static_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("static_payload")
    @classmethod
    def _limit_payload(cls, value: dict[str, Any]) -> dict[str, Any]:
        if len(json.dumps(value, default=str).encode("utf-8")) > MAX_STATIC_PAYLOAD_BYTES:
            raise ValueError("static_payload must not exceed 10 KB when serialized")
        return value


class Schedule(BaseModel):
    cron_expression: str
    timezone: str = "UTC"


class ConfigurationPayload(BaseModel):
    """Full-replace shape of a file check configuration."""

    id: str = Field(default_factory=lambda: str(uuid4()), max_length=64)
    tenant_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    protocol_settings: ProtocolSettings
    path_pattern: str = Field(default="", max_length=500)
    name_pattern: str = Field(min_length=1, max_length=255)
    file_extension: Optional[str] = Field(default=None, max_length=20)
    schedule: Schedule
    notification_targets: list[NotificationTarget] = Field(min_length=1)
    is_active: bool = True

    @property
    def protocol(self) -> ProtocolType:
        return ProtocolType(self.protocol_settings.protocol)

    @field_validator("file_extension")
    @classmethod
    def _normalize_extension(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lstrip(".")
        return value or None
