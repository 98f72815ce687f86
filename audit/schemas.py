from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

FORMAT_VERSION = "1.0"
GCM_ALGORITHM = "aes-256-gcm"
CBC_ALGORITHM = "aes-256-cbc"
KEY_DERIVATION = "pbkdf2-sha256"
INTEGRITY_ALGORITHM = "hmac-sha256"


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


TBaseSchema = TypeVar("TBaseSchema", bound="BaseSchema")


class BaseSchema(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, object]:
        return self.model_dump()

    @classmethod
    def from_json(cls: type[TBaseSchema], data: str | bytes) -> TBaseSchema:
        return cls.model_validate_json(data)

    @classmethod
    def from_dict(cls: type[TBaseSchema], data: Mapping[str, object]) -> TBaseSchema:
        return cls.model_validate(data)


class AuditLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditCategory(str, Enum):
    GENERAL = "GENERAL"
    SYSTEM = "SYSTEM"
    SECURITY = "SECURITY"
    EXECUTION = "EXECUTION"


class AuditEvent(BaseSchema):
    """One structured audit record. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: str = AuditLevel.INFO.value
    category: str = AuditCategory.GENERAL.value
    action: str = "UNKNOWN"
    user_id: str | None = None
    session_id: str | None = None
    source: str = "sandbox-runner"
    details: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def timestamp_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @field_validator("level", "category", mode="before")
    @classmethod
    def enum_to_value(cls, value: object) -> object:
        if isinstance(value, Enum):
            return value.value
        return value


class EncryptedEnvelope(BaseSchema):
    """Salt, IV and ciphertext of one encryption operation, base64 encoded."""

    salt: str
    iv: str
    algorithm: str
    data: str
    iterations: int
    auth_tag: str | None = None
    aad: str | None = None

    def canonical_bytes(self) -> bytes:
        payload = self.model_dump(exclude_none=True)
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class LogEntry(BaseSchema):
    timestamp: str
    encrypted: bool = True
    compressed: bool = False
    data: EncryptedEnvelope
    integrity: str | None = None

    def to_line(self) -> bytes:
        return (self.model_dump_json() + "\n").encode("utf-8")


class EncryptionInfo(BaseSchema):
    algorithm: str = GCM_ALGORITHM
    key_derivation: str = KEY_DERIVATION
    iterations: int = 10000


class CompressionInfo(BaseSchema):
    enabled: bool = True
    level: int = 6
    threshold: int = 1024


class IntegrityInfo(BaseSchema):
    enabled: bool = True
    algorithm: str = INTEGRITY_ALGORITHM


class LogHeader(BaseSchema):
    version: str = FORMAT_VERSION
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pid: int
    hostname: str
    encryption: EncryptionInfo = Field(default_factory=EncryptionInfo)
    compression: CompressionInfo = Field(default_factory=CompressionInfo)
    integrity: IntegrityInfo = Field(default_factory=IntegrityInfo)

    def to_line(self) -> bytes:
        return (self.model_dump_json() + "\n").encode("utf-8")


class AuditLoggerConfig(BaseSchema):
    log_dir: str = ".audit-logs"
    algorithm: Literal["aes-256-gcm", "aes-256-cbc"] = GCM_ALGORITHM
    kdf_iterations: int = Field(default=10000, ge=1000)
    salt_length: int = Field(default=16, ge=16)
    enable_compression: bool = True
    compression_level: int = Field(default=6, ge=1, le=9)
    compression_threshold: int = Field(default=1024, ge=0)
    enable_integrity_check: bool = True
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1)
    max_files: int = Field(default=10, ge=1)
    check_interval: float = Field(default=60.0, gt=0, description="Seconds between rotation checks")
    shutdown_timeout: float = Field(default=30.0, gt=0, description="Seconds destroy() waits for queued writes")
    sync_writes: bool = True
    source: str = "sandbox-runner"
