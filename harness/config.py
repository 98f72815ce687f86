"""Harness configuration with YAML support."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import Field

from audit.crypto import generate_master_key
from audit.schemas import AuditLoggerConfig, BaseSchema
from sandbox.policy import ExecutionPolicy

logger = logging.getLogger(__name__)

KEY_ENV_VAR = "SANDBOX_AUDIT_KEY"


class HarnessConfig(BaseSchema):
    """Top-level configuration: sandbox policy, audit logger and key location."""

    sandbox: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    audit: AuditLoggerConfig = Field(default_factory=AuditLoggerConfig)

    # Hex-encoded master key; SANDBOX_AUDIT_KEY takes precedence
    key_file: str = ".audit-key"

    # Attached to every audit event the runner writes
    user_id: str | None = None
    session_id: str | None = None


def load_config(yaml_path: str | Path) -> HarnessConfig:
    """Load harness configuration from YAML file.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        HarnessConfig instance

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValueError: If YAML is invalid or fails validation
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data:
        raise ValueError(f"Empty or invalid YAML file: {yaml_path}")

    try:
        return HarnessConfig.from_dict(data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {yaml_path}: {e}") from e


def save_config(config: HarnessConfig, yaml_path: str | Path) -> None:
    """Save harness configuration to YAML file.

    Args:
        config: HarnessConfig to save
        yaml_path: Path where to save YAML file
    """
    yaml_path = Path(yaml_path)
    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")

    with open(yaml_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)


def _parse_key(value: str, source: str) -> bytes:
    try:
        key = bytes.fromhex(value.strip())
    except ValueError as e:
        raise ValueError(f"Audit key from {source} is not valid hex: {e}") from e
    if not key:
        raise ValueError(f"Audit key from {source} is empty")
    return key


def load_master_key(key_file: str | Path, create: bool = True) -> bytes:
    """Resolve the audit master key.

    Order: the SANDBOX_AUDIT_KEY environment variable, then ``key_file``. When
    neither exists and ``create`` is set, a new random key is written to
    ``key_file`` with mode 0600.

    Raises:
        FileNotFoundError: If no key is available and ``create`` is False
        ValueError: If the key is not valid hex
    """
    value = os.environ.get(KEY_ENV_VAR)
    if value:
        return _parse_key(value, KEY_ENV_VAR)

    key_path = Path(key_file)
    if key_path.exists():
        return _parse_key(key_path.read_text(encoding="utf-8"), str(key_path))

    if not create:
        raise FileNotFoundError(f"Audit key not found: set {KEY_ENV_VAR} or create {key_path}")

    key = generate_master_key()
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(key.hex())
    logger.info("Generated new audit key at %s", key_path)
    return key
