"""
Audit Module

Encrypted, tamper-evident audit trail.

This module provides:
- Per-event PBKDF2 key derivation with AES-256-GCM (AES-256-CBC fallback)
- Optional gzip compression of large events
- HMAC-SHA256 integrity tags verified on read
- Size-based file rotation and count-based retention
- Ordered, durable writes through a single writer task
"""

__version__ = "0.1.0"

from .crypto import EnvelopeCipher, generate_master_key
from .errors import AuditError, AuditIOError, AuthenticationFailed, DecryptionError, IntegrityFailure
from .integrity import IntegrityChecker
from .logger import EncryptedAuditLogger, normalize_event
from .reader import AuditLogReader, VerificationReport
from .schemas import (
    AuditCategory,
    AuditEvent,
    AuditLevel,
    AuditLoggerConfig,
    EncryptedEnvelope,
    LogEntry,
    LogHeader,
)

__all__ = [
    "AuditCategory",
    "AuditError",
    "AuditEvent",
    "AuditIOError",
    "AuditLevel",
    "AuditLogReader",
    "AuditLoggerConfig",
    "AuthenticationFailed",
    "DecryptionError",
    "EncryptedAuditLogger",
    "EncryptedEnvelope",
    "EnvelopeCipher",
    "IntegrityChecker",
    "IntegrityFailure",
    "LogEntry",
    "LogHeader",
    "VerificationReport",
    "generate_master_key",
    "normalize_event",
]
