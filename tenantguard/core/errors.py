from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for tenantguard."""


class ConfigurationError(TenantGuardError):
    """Missing or invalid security configuration."""


class KeyResolutionError(ConfigurationError):
    """No key-encryption key is provisioned for the requested version."""

    def __init__(self, version: str, message: str | None = None) -> None:
        self.version = version
        super().__init__(message or f"Missing KEK for version {version}")


class RetiredKeyError(KeyResolutionError):
    """The KEK version was retired; values still on it can no longer be decrypted."""

    def __init__(self, version: str) -> None:
        super().__init__(version, f"KEK version {version} is retired")


class CiphertextIntegrityError(TenantGuardError):
    """Encrypted value is malformed or failed authentication."""


class StoreUnavailableError(TenantGuardError):
    """Backing store timed out or failed; safe to retry."""

    retryable = True

    def __init__(self, *, store: str, operation: str, message: str | None = None) -> None:
        self.store = store
        self.operation = operation
        super().__init__(message or f"{store} unavailable during {operation}")


class AuditWriteError(TenantGuardError):
    """Audit entry could not be persisted in synchronous mode."""


class AuditImmutableError(TenantGuardError):
    """Audit rows are append-only; updates and deletes are rejected."""


class EvidenceNotFoundError(TenantGuardError):
    """Evidence artifact or its stored bytes are missing."""


class EvidenceIntegrityError(TenantGuardError):
    """Stored evidence bytes no longer match the recorded hash."""

    def __init__(self, *, artifact_id: str, expected: str, actual: str) -> None:
        self.artifact_id = artifact_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"hash mismatch for evidence {artifact_id}")
