from tenantguard.services.crypto.column import ColumnCipher, EncryptedValue
from tenantguard.services.crypto.keyring import KeyRegistry
from tenantguard.services.crypto.rotation import (
    RotationReport,
    SqlColumnSource,
    count_rows_on_version,
    retire_after_sweep,
    rotate_column,
)

__all__ = [
    "ColumnCipher",
    "EncryptedValue",
    "KeyRegistry",
    "RotationReport",
    "SqlColumnSource",
    "count_rows_on_version",
    "retire_after_sweep",
    "rotate_column",
]
