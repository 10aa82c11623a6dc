"""
config_errors.py - Error taxonomy for config table encoding/decoding

Every structural problem found while reading or writing a config tables
container is raised as a subclass of ConfigTablesError. The location
(table, sheet, field, row) travels with the exception so a caller can
report it without re-parsing the artifact.
"""

from typing import Optional


class ConfigTablesError(ValueError):
    """Base error for config tables operations."""

    def __init__(self, message: str, table: Optional[str] = None,
                 sheet: Optional[str] = None, field: Optional[str] = None,
                 row: Optional[int] = None):
        self.table = table
        self.sheet = sheet
        self.field = field
        self.row = row
        self.detail = message
        super().__init__(self._format(message))

    @property
    def location(self) -> str:
        parts = []
        if self.table is not None or self.sheet is not None:
            parts.append(f"{self.table or '?'}/{self.sheet or '?'}")
        if self.row is not None:
            parts.append(f"row {self.row}")
        if self.field is not None:
            parts.append(f"field '{self.field}'")
        return ' '.join(parts)

    def _format(self, message: str) -> str:
        location = self.location
        if location:
            return f"{location}: {message}"
        return message


class SchemaHashMismatch(ConfigTablesError):
    """Recomputed schema digest differs from the declared header hash."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Schema hash mismatch: header declares {expected!r}, "
            f"schemas hash to {actual!r}")


class DuplicateTable(ConfigTablesError):
    pass


class DuplicateSheet(ConfigTablesError):
    pass


class UnknownSheet(ConfigTablesError):
    pass


class DuplicateFieldIndex(ConfigTablesError):
    pass


class DuplicateFieldName(ConfigTablesError):
    pass


class UnknownFieldType(ConfigTablesError):
    pass


class TruncatedRecord(ConfigTablesError):
    """A record holds fewer values than its schema requires."""
    pass


class OversizedArray(ConfigTablesError):
    """An array field holds more values than its declared length."""
    pass


class KeyFieldMissing(ConfigTablesError):
    pass


class InvalidFieldValue(ConfigTablesError):
    pass


class InvalidVersion(ConfigTablesError):
    pass


class WireFormatError(ConfigTablesError):
    """Malformed protobuf wire data."""
    pass
