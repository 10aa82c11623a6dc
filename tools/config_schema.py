#!/usr/bin/env python3
"""
config_schema.py - Config Tables container model and wire codec

Data model for the config tables artifact: field descriptors, sheet and
table schemas, raw sheet data, and the top-level container. Every type
serializes to the protobuf wire format of the lq.config package:

    message Field        { string field_name = 1; uint32 array_length = 2;
                           string pb_type = 3;    uint32 pb_index = 4; }
    message SheetMeta    { string category = 1; string key = 2; }
    message SheetSchema  { string name = 1; SheetMeta meta = 2;
                           repeated Field fields = 3; }
    message TableSchema  { string name = 1; repeated SheetSchema sheets = 2; }
    message SheetData    { string table = 1; string sheet = 2;
                           repeated bytes data = 3; }
    message ConfigTables { string version = 1; string header_hash = 2;
                           repeated TableSchema schemas = 3;
                           repeated SheetData datas = 4; }

Serialization follows proto3 rules: default scalars (empty string, 0) are
omitted and fields are written in field-number order, so the output is
deterministic. SheetSchema.meta is always written. Unknown field numbers
are skipped when parsing.

Header hash:
    SHA-256 hex digest of the schemas as they appear inside ConfigTables
    (each TableSchema written as field 3). Both encoder and decoder call
    compute_header_hash(), never a private copy.

Usage:
    from config_schema import ConfigTables

    container = ConfigTables.from_bytes(artifact_bytes)
    print(container.version, len(container.schemas))
"""

import base64
import binascii
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

from config_errors import InvalidVersion, WireFormatError
from pb_wire import (
    WIRE_LEN, WIRE_VARINT,
    encode_field, encode_string, expect_wire_type, iter_fields, decode_utf8,
)


HASH_ALGORITHM = 'sha256'

VERSION_PATTERN = re.compile(r'\d+\.\d+\.\d+')

# ConfigTables.schemas field number, also used for the hash serialization
SCHEMAS_FIELD = 3


def _uint32(payload: int) -> int:
    return payload & 0xFFFFFFFF


def _read_string(number: int, wire_type: int, payload, what: str) -> str:
    expect_wire_type(number, wire_type, WIRE_LEN, what)
    return decode_utf8(payload, f"{what}.{number}")


def _read_uint32(number: int, wire_type: int, payload, what: str) -> int:
    expect_wire_type(number, wire_type, WIRE_VARINT, what)
    return _uint32(payload)


def _read_message(number: int, wire_type: int, payload, what: str) -> bytes:
    expect_wire_type(number, wire_type, WIRE_LEN, what)
    return payload


def _opt_string(number: int, value: str) -> bytes:
    return encode_string(number, value) if value else b''


def _opt_uint32(number: int, value: int) -> bytes:
    if value < 0 or value > 0xFFFFFFFF:
        raise WireFormatError(f"uint32 field {number} out of range: {value}")
    return encode_field(number, WIRE_VARINT, value) if value else b''


@dataclass(frozen=True)
class Field:
    """One column of a sheet.

    array_length == 0 is a scalar; otherwise the column holds exactly
    array_length values. pb_index is zero-based and maps to protobuf field
    number pb_index + 1 inside a row.
    """
    field_name: str
    array_length: int = 0
    pb_type: str = ''
    pb_index: int = 0

    @property
    def is_array(self) -> bool:
        return self.array_length > 0

    @property
    def field_number(self) -> int:
        return self.pb_index + 1

    def to_bytes(self) -> bytes:
        return b''.join((
            _opt_string(1, self.field_name),
            _opt_uint32(2, self.array_length),
            _opt_string(3, self.pb_type),
            _opt_uint32(4, self.pb_index),
        ))

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Field':
        values = {'field_name': '', 'array_length': 0, 'pb_type': '', 'pb_index': 0}
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                values['field_name'] = _read_string(number, wire_type, payload, 'Field')
            elif number == 2:
                values['array_length'] = _read_uint32(number, wire_type, payload, 'Field')
            elif number == 3:
                values['pb_type'] = _read_string(number, wire_type, payload, 'Field')
            elif number == 4:
                values['pb_index'] = _read_uint32(number, wire_type, payload, 'Field')
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        d = {'name': self.field_name, 'type': self.pb_type, 'index': self.pb_index}
        if self.array_length:
            d['array'] = self.array_length
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any], position: int = 0) -> 'Field':
        """Build from a source dict; `index` defaults to the list position."""
        if 'name' not in d or 'type' not in d:
            raise ValueError(f"Field definition needs 'name' and 'type': {d}")
        return cls(
            field_name=str(d['name']),
            array_length=int(d.get('array', 0) or 0),
            pb_type=str(d['type']),
            pb_index=int(d.get('index', position)),
        )


@dataclass(frozen=True)
class SheetMeta:
    """Lookup metadata: rows are indexed by `key` within `category`."""
    category: str = ''
    key: str = ''

    def to_bytes(self) -> bytes:
        return _opt_string(1, self.category) + _opt_string(2, self.key)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SheetMeta':
        category, key = '', ''
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                category = _read_string(number, wire_type, payload, 'SheetMeta')
            elif number == 2:
                key = _read_string(number, wire_type, payload, 'SheetMeta')
        return cls(category=category, key=key)


@dataclass(frozen=True)
class SheetSchema:
    name: str
    meta: SheetMeta = field(default_factory=SheetMeta)
    fields: Tuple[Field, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'fields', tuple(self.fields))

    def get_field(self, name: str) -> Optional[Field]:
        for f in self.fields:
            if f.field_name == name:
                return f
        return None

    def to_bytes(self) -> bytes:
        parts = [_opt_string(1, self.name),
                 encode_field(2, WIRE_LEN, self.meta.to_bytes())]
        parts.extend(encode_field(3, WIRE_LEN, f.to_bytes()) for f in self.fields)
        return b''.join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SheetSchema':
        name = ''
        meta = SheetMeta()
        fields = []
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                name = _read_string(number, wire_type, payload, 'SheetSchema')
            elif number == 2:
                meta = SheetMeta.from_bytes(_read_message(number, wire_type, payload, 'SheetSchema'))
            elif number == 3:
                fields.append(Field.from_bytes(_read_message(number, wire_type, payload, 'SheetSchema')))
        return cls(name=name, meta=meta, fields=tuple(fields))

    def to_dict(self) -> Dict[str, Any]:
        d = {'name': self.name}
        if self.meta.category:
            d['category'] = self.meta.category
        if self.meta.key:
            d['key'] = self.meta.key
        d['fields'] = [f.to_dict() for f in self.fields]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'SheetSchema':
        if 'name' not in d:
            raise ValueError(f"Sheet definition needs 'name': {d}")
        fields = [Field.from_dict(fd, i) for i, fd in enumerate(d.get('fields', []))]
        meta = SheetMeta(category=str(d.get('category', '') or ''),
                         key=str(d.get('key', '') or ''))
        return cls(name=str(d['name']), meta=meta, fields=tuple(fields))


@dataclass(frozen=True)
class TableSchema:
    """Named group of related sheets."""
    name: str
    sheets: Tuple[SheetSchema, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'sheets', tuple(self.sheets))

    def to_bytes(self) -> bytes:
        parts = [_opt_string(1, self.name)]
        parts.extend(encode_field(2, WIRE_LEN, s.to_bytes()) for s in self.sheets)
        return b''.join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TableSchema':
        name = ''
        sheets = []
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                name = _read_string(number, wire_type, payload, 'TableSchema')
            elif number == 2:
                sheets.append(SheetSchema.from_bytes(
                    _read_message(number, wire_type, payload, 'TableSchema')))
        return cls(name=name, sheets=tuple(sheets))

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'sheets': [s.to_dict() for s in self.sheets]}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'TableSchema':
        if 'name' not in d:
            raise ValueError(f"Table definition needs 'name': {d}")
        return cls(name=str(d['name']),
                   sheets=tuple(SheetSchema.from_dict(s) for s in d.get('sheets', [])))


@dataclass(frozen=True)
class SheetData:
    """Encoded rows of one (table, sheet) pair, in row order."""
    table: str
    sheet: str
    data: Tuple[bytes, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'data', tuple(bytes(d) for d in self.data))

    @property
    def key(self) -> Tuple[str, str]:
        return self.table, self.sheet

    def to_bytes(self) -> bytes:
        parts = [_opt_string(1, self.table), _opt_string(2, self.sheet)]
        parts.extend(encode_field(3, WIRE_LEN, record) for record in self.data)
        return b''.join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'SheetData':
        table, sheet = '', ''
        records = []
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                table = _read_string(number, wire_type, payload, 'SheetData')
            elif number == 2:
                sheet = _read_string(number, wire_type, payload, 'SheetData')
            elif number == 3:
                records.append(_read_message(number, wire_type, payload, 'SheetData'))
        return cls(table=table, sheet=sheet, data=tuple(records))


@dataclass(frozen=True)
class ConfigTables:
    """Top-level artifact: version, schema hash, schemas and row data."""
    version: str = ''
    header_hash: str = ''
    schemas: Tuple[TableSchema, ...] = ()
    datas: Tuple[SheetData, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'schemas', tuple(self.schemas))
        object.__setattr__(self, 'datas', tuple(self.datas))

    def computed_hash(self) -> str:
        return compute_header_hash(self.schemas)

    def to_bytes(self) -> bytes:
        parts = [_opt_string(1, self.version),
                 _opt_string(2, self.header_hash),
                 schemas_to_bytes(self.schemas)]
        parts.extend(encode_field(4, WIRE_LEN, d.to_bytes()) for d in self.datas)
        return b''.join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ConfigTables':
        version, header_hash = '', ''
        schemas = []
        datas = []
        for number, wire_type, payload in iter_fields(data):
            if number == 1:
                version = _read_string(number, wire_type, payload, 'ConfigTables')
            elif number == 2:
                header_hash = _read_string(number, wire_type, payload, 'ConfigTables')
            elif number == SCHEMAS_FIELD:
                schemas.append(TableSchema.from_bytes(
                    _read_message(number, wire_type, payload, 'ConfigTables')))
            elif number == 4:
                datas.append(SheetData.from_bytes(
                    _read_message(number, wire_type, payload, 'ConfigTables')))
        return cls(version=version, header_hash=header_hash,
                   schemas=tuple(schemas), datas=tuple(datas))

    def to_base64(self, url_safe: bool = True) -> str:
        """Encode container to base64 string."""
        binary = self.to_bytes()
        if url_safe:
            return base64.urlsafe_b64encode(binary).decode('ascii').rstrip('=')
        return base64.b64encode(binary).decode('ascii')

    @classmethod
    def from_base64(cls, encoded: str) -> 'ConfigTables':
        """Decode container from base64 string (standard or URL-safe)."""
        encoded = ''.join(encoded.split())
        padding = 4 - (len(encoded) % 4)
        if padding != 4:
            encoded += '=' * padding
        alphabet = None if ('+' in encoded or '/' in encoded) else b'-_'
        try:
            binary = base64.b64decode(encoded, altchars=alphabet, validate=True)
        except binascii.Error as e:
            raise WireFormatError(f"Invalid base64 container: {e}") from e
        return cls.from_bytes(binary)


def schemas_to_bytes(schemas: Iterable[TableSchema]) -> bytes:
    """Canonical serialization of a schema list (ConfigTables field 3)."""
    return b''.join(encode_field(SCHEMAS_FIELD, WIRE_LEN, t.to_bytes()) for t in schemas)


def compute_header_hash(schemas: Iterable[TableSchema]) -> str:
    """Compute the header hash for a schema list."""
    return hashlib.new(HASH_ALGORITHM, schemas_to_bytes(schemas)).hexdigest()


def validate_version(version: str) -> str:
    """Check `version` is x.y.z text."""
    if not isinstance(version, str) or not VERSION_PATTERN.fullmatch(version):
        raise InvalidVersion(f"Version must be x.y.z, got {version!r}")
    return version
