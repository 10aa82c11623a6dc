#!/usr/bin/env python3
"""
field_types.py - Field type registry and row record codec

A sheet row is a protobuf message whose fields are located by the schema:
field number = pb_index + 1. pb_type names a codec looked up in a
TypeRegistry, so producers can introduce new type names without touching
the engine:

    registry = create_registry()
    registry.register_struct('Reward', [
        Field('item_id', pb_type='uint32', pb_index=0),
        Field('count', pb_type='uint32', pb_index=1),
    ])

Built-in types (protobuf scalars):
    Varint:  int32 int64 uint32 uint64 sint32 sint64 bool
    Fixed:   fixed32 sfixed32 float (4 bytes), fixed64 sfixed64 double (8 bytes)
    Length:  string bytes, plus registered struct types (nested messages)
    Aliases: int -> int32, uint -> uint32, long -> int64, ulong -> uint64

Arrays (array_length = n) are repeated fields holding exactly n values.
Numeric arrays are written packed and accepted packed or unpacked.
Every scalar is written explicitly, including zero values, so a missing
value can be told apart from a default one.
"""

import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config_errors import (
    ConfigTablesError, DuplicateFieldIndex, DuplicateFieldName,
    InvalidFieldValue, OversizedArray, TruncatedRecord, UnknownFieldType,
    WireFormatError,
)
from config_schema import Field
from pb_wire import (
    MAX_FIELD_NUMBER, WIRE_I32, WIRE_I64, WIRE_LEN, WIRE_TYPE_NAMES, WIRE_VARINT,
    Payload, decode_utf8, decode_zigzag, encode_field, encode_packed,
    encode_zigzag, iter_fields, iter_packed, to_signed,
)


class FieldCodec:
    """Converts between a Python value and a protobuf field payload."""

    name = ''
    wire_type = WIRE_VARINT

    @property
    def packable(self) -> bool:
        return self.wire_type != WIRE_LEN

    def decode(self, payload: Payload) -> Any:
        raise NotImplementedError

    def encode(self, value: Any) -> Payload:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def _require_int(value: Any, type_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{type_name} expects int, got {type(value).__name__}")
    return value


class IntCodec(FieldCodec):
    """Varint integers: plain, two's complement signed, or zigzag."""

    wire_type = WIRE_VARINT

    def __init__(self, name: str, bits: int, signed: bool, zigzag: bool = False):
        self.name = name
        self.bits = bits
        self.signed = signed
        self.zigzag = zigzag
        if signed:
            self.min_value = -(1 << (bits - 1))
            self.max_value = (1 << (bits - 1)) - 1
        else:
            self.min_value = 0
            self.max_value = (1 << bits) - 1

    def decode(self, payload: int) -> int:
        if self.zigzag:
            return to_signed(decode_zigzag(payload), self.bits)
        if self.signed:
            return to_signed(payload, self.bits)
        return payload & self.max_value

    def encode(self, value: Any) -> int:
        value = _require_int(value, self.name)
        if not self.min_value <= value <= self.max_value:
            raise ValueError(f"{self.name} value out of range: {value}")
        if self.zigzag:
            return encode_zigzag(value)
        return value


class BoolCodec(FieldCodec):
    name = 'bool'
    wire_type = WIRE_VARINT

    def decode(self, payload: int) -> bool:
        return payload != 0

    def encode(self, value: Any) -> int:
        if not isinstance(value, bool):
            raise ValueError(f"bool expects bool, got {type(value).__name__}")
        return int(value)


class FixedCodec(FieldCodec):
    """Fixed-width little-endian values (fixed32, sfixed64, float, ...).

    `float` is IEEE-754 single precision: a Python float is rounded to the
    nearest float32 on encode, so 0.1 decodes as 0.10000000149011612. Only
    values a float32 holds exactly survive a round trip unchanged; use
    `double` when full precision matters.
    """

    def __init__(self, name: str, fmt: str, floating: bool = False):
        self.name = name
        self.fmt = fmt
        self.floating = floating
        self.wire_type = WIRE_I32 if struct.calcsize(fmt) == 4 else WIRE_I64

    def decode(self, payload: bytes) -> Any:
        return struct.unpack(self.fmt, payload)[0]

    def encode(self, value: Any) -> bytes:
        if self.floating:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{self.name} expects float, got {type(value).__name__}")
            value = float(value)
        else:
            value = _require_int(value, self.name)
        try:
            return struct.pack(self.fmt, value)
        except (struct.error, OverflowError) as e:
            raise ValueError(f"{self.name} cannot encode {value!r}: {e}") from e


class StringCodec(FieldCodec):
    name = 'string'
    wire_type = WIRE_LEN

    def decode(self, payload: bytes) -> str:
        return decode_utf8(payload)

    def encode(self, value: Any) -> bytes:
        if not isinstance(value, str):
            raise ValueError(f"string expects str, got {type(value).__name__}")
        return value.encode('utf-8')


class BytesCodec(FieldCodec):
    name = 'bytes'
    wire_type = WIRE_LEN

    def decode(self, payload: bytes) -> bytes:
        return bytes(payload)

    def encode(self, value: Any) -> bytes:
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError(f"bytes expects bytes, got {type(value).__name__}")
        return bytes(value)


@dataclass(frozen=True)
class StructType:
    """Named nested message type built from field descriptors."""
    name: str
    fields: Tuple[Field, ...]


class StructCodec(FieldCodec):
    """Nested struct value, encoded as a length-delimited message."""

    wire_type = WIRE_LEN

    def __init__(self, struct_type: StructType, registry: 'TypeRegistry'):
        self.struct_type = struct_type
        self.name = struct_type.name
        self.registry = registry
        self._layout = None

    @property
    def layout(self) -> 'RecordLayout':
        # Built on first use so struct types may reference each other
        if self._layout is None:
            self._layout = RecordLayout(self.struct_type.fields, self.registry)
        return self._layout

    def decode(self, payload: bytes) -> Dict[str, Any]:
        return self.layout.decode(payload)

    def encode(self, value: Any) -> bytes:
        if not isinstance(value, Mapping):
            raise ValueError(f"struct {self.name} expects a mapping, got {type(value).__name__}")
        return self.layout.encode(value)


class TypeRegistry:
    """Maps pb_type names to field codecs."""

    def __init__(self):
        self._codecs: Dict[str, FieldCodec] = {}

    def register(self, codec: FieldCodec, name: Optional[str] = None,
                 replace: bool = False) -> FieldCodec:
        name = name or codec.name
        if not name:
            raise ValueError("Codec needs a type name")
        if name in self._codecs and not replace:
            raise ValueError(f"Type already registered: {name}")
        self._codecs[name] = codec
        return codec

    def register_alias(self, alias: str, name: str) -> None:
        self.register(self.get(name), alias)

    def register_struct(self, name: str, fields: Iterable[Field],
                        replace: bool = False) -> StructType:
        struct_type = StructType(name=name, fields=tuple(fields))
        self.register(StructCodec(struct_type, self), replace=replace)
        return struct_type

    def get(self, name: str) -> FieldCodec:
        try:
            return self._codecs[name]
        except KeyError:
            raise UnknownFieldType(f"Unknown field type: {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._codecs

    def names(self) -> List[str]:
        return sorted(self._codecs)

    def copy(self) -> 'TypeRegistry':
        """Independent registry; struct codecs are rebound to the copy."""
        other = TypeRegistry()
        for name, codec in self._codecs.items():
            if isinstance(codec, StructCodec):
                codec = StructCodec(codec.struct_type, other)
            other._codecs[name] = codec
        return other


def create_registry() -> TypeRegistry:
    """Registry populated with the protobuf scalar types."""
    registry = TypeRegistry()
    for codec in (
        IntCodec('int32', 32, signed=True),
        IntCodec('int64', 64, signed=True),
        IntCodec('uint32', 32, signed=False),
        IntCodec('uint64', 64, signed=False),
        IntCodec('sint32', 32, signed=True, zigzag=True),
        IntCodec('sint64', 64, signed=True, zigzag=True),
        BoolCodec(),
        FixedCodec('fixed32', '<I'),
        FixedCodec('fixed64', '<Q'),
        FixedCodec('sfixed32', '<i'),
        FixedCodec('sfixed64', '<q'),
        FixedCodec('float', '<f', floating=True),
        FixedCodec('double', '<d', floating=True),
        StringCodec(),
        BytesCodec(),
    ):
        registry.register(codec)

    for alias, name in (('int', 'int32'), ('uint', 'uint32'),
                        ('long', 'int64'), ('ulong', 'uint64')):
        registry.register_alias(alias, name)
    return registry


DEFAULT_REGISTRY = create_registry()


class RecordLayout:
    """
    Compiled field layout for one sheet (or struct type).

    Validates the field list up front (unique pb_index, unique names,
    registered types) and then encodes/decodes records against it. Fields
    are processed in ascending pb_index order, which is also the key order
    of decoded rows.
    """

    def __init__(self, fields: Iterable[Field], registry: TypeRegistry,
                 table: Optional[str] = None, sheet: Optional[str] = None):
        self.table = table
        self.sheet = sheet
        self.fields = tuple(sorted(fields, key=lambda f: f.pb_index))
        self._slots: List[Tuple[Field, FieldCodec]] = []
        self._by_number: Dict[int, Tuple[Field, FieldCodec]] = {}
        names = set()

        for f in self.fields:
            if f.field_name in names:
                raise self._error(DuplicateFieldName,
                                  f"Duplicate field name {f.field_name!r}", f.field_name)
            names.add(f.field_name)
            if f.field_number in self._by_number:
                other = self._by_number[f.field_number][0].field_name
                raise self._error(DuplicateFieldIndex,
                                  f"pb_index {f.pb_index} already used by {other!r}",
                                  f.field_name)
            if f.field_number > MAX_FIELD_NUMBER:
                raise self._error(WireFormatError,
                                  f"pb_index out of range: {f.pb_index}", f.field_name)
            if f.pb_type not in registry:
                raise self._error(UnknownFieldType,
                                  f"Unknown field type: {f.pb_type!r}", f.field_name)
            slot = (f, registry.get(f.pb_type))
            self._slots.append(slot)
            self._by_number[f.field_number] = slot
        self.names = frozenset(names)

    def _error(self, cls, message: str, field: Optional[str] = None,
               row: Optional[int] = None) -> ConfigTablesError:
        return cls(message, table=self.table, sheet=self.sheet, field=field, row=row)

    def _locate(self, error: ConfigTablesError, field: Optional[str],
                row: Optional[int]) -> ConfigTablesError:
        """Attach this layout's location to an error raised without one.

        Errors from nested structs keep their field name as a dotted suffix.
        """
        if error.table is not None or error.sheet is not None:
            return error
        if field is None:
            field = error.field
        elif error.field is not None and error.field != field:
            field = f"{field}.{error.field}"
        if row is None:
            row = error.row
        return self._error(type(error), error.detail, field, row)

    def get_field(self, name: str) -> Optional[Field]:
        for f, _ in self._slots:
            if f.field_name == name:
                return f
        return None

    def get_codec(self, name: str) -> Optional[FieldCodec]:
        for f, codec in self._slots:
            if f.field_name == name:
                return codec
        return None

    def check_structs(self, seen: Optional[set] = None) -> None:
        """Compile every nested struct layout now so its errors surface early.

        Struct types already visited are skipped, which also stops
        self-referencing types from recursing.
        """
        seen = set() if seen is None else seen
        for f, codec in self._slots:
            if not isinstance(codec, StructCodec) or codec.name in seen:
                continue
            seen.add(codec.name)
            try:
                codec.layout.check_structs(seen)
            except ConfigTablesError as e:
                located = self._locate(e, f.field_name, None)
                if located is e:
                    raise
                raise located from e

    def decode(self, data: bytes, row: Optional[int] = None) -> Dict[str, Any]:
        """Decode one record into a dict keyed by field name."""
        found: Dict[int, list] = {f.field_number: [] for f, _ in self._slots}
        current = None
        try:
            for number, wire_type, payload in iter_fields(data):
                slot = self._by_number.get(number)
                if slot is None:
                    current = None
                    continue
                f, codec = slot
                current = f.field_name
                if wire_type == codec.wire_type:
                    found[number].append(codec.decode(payload))
                elif f.is_array and codec.packable and wire_type == WIRE_LEN:
                    found[number].extend(codec.decode(item)
                                         for item in iter_packed(payload, codec.wire_type))
                else:
                    raise WireFormatError(
                        f"Expected wire type {WIRE_TYPE_NAMES[codec.wire_type]} "
                        f"for {f.pb_type}, got {WIRE_TYPE_NAMES.get(wire_type, wire_type)}")
        except ConfigTablesError as e:
            located = self._locate(e, current, row)
            if located is e:
                raise
            raise located from e

        result = {}
        for f, _ in self._slots:
            values = found[f.field_number]
            if not f.is_array:
                if not values:
                    raise self._error(TruncatedRecord,
                                      f"Missing value for pb_index {f.pb_index}",
                                      f.field_name, row)
                result[f.field_name] = values[-1]
                continue
            if len(values) < f.array_length:
                raise self._error(TruncatedRecord,
                                  f"Array needs {f.array_length} values, found {len(values)}",
                                  f.field_name, row)
            if len(values) > f.array_length:
                raise self._error(OversizedArray,
                                  f"Array holds {len(values)} values, declared {f.array_length}",
                                  f.field_name, row)
            result[f.field_name] = values
        return result

    def encode(self, values: Mapping, row: Optional[int] = None) -> bytes:
        """Encode a row mapping into record bytes."""
        if not isinstance(values, Mapping):
            raise self._error(InvalidFieldValue,
                              f"Row must be a mapping, got {type(values).__name__}", row=row)
        unknown = [name for name in values if name not in self.names]
        if unknown:
            raise self._error(InvalidFieldValue,
                              f"Row has fields not in schema: {sorted(map(str, unknown))}",
                              row=row)

        out = bytearray()
        for f, codec in self._slots:
            if f.field_name not in values:
                raise self._error(TruncatedRecord, "Missing value", f.field_name, row)
            value = values[f.field_name]

            if not f.is_array:
                out.extend(encode_field(f.field_number, codec.wire_type,
                                        self._encode_value(codec, value, f, row)))
                continue

            if not isinstance(value, (list, tuple)):
                raise self._error(InvalidFieldValue,
                                  f"Array field expects a list, got {type(value).__name__}",
                                  f.field_name, row)
            if len(value) < f.array_length:
                raise self._error(TruncatedRecord,
                                  f"Array needs {f.array_length} values, got {len(value)}",
                                  f.field_name, row)
            if len(value) > f.array_length:
                raise self._error(OversizedArray,
                                  f"Array holds {len(value)} values, declared {f.array_length}",
                                  f.field_name, row)
            payloads = [self._encode_value(codec, item, f, row) for item in value]
            if codec.packable:
                out.extend(encode_packed(f.field_number, codec.wire_type, payloads))
            else:
                for payload in payloads:
                    out.extend(encode_field(f.field_number, codec.wire_type, payload))
        return bytes(out)

    def _encode_value(self, codec: FieldCodec, value: Any, f: Field,
                      row: Optional[int]) -> Payload:
        try:
            return codec.encode(value)
        except ConfigTablesError as e:
            located = self._locate(e, f.field_name, row)
            if located is e:
                raise
            raise located from e
        except (TypeError, ValueError) as e:
            raise self._error(InvalidFieldValue, str(e), f.field_name, row) from e
