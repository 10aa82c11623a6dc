#!/usr/bin/env python3
"""
config_source.py - YAML source documents for config tables

A source document holds everything needed to build an artifact: the
version, optional struct types, and per-sheet schemas with their rows.

    version: 1.0.0
    types:
      Reward:
        - {name: item_id, type: uint32, index: 0}
        - {name: count, type: uint32, index: 1}
    tables:
      - name: Item
        sheets:
          - name: Item
            category: item
            key: id
            fields:
              - {name: id, type: int32, index: 0}
              - {name: name, type: string, index: 1}
              - {name: tags, type: string, index: 2, array: 3}
            rows:
              - {id: 1001, name: Sword, tags: [melee, rare, epic]}

Field `index` defaults to the field's position in the list and `array`
defaults to 0 (scalar). Binary values use the YAML !!binary tag.

The same layout is produced by export_source(), so a decoded artifact can
be dumped, edited and rebuilt.
"""

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from config_schema import Field, TableSchema
from config_decoder import LoadedTables
from field_types import DEFAULT_REGISTRY, TypeRegistry


@dataclass
class ConfigSource:
    """Parsed source document."""
    version: str
    schemas: Tuple[TableSchema, ...]
    rows: Dict[Tuple[str, str], List[Dict[str, Any]]] = field(default_factory=dict)
    types: Dict[str, Tuple[Field, ...]] = field(default_factory=dict)


def parse_types(types_def: Optional[Dict[str, Any]]) -> Dict[str, Tuple[Field, ...]]:
    """Parse a `types:` mapping of struct name -> field list."""
    types = {}
    for name, fields in (types_def or {}).items():
        if not isinstance(fields, list):
            raise ValueError(f"Struct type {name!r} needs a field list")
        types[str(name)] = tuple(Field.from_dict(fd, i) for i, fd in enumerate(fields))
    return types


def parse_source(doc: Dict[str, Any]) -> ConfigSource:
    """Build a ConfigSource from a loaded YAML/JSON document."""
    if not isinstance(doc, dict):
        raise ValueError("Source document must be a mapping")

    tables = []
    rows: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
    for table_def in doc.get('tables', []) or []:
        table = TableSchema.from_dict(table_def)
        tables.append(table)
        for sheet_def, sheet in zip(table_def.get('sheets', []) or [], table.sheets):
            sheet_rows = sheet_def.get('rows') or []
            if sheet_rows:
                rows[(table.name, sheet.name)] = [dict(r) for r in sheet_rows]

    return ConfigSource(
        version=str(doc.get('version', '1.0.0')),
        schemas=tuple(tables),
        rows=rows,
        types=parse_types(doc.get('types')),
    )


def load_source(path: Union[str, Path]) -> ConfigSource:
    """Load a YAML (or JSON) source document from disk."""
    with open(path) as f:
        doc = yaml.safe_load(f)
    return parse_source(doc)


def load_types(path: Union[str, Path]) -> Dict[str, Tuple[Field, ...]]:
    """Load struct types from a YAML file with a top-level `types:` mapping."""
    with open(path) as f:
        doc = yaml.safe_load(f) or {}
    return parse_types(doc.get('types', doc))


def build_registry(types: Dict[str, Tuple[Field, ...]],
                   base: Optional[TypeRegistry] = None) -> TypeRegistry:
    """Copy of `base` (default registry) with the struct types registered."""
    registry = (base or DEFAULT_REGISTRY).copy()
    for name, fields in types.items():
        registry.register_struct(name, fields, replace=True)
    return registry


def types_to_dict(types: Dict[str, Tuple[Field, ...]]) -> Dict[str, Any]:
    return {name: [f.to_dict() for f in fields] for name, fields in types.items()}


def export_source(loaded: LoadedTables, schemas: Tuple[TableSchema, ...],
                  types: Optional[Dict[str, Tuple[Field, ...]]] = None) -> Dict[str, Any]:
    """Source document (schemas + rows) for a decoded container."""
    doc: Dict[str, Any] = {'version': loaded.version}
    if types:
        doc['types'] = types_to_dict(types)
    tables = []
    for table in schemas:
        table_doc = table.to_dict()
        for sheet_doc, sheet in zip(table_doc['sheets'], table.sheets):
            sheet_table = loaded.sheets.get((table.name, sheet.name))
            sheet_doc['rows'] = list(sheet_table.rows) if sheet_table else []
        tables.append(table_doc)
    doc['tables'] = tables
    return doc


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode('ascii')
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dump_document(doc: Dict[str, Any], fmt: str = 'yaml') -> str:
    """Render a document as YAML or JSON text."""
    if fmt == 'json':
        return json.dumps(doc, indent=2, ensure_ascii=False, default=_json_default)
    if fmt == 'yaml':
        return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unknown output format: {fmt}")
