#!/usr/bin/env python3
"""
config_encoder.py - Encode Engine for config tables containers

Inverse of config_decoder: typed rows + schemas -> ConfigTables.

Rows are given per (table, sheet) as ordered lists of dicts keyed by field
name. Each row is written with the same RecordLayout the decoder uses, and
header_hash comes from the shared compute_header_hash(), so a freshly
encoded container always passes its own integrity check.

Usage:
    from config_encoder import encode_tables

    container = encode_tables(schemas, {('Item', 'Item'): rows}, '1.0.0')
    artifact = container.to_bytes()
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from config_errors import UnknownSheet
from config_schema import (
    ConfigTables, SheetData, TableSchema, compute_header_hash, validate_version,
)
from config_decoder import build_layouts
from field_types import DEFAULT_REGISTRY, TypeRegistry


RowsBySheet = Mapping[Tuple[str, str], Iterable[Mapping[str, Any]]]


class ConfigTablesEncoder:
    """Encodes typed rows into a ConfigTables container."""

    def __init__(self, registry: Optional[TypeRegistry] = None):
        self.registry = registry if registry is not None else DEFAULT_REGISTRY

    def encode(self, schemas: Iterable[TableSchema], rows: RowsBySheet,
               version: str = '1.0.0') -> ConfigTables:
        """
        Build a container.

        Data blocks are emitted in schema declaration order; sheets without
        rows get no data block.
        """
        validate_version(version)
        schemas = tuple(schemas)
        layouts = build_layouts(schemas, self.registry)

        for key in rows:
            if tuple(key) not in layouts:
                table, sheet = key
                raise UnknownSheet("Rows given for undeclared sheet",
                                   table=table, sheet=sheet)

        datas: List[SheetData] = []
        for key, (_, layout) in layouts.items():
            sheet_rows = rows.get(key)
            if not sheet_rows:
                continue
            records = [layout.encode(row, row=i) for i, row in enumerate(sheet_rows)]
            datas.append(SheetData(table=key[0], sheet=key[1], data=tuple(records)))

        return ConfigTables(
            version=version,
            header_hash=compute_header_hash(schemas),
            schemas=schemas,
            datas=tuple(datas),
        )

    def encode_to_bytes(self, schemas: Iterable[TableSchema], rows: RowsBySheet,
                        version: str = '1.0.0') -> bytes:
        """Convenience method: encode directly to artifact bytes."""
        return self.encode(schemas, rows, version).to_bytes()


def encode_tables(schemas: Iterable[TableSchema], rows: RowsBySheet,
                  version: str = '1.0.0',
                  registry: Optional[TypeRegistry] = None) -> ConfigTables:
    """Convenience function to encode a container."""
    return ConfigTablesEncoder(registry).encode(schemas, rows, version)


def rows_from_tables(tables: Dict[str, Dict[str, List[Dict[str, Any]]]]) -> Dict[Tuple[str, str], List[Dict[str, Any]]]:
    """Flatten {table: {sheet: rows}} (LoadedTables.to_dict) into encoder input."""
    return {(table, sheet): rows
            for table, sheets in tables.items()
            for sheet, rows in sheets.items()}
