#!/usr/bin/env python3
"""
config_decoder.py - Decode Engine for config tables containers

Turns a ConfigTables container into typed, indexed tables.

Steps (in this order, each one fatal on error):
    1. Version check          - version must be x.y.z text
    2. Header hash check      - recomputed schema digest == header_hash;
                                runs before any row is touched
    3. Schema indexing        - (table, sheet) -> RecordLayout; every sheet
                                schema is validated, referenced or not,
                                nested struct types included
    4. Row decoding           - each SheetData decoded against its layout,
                                row order preserved
    5. Secondary indexing     - meta.key value -> row, per sheet and merged
                                per meta.category

Duplicate key values are resolved last-write-wins; each collision is
recorded in LoadedTables.warnings.

Usage:
    from config_decoder import load_tables

    tables = load_tables(artifact_bytes)
    sword = tables.lookup('item', 1001)
    for row in tables.rows('Item', 'Item'):
        print(row['name'])
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from config_errors import (
    DuplicateSheet, DuplicateTable, KeyFieldMissing, SchemaHashMismatch,
    UnknownSheet,
)
from config_schema import (
    ConfigTables, SheetData, SheetSchema, TableSchema,
    compute_header_hash, validate_version,
)
from field_types import DEFAULT_REGISTRY, RecordLayout, StructCodec, TypeRegistry


SheetKey = Tuple[str, str]


@dataclass
class SheetTable:
    """Decoded rows of one sheet plus its key index."""
    table: str
    name: str
    schema: SheetSchema
    rows: List[Dict[str, Any]] = field(default_factory=list)
    index: Dict[Any, Dict[str, Any]] = field(default_factory=dict)

    @property
    def category(self) -> str:
        return self.schema.meta.category

    @property
    def key_field(self) -> str:
        return self.schema.meta.key

    def get(self, key: Any, default: Any = None) -> Any:
        return self.index.get(key, default)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)


@dataclass
class LoadedTables:
    """Result of decoding a container."""
    version: str
    header_hash: str
    sheets: Dict[SheetKey, SheetTable] = field(default_factory=dict)
    categories: Dict[str, Dict[Any, Dict[str, Any]]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def sheet(self, table: str, sheet: str) -> SheetTable:
        try:
            return self.sheets[(table, sheet)]
        except KeyError:
            raise UnknownSheet("No such sheet", table=table, sheet=sheet) from None

    def rows(self, table: str, sheet: str) -> List[Dict[str, Any]]:
        return self.sheet(table, sheet).rows

    def category(self, name: str) -> Dict[Any, Dict[str, Any]]:
        return self.categories.get(name, {})

    def lookup(self, category: str, key: Any, default: Any = None) -> Any:
        return self.categories.get(category, {}).get(key, default)

    def tables(self) -> List[str]:
        names = []
        for table, _ in self.sheets:
            if table not in names:
                names.append(table)
        return names

    def __iter__(self) -> Iterator[SheetTable]:
        return iter(self.sheets.values())

    def __len__(self) -> int:
        return len(self.sheets)

    def to_dict(self) -> Dict[str, Any]:
        """Plain nested dict: {table: {sheet: [rows]}}."""
        result: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for sheet in self.sheets.values():
            result.setdefault(sheet.table, {})[sheet.name] = sheet.rows
        return result


def verify_header_hash(container: ConfigTables) -> str:
    """Raise SchemaHashMismatch unless the header hash matches the schemas."""
    actual = compute_header_hash(container.schemas)
    if actual != container.header_hash:
        raise SchemaHashMismatch(container.header_hash, actual)
    return actual


def build_layouts(schemas: Tuple[TableSchema, ...],
                  registry: TypeRegistry) -> Dict[SheetKey, Tuple[SheetSchema, RecordLayout]]:
    """Validate schemas and compile a RecordLayout per (table, sheet)."""
    layouts: Dict[SheetKey, Tuple[SheetSchema, RecordLayout]] = {}
    seen_tables = set()
    for table in schemas:
        if table.name in seen_tables:
            raise DuplicateTable(f"Table {table.name!r} declared more than once",
                                 table=table.name)
        seen_tables.add(table.name)
        for sheet in table.sheets:
            key = (table.name, sheet.name)
            if key in layouts:
                raise DuplicateSheet("Sheet declared more than once",
                                     table=table.name, sheet=sheet.name)
            layout = RecordLayout(sheet.fields, registry,
                                  table=table.name, sheet=sheet.name)
            layout.check_structs()
            check_key_field(sheet, layout, table.name)
            layouts[key] = (sheet, layout)
    return layouts


def check_key_field(sheet: SheetSchema, layout: RecordLayout, table: str) -> None:
    key = sheet.meta.key
    if not key:
        return
    key_field = layout.get_field(key)
    if key_field is None:
        raise KeyFieldMissing(f"meta.key {key!r} names no declared field",
                              table=table, sheet=sheet.name, field=key)
    if key_field.is_array or isinstance(layout.get_codec(key), StructCodec):
        raise KeyFieldMissing(f"meta.key {key!r} must name a scalar, non-struct field",
                              table=table, sheet=sheet.name, field=key)


class ConfigTablesDecoder:
    """
    Decodes ConfigTables containers into LoadedTables.

    Args:
        registry: type registry for pb_type lookups (default: built-ins
            plus anything registered on DEFAULT_REGISTRY)
        max_workers: decode sheets on a thread pool of this size; sheets
            keep schema order and rows keep container order either way
    """

    def __init__(self, registry: Optional[TypeRegistry] = None,
                 max_workers: Optional[int] = None):
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.max_workers = max_workers

    def decode(self, container: ConfigTables) -> LoadedTables:
        validate_version(container.version)
        verify_header_hash(container)
        layouts = build_layouts(container.schemas, self.registry)

        # Row numbers count from the start of the sheet across all its blocks
        jobs = []
        offsets: Dict[SheetKey, int] = {}
        for data in container.datas:
            if data.key not in layouts:
                raise UnknownSheet("No schema declared for sheet data",
                                   table=data.table, sheet=data.sheet)
            start = offsets.get(data.key, 0)
            offsets[data.key] = start + len(data.data)
            jobs.append((data, layouts[data.key][1], start))

        if self.max_workers and self.max_workers > 1 and len(jobs) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                decoded = list(pool.map(self._decode_job, jobs))
        else:
            decoded = [self._decode_job(job) for job in jobs]

        # Every declared sheet is present, in schema order, even without data
        result = LoadedTables(version=container.version,
                              header_hash=container.header_hash)
        for (table, name), (schema, _) in layouts.items():
            result.sheets[(table, name)] = SheetTable(table=table, name=name, schema=schema)
        for (data, _, _), rows in zip(jobs, decoded):
            result.sheets[data.key].rows.extend(rows)

        for sheet in result.sheets.values():
            self._index_sheet(sheet, result)
        return result

    def decode_bytes(self, data: bytes) -> LoadedTables:
        return self.decode(ConfigTables.from_bytes(data))

    def _decode_job(self, job: Tuple[SheetData, RecordLayout, int]) -> List[Dict[str, Any]]:
        data, layout, start = job
        return [layout.decode(record, row=start + i) for i, record in enumerate(data.data)]

    def _index_sheet(self, sheet: SheetTable, result: LoadedTables) -> None:
        key_field = sheet.key_field
        if not key_field:
            return
        category = result.categories.setdefault(sheet.category, {})
        for i, row in enumerate(sheet.rows):
            key = row[key_field]
            if key in sheet.index:
                result.warnings.append(
                    f"{sheet.table}/{sheet.name} row {i}: duplicate key "
                    f"{key_field}={key!r}, last row wins")
            elif key in category:
                result.warnings.append(
                    f"{sheet.table}/{sheet.name} row {i}: key {key_field}={key!r} "
                    f"already in category {sheet.category!r}, last row wins")
            sheet.index[key] = row
            category[key] = row


def decode_tables(container: ConfigTables, registry: Optional[TypeRegistry] = None,
                  max_workers: Optional[int] = None) -> LoadedTables:
    """Convenience function: decode a parsed container."""
    return ConfigTablesDecoder(registry, max_workers).decode(container)


def load_tables(data: bytes, registry: Optional[TypeRegistry] = None,
                max_workers: Optional[int] = None) -> LoadedTables:
    """Convenience function: parse container bytes and decode them."""
    return ConfigTablesDecoder(registry, max_workers).decode_bytes(data)
