"""
Tests for the config tables Decode Engine.
"""

import pytest
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from config_errors import (
    ConfigTablesError, DuplicateFieldIndex, DuplicateSheet, DuplicateTable,
    InvalidVersion, KeyFieldMissing, OversizedArray, SchemaHashMismatch,
    TruncatedRecord, UnknownFieldType, UnknownSheet,
)
from config_schema import (
    ConfigTables, Field, SheetData, SheetMeta, SheetSchema, TableSchema,
    compute_header_hash,
)
from config_decoder import ConfigTablesDecoder, decode_tables, load_tables
from config_encoder import encode_tables
from field_types import create_registry


def make_container(schemas, datas, version='1.0.0'):
    """Container with a correct header hash around hand-built data blocks."""
    schemas = tuple(schemas)
    return ConfigTables(version=version, header_hash=compute_header_hash(schemas),
                        schemas=schemas, datas=tuple(datas))


SWORD = b'\x08\xe9\x07\x12\x05Sword\x1a\x05melee\x1a\x04rare\x1a\x04epic'


class TestItemScenario:
    """The single Item/Sword row from its wire bytes to the category index."""

    def test_lookup_sword(self, item_table):
        container = make_container([item_table], [SheetData('Item', 'Item', (SWORD,))])
        tables = decode_tables(container)

        assert tables.lookup('item', 1001) == {
            'id': 1001, 'name': 'Sword', 'tags': ['melee', 'rare', 'epic'],
        }
        assert tables.rows('Item', 'Item') == [tables.lookup('item', 1001)]
        assert tables.warnings == []

    def test_from_bytes(self, item_container):
        tables = load_tables(item_container.to_bytes())
        assert tables.version == '1.2.3'
        assert tables.header_hash == item_container.header_hash
        assert [r['name'] for r in tables.rows('Item', 'Item')] == ['Sword', 'Bow', 'Staff']
        assert tables.lookup('item', 1003)['tags'] == ['magic', 'rare', '']

    def test_lookup_default(self, item_container):
        tables = decode_tables(item_container)
        assert tables.lookup('item', 9999) is None
        assert tables.lookup('item', 9999, default={}) == {}
        assert tables.lookup('monster', 1001) is None

    def test_sheet_table(self, item_container):
        tables = decode_tables(item_container)
        sheet = tables.sheet('Item', 'Item')
        assert sheet.category == 'item'
        assert sheet.key_field == 'id'
        assert len(sheet) == 3
        assert sheet.get(1002)['name'] == 'Bow'
        assert [r['id'] for r in sheet] == [1001, 1002, 1003]

    def test_to_dict(self, item_container, item_rows):
        assert decode_tables(item_container).to_dict() == {'Item': {'Item': item_rows}}


class TestHashCheck:
    """The header hash check runs before any row is touched."""

    @pytest.mark.parametrize('change', [
        {'pb_index': 5}, {'array_length': 2}, {'pb_type': 'uint32'},
    ])
    def test_schema_mutation_detected(self, item_container, change):
        table = item_container.schemas[0]
        sheet = table.sheets[0]
        fields = tuple(replace(f, **change) if f.field_name == 'tags' else f
                       for f in sheet.fields)
        mutated = replace(table, sheets=(replace(sheet, fields=fields),))
        container = replace(item_container, schemas=(mutated,))

        with pytest.raises(SchemaHashMismatch) as exc_info:
            decode_tables(container)
        assert exc_info.value.expected == item_container.header_hash
        assert exc_info.value.actual == compute_header_hash([mutated])

    def test_checked_before_rows(self, item_table):
        # Rows are garbage, but the hash error wins
        container = ConfigTables(version='1.0.0', header_hash='0' * 64,
                                 schemas=(item_table,),
                                 datas=(SheetData('Item', 'Item', (b'\xff',)),))
        with pytest.raises(SchemaHashMismatch):
            decode_tables(container)

    def test_is_value_error(self, item_container):
        container = replace(item_container, header_hash='')
        with pytest.raises(ValueError):
            decode_tables(container)


class TestSchemaIndexing:
    """Errors raised while indexing the schemas."""

    def test_unknown_sheet_with_empty_schemas(self):
        container = make_container([], [SheetData('T', 'S')])
        with pytest.raises(UnknownSheet) as exc_info:
            decode_tables(container)
        assert exc_info.value.table == 'T'
        assert exc_info.value.sheet == 'S'

    def test_duplicate_sheet(self):
        table = TableSchema('T', (SheetSchema('S'), SheetSchema('S')))
        with pytest.raises(DuplicateSheet):
            decode_tables(make_container([table], []))

    def test_duplicate_table(self):
        tables = [TableSchema('T', (SheetSchema('A'),)), TableSchema('T', (SheetSchema('B'),))]
        with pytest.raises(DuplicateTable):
            decode_tables(make_container(tables, []))

    def test_same_sheet_name_in_two_tables(self):
        tables = [TableSchema('A', (SheetSchema('S'),)), TableSchema('B', (SheetSchema('S'),))]
        loaded = decode_tables(make_container(tables, []))
        assert [s.table for s in loaded] == ['A', 'B']
        assert loaded.rows('A', 'S') == []

    def test_duplicate_field_index(self):
        sheet = SheetSchema('S', fields=(Field('a', 0, 'int32', 0), Field('b', 0, 'int32', 0)))
        with pytest.raises(DuplicateFieldIndex):
            decode_tables(make_container([TableSchema('T', (sheet,))], []))

    def test_unknown_field_type_in_unreferenced_sheet(self):
        sheet = SheetSchema('S', fields=(Field('a', 0, 'decimal', 0),))
        with pytest.raises(UnknownFieldType) as exc_info:
            decode_tables(make_container([TableSchema('T', (sheet,))], []))
        assert exc_info.value.field == 'a'

    @pytest.mark.parametrize('key', ['missing', 'tags'])
    def test_key_field_missing_or_array(self, key):
        sheet = SheetSchema('S', meta=SheetMeta('c', key), fields=(
            Field('id', 0, 'int32', 0), Field('tags', 2, 'string', 1)))
        with pytest.raises(KeyFieldMissing):
            decode_tables(make_container([TableSchema('T', (sheet,))], []))

    def test_invalid_version(self, item_container):
        with pytest.raises(InvalidVersion):
            decode_tables(replace(item_container, version='1.0'))

    @pytest.mark.parametrize('reward_fields,error', [
        ((Field('x', 0, 'decimal', 0),), UnknownFieldType),
        ((Field('x', 0, 'int32', 0), Field('y', 0, 'int32', 0)), DuplicateFieldIndex),
    ])
    def test_struct_checked_without_rows(self, reward_fields, error):
        registry = create_registry()
        registry.register_struct('Reward', reward_fields)
        sheet = SheetSchema('S', fields=(Field('r', 0, 'Reward', 0),))
        with pytest.raises(error) as exc_info:
            decode_tables(make_container([TableSchema('T', (sheet,))], []), registry)
        assert exc_info.value.table == 'T'
        assert exc_info.value.field.startswith('r.')

    def test_nested_struct_checked(self):
        registry = create_registry()
        registry.register_struct('Inner', (Field('v', 0, 'vector3', 0),))
        registry.register_struct('Outer', (Field('inner', 2, 'Inner', 0),))
        sheet = SheetSchema('S', fields=(Field('o', 0, 'Outer', 0),))
        with pytest.raises(UnknownFieldType) as exc_info:
            decode_tables(make_container([TableSchema('T', (sheet,))], []), registry)
        assert exc_info.value.field == 'o.inner.v'

    def test_self_referencing_struct_indexes(self):
        registry = create_registry()
        registry.register_struct('Node', (Field('id', 0, 'int32', 0),
                                          Field('children', 1, 'Node', 1)))
        sheet = SheetSchema('S', fields=(Field('root', 0, 'Node', 0),))
        loaded = decode_tables(make_container([TableSchema('T', (sheet,))], []), registry)
        assert loaded.rows('T', 'S') == []


class TestArrayBoundary:
    """Array fields must carry exactly array_length values."""

    def _decode(self, item_table, tags):
        record = b'\x08\x01\x12\x01x' + b''.join(
            b'\x1a' + bytes([len(t)]) + t for t in tags)
        container = make_container([item_table], [SheetData('Item', 'Item', (record,))])
        return decode_tables(container)

    def test_exact(self, item_table):
        tables = self._decode(item_table, [b'a', b'b', b'c'])
        assert tables.lookup('item', 1)['tags'] == ['a', 'b', 'c']

    def test_short(self, item_table):
        with pytest.raises(TruncatedRecord) as exc_info:
            self._decode(item_table, [b'a', b'b'])
        assert exc_info.value.field == 'tags'
        assert exc_info.value.row == 0

    def test_oversized(self, item_table):
        with pytest.raises(OversizedArray):
            self._decode(item_table, [b'a', b'b', b'c', b'd'])

    def test_truncated_row_location(self, item_table):
        container = make_container([item_table], [
            SheetData('Item', 'Item', (SWORD, b'\x08\x02'))])
        with pytest.raises(TruncatedRecord, match=r"Item/Item row 1"):
            decode_tables(container)


class TestKeyIndex:
    """Secondary index behavior for duplicate keys and shared categories."""

    def _sheet(self, name, category='item'):
        return SheetSchema(name, meta=SheetMeta(category, 'id'), fields=(
            Field('id', 0, 'int32', 0), Field('name', 0, 'string', 1)))

    def test_duplicate_key_last_wins(self):
        table = TableSchema('T', (self._sheet('S'),))
        container = encode_tables([table], {('T', 'S'): [
            {'id': 1, 'name': 'first'}, {'id': 1, 'name': 'second'}]})
        tables = decode_tables(container)

        assert tables.lookup('item', 1)['name'] == 'second'
        assert len(tables.rows('T', 'S')) == 2
        assert len(tables.warnings) == 1
        assert 'duplicate key id=1' in tables.warnings[0]

    def test_category_shared_across_sheets(self):
        table = TableSchema('T', (self._sheet('Weapons'), self._sheet('Armor')))
        container = encode_tables([table], {
            ('T', 'Weapons'): [{'id': 1, 'name': 'sword'}, {'id': 2, 'name': 'bow'}],
            ('T', 'Armor'): [{'id': 2, 'name': 'helm'}, {'id': 3, 'name': 'boots'}],
        })
        tables = decode_tables(container)

        assert sorted(tables.category('item')) == [1, 2, 3]
        assert tables.lookup('item', 2)['name'] == 'helm'
        assert tables.sheet('T', 'Weapons').get(2)['name'] == 'bow'
        assert "already in category 'item'" in tables.warnings[0]

    def test_no_key_means_no_index(self):
        sheet = SheetSchema('S', fields=(Field('id', 0, 'int32', 0),))
        container = encode_tables([TableSchema('T', (sheet,))], {('T', 'S'): [{'id': 1}]})
        tables = decode_tables(container)
        assert tables.categories == {}
        assert tables.sheet('T', 'S').index == {}

    def test_empty_category_name(self):
        sheet = replace(self._sheet('S', category=''))
        container = encode_tables([TableSchema('T', (sheet,))],
                                  {('T', 'S'): [{'id': 7, 'name': 'x'}]})
        assert decode_tables(container).lookup('', 7)['name'] == 'x'


class TestOrdering:

    def _container(self):
        sheets = tuple(SheetSchema(f'S{i}', fields=(Field('n', 0, 'int32', 0),))
                       for i in range(8))
        rows = {('T', f'S{i}'): [{'n': i * 100 + j} for j in range(20)] for i in range(8)}
        return encode_tables([TableSchema('T', sheets)], rows)

    @pytest.mark.parametrize('max_workers', [None, 1, 4])
    def test_rows_and_sheets_keep_order(self, max_workers):
        tables = ConfigTablesDecoder(max_workers=max_workers).decode(self._container())
        assert [s.name for s in tables] == [f'S{i}' for i in range(8)]
        for i in range(8):
            assert [r['n'] for r in tables.rows('T', f'S{i}')] == [i * 100 + j for j in range(20)]

    def test_split_data_blocks_append(self, item_table):
        first = SheetData('Item', 'Item', (SWORD,))
        second = SheetData('Item', 'Item', (b'\x08\x02\x12\x00\x1a\x00\x1a\x00\x1a\x00',))
        tables = decode_tables(make_container([item_table], [first, second]))
        assert [r['id'] for r in tables.rows('Item', 'Item')] == [1001, 2]

    @pytest.mark.parametrize('max_workers', [None, 4])
    def test_split_data_blocks_row_numbers(self, max_workers):
        sheet = SheetSchema('S', fields=(Field('id', 0, 'int32', 0),))
        container = make_container([TableSchema('T', (sheet,))], [
            SheetData('T', 'S', (b'\x08\x01',)),
            SheetData('T', 'S', (b'\x08\x02', b'')),
        ])
        with pytest.raises(TruncatedRecord) as exc_info:
            ConfigTablesDecoder(max_workers=max_workers).decode(container)
        assert exc_info.value.row == 2
        assert 'T/S row 2' in str(exc_info.value)

    def test_declared_sheet_without_rows(self):
        sheets = (SheetSchema('Empty', fields=(Field('id', 0, 'int32', 0),)),
                  SheetSchema('Full', fields=(Field('id', 0, 'int32', 0),)))
        container = encode_tables([TableSchema('T', sheets)],
                                  {('T', 'Empty'): [], ('T', 'Full'): [{'id': 1}]})
        tables = load_tables(container.to_bytes())
        assert tables.rows('T', 'Empty') == []
        assert [s.name for s in tables] == ['Empty', 'Full']
        assert tables.to_dict() == {'T': {'Empty': [], 'Full': [{'id': 1}]}}

    def test_tables_listing(self):
        tables = decode_tables(self._container())
        assert tables.tables() == ['T']

    def test_unknown_sheet_accessor(self, item_container):
        tables = decode_tables(item_container)
        with pytest.raises(UnknownSheet):
            tables.sheet('Item', 'Nope')

    def test_errors_share_base(self, item_table):
        container = make_container([], [SheetData('Item', 'Item')])
        with pytest.raises(ConfigTablesError):
            decode_tables(container)
