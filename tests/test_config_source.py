"""
Tests for YAML source documents.
"""

import json

import pytest
import sys
import yaml
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))

from config_errors import UnknownFieldType
from config_schema import Field
from config_decoder import decode_tables
from config_encoder import encode_tables
from config_source import (
    build_registry, dump_document, export_source, load_source, load_types,
    parse_source, parse_types,
)
from field_types import DEFAULT_REGISTRY


SOURCE_YAML = """
version: 2.1.0
types:
  Reward:
    - {name: item_id, type: uint32}
    - {name: count, type: uint32}
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
          - {id: 1002, name: Bow, tags: [ranged, common, wood]}
  - name: Quest
    sheets:
      - name: Main
        category: quest
        key: id
        fields:
          - {name: id, type: int32}
          - {name: reward, type: Reward}
        rows:
          - {id: 1, reward: {item_id: 1001, count: 2}}
      - name: Empty
        fields:
          - {name: id, type: int32}
"""


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / 'source.yaml'
    path.write_text(SOURCE_YAML)
    return path


class TestParseSource:

    def test_load(self, source_file):
        source = load_source(source_file)
        assert source.version == '2.1.0'
        assert [t.name for t in source.schemas] == ['Item', 'Quest']
        assert sorted(source.rows) == [('Item', 'Item'), ('Quest', 'Main')]
        assert source.types['Reward'][1] == Field('count', 0, 'uint32', 1)

    def test_index_defaults_to_position(self, source_file):
        source = load_source(source_file)
        main = source.schemas[1].sheets[0]
        assert [f.pb_index for f in main.fields] == [0, 1]
        assert main.meta.key == 'id'

    def test_version_default(self):
        assert parse_source({'tables': []}).version == '1.0.0'

    def test_not_a_mapping(self):
        with pytest.raises(ValueError, match="mapping"):
            parse_source(['tables'])

    def test_bad_types(self):
        with pytest.raises(ValueError, match="field list"):
            parse_types({'Reward': 'uint32'})

    def test_load_types_file(self, tmp_path):
        path = tmp_path / 'types.yaml'
        path.write_text("types:\n  Pair:\n    - {name: a, type: int32}\n    - {name: b, type: int32}\n")
        assert [f.field_name for f in load_types(path)['Pair']] == ['a', 'b']


class TestRegistry:

    def test_build_registry_leaves_default_alone(self, source_file):
        registry = build_registry(load_source(source_file).types)
        assert 'Reward' in registry
        assert 'Reward' not in DEFAULT_REGISTRY

    def test_struct_needs_registry(self, source_file):
        source = load_source(source_file)
        with pytest.raises(UnknownFieldType):
            encode_tables(source.schemas, source.rows, source.version)


class TestExport:

    def test_source_roundtrip(self, source_file):
        source = load_source(source_file)
        registry = build_registry(source.types)
        container = encode_tables(source.schemas, source.rows, source.version, registry)
        loaded = decode_tables(container, registry)

        doc = export_source(loaded, container.schemas, source.types)
        reparsed = parse_source(yaml.safe_load(dump_document(doc)))

        assert reparsed.version == source.version
        assert reparsed.schemas == source.schemas
        assert reparsed.rows == source.rows
        assert reparsed.types == source.types

    def test_empty_sheet_exported(self, source_file):
        source = load_source(source_file)
        registry = build_registry(source.types)
        loaded = decode_tables(encode_tables(source.schemas, source.rows, '1.0.0', registry),
                               registry)
        doc = export_source(loaded, source.schemas)
        assert doc['tables'][1]['sheets'][1]['rows'] == []
        assert 'types' not in doc

    def test_json_bytes_as_base64(self):
        text = dump_document({'blob': b'\x00\x01'}, 'json')
        assert json.loads(text) == {'blob': 'AAE='}

    def test_yaml_keeps_key_order(self):
        text = dump_document({'version': '1.0.0', 'tables': []})
        assert text.index('version') < text.index('tables')

    def test_unknown_format(self):
        with pytest.raises(ValueError, match="Unknown output format"):
            dump_document({}, 'xml')
