#!/usr/bin/env python3
"""
config_tool.py - Build, inspect and verify config tables artifacts

Usage:
  # Build an artifact from a YAML source document
  python config_tool.py build source.yaml -o config.bin

  # Decode an artifact back to a YAML (or JSON) source document
  python config_tool.py dump config.bin --types types.yaml
  python config_tool.py dump config.bin --format json -j 4

  # Version, hash and per-sheet counts
  python config_tool.py info config.bin

  # Check the header hash only
  python config_tool.py verify config.bin

Artifacts are read as raw bytes, or as base64 text with --base64.
Exit status is 1 on any config tables error.
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import yaml

sys.path.insert(0, str(Path(__file__).parent))
from config_errors import ConfigTablesError
from config_schema import ConfigTables
from config_decoder import ConfigTablesDecoder, verify_header_hash
from config_encoder import ConfigTablesEncoder
from config_source import (
    build_registry, dump_document, export_source, load_source, load_types,
)


def log_info(msg: str) -> None:
    print(f"[INFO] {msg}", file=sys.stderr)


def log_warn(msg: str) -> None:
    print(f"[WARN] {msg}", file=sys.stderr)


def read_container(path: Path, is_base64: bool = False) -> ConfigTables:
    if is_base64:
        return ConfigTables.from_base64(path.read_text())
    return ConfigTables.from_bytes(path.read_bytes())


def cmd_build(args) -> int:
    source = load_source(args.input)
    registry = build_registry(source.types)
    container = ConfigTablesEncoder(registry).encode(
        source.schemas, source.rows, args.version or source.version)

    if args.base64:
        output = container.to_base64(url_safe=False)
        if args.output:
            args.output.write_text(output + '\n')
        else:
            print(output)
    else:
        binary = container.to_bytes()
        if not args.output:
            log_warn("No output file given, writing hex to stdout")
            print(binary.hex())
        else:
            args.output.write_bytes(binary)
            log_info(f"Encoded to {args.output} ({len(binary)} bytes)")

    row_count = sum(len(r) for r in source.rows.values())
    log_info(f"{len(container.datas)} sheets, {row_count} rows, hash {container.header_hash}")
    return 0


def cmd_dump(args) -> int:
    container = read_container(args.input, args.base64)
    types = load_types(args.types) if args.types else {}
    decoder = ConfigTablesDecoder(build_registry(types), max_workers=args.jobs)
    loaded = decoder.decode(container)
    for warning in loaded.warnings:
        log_warn(warning)

    output = dump_document(export_source(loaded, container.schemas, types), args.format)
    if args.output:
        args.output.write_text(output)
        log_info(f"Decoded to {args.output}")
    else:
        print(output)
    return 0


def cmd_info(args) -> int:
    container = read_container(args.input, args.base64)
    row_counts = {}
    for data in container.datas:
        row_counts[data.key] = row_counts.get(data.key, 0) + len(data.data)

    hash_ok = container.computed_hash() == container.header_hash
    print(f"Version: {container.version}")
    print(f"Header hash: {container.header_hash} ({'ok' if hash_ok else 'MISMATCH'})")
    print(f"Tables: {len(container.schemas)}")
    for table in container.schemas:
        for sheet in table.sheets:
            meta = ''
            if sheet.meta.key:
                meta = f" [{sheet.meta.category or '-'}:{sheet.meta.key}]"
            rows = row_counts.get((table.name, sheet.name), 0)
            print(f"  {table.name}/{sheet.name}: {len(sheet.fields)} fields, {rows} rows{meta}")
    return 0 if hash_ok else 1


def cmd_verify(args) -> int:
    container = read_container(args.input, args.base64)
    digest = verify_header_hash(container)
    print(f"OK {digest}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Config tables artifact tool')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # Build
    bld = subparsers.add_parser('build', help='Encode a YAML source document')
    bld.add_argument('input', type=Path, help='Source YAML file')
    bld.add_argument('-o', '--output', type=Path, help='Output artifact file')
    bld.add_argument('--base64', action='store_true', help='Write base64 text')
    bld.add_argument('--version', help='Override the source version (x.y.z)')

    # Dump
    dmp = subparsers.add_parser('dump', help='Decode an artifact to a source document')
    dmp.add_argument('input', type=Path, help='Artifact file')
    dmp.add_argument('-o', '--output', type=Path, help='Output file')
    dmp.add_argument('--format', choices=['yaml', 'json'], default='yaml')
    dmp.add_argument('--types', type=Path, help='YAML file with struct types')
    dmp.add_argument('-j', '--jobs', type=int, default=None,
                     help='Decode sheets on N threads')
    dmp.add_argument('--base64', action='store_true', help='Artifact is base64 text')

    # Info
    inf = subparsers.add_parser('info', help='Show artifact summary')
    inf.add_argument('input', type=Path, help='Artifact file')
    inf.add_argument('--base64', action='store_true', help='Artifact is base64 text')

    # Verify
    ver = subparsers.add_parser('verify', help='Check the header hash')
    ver.add_argument('input', type=Path, help='Artifact file')
    ver.add_argument('--base64', action='store_true', help='Artifact is base64 text')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == 'build':
            return cmd_build(args)
        elif args.command == 'dump':
            return cmd_dump(args)
        elif args.command == 'info':
            return cmd_info(args)
        elif args.command == 'verify':
            return cmd_verify(args)
        return 1
    except ConfigTablesError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error loading input: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
