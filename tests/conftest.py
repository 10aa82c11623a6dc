"""
pytest configuration and fixtures for config tables tests.

Provides reusable fixtures for:
- The Item table schema used across decoder/encoder tests
- Typed rows and a fully encoded container for that schema
- Hypothesis property-based testing configuration
"""

import os
import sys
from pathlib import Path

import pytest

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

from config_schema import Field, SheetMeta, SheetSchema, TableSchema  # noqa: E402

# Configure Hypothesis profiles
try:
    from hypothesis import settings, Verbosity, Phase

    # Default profile: balanced speed and coverage
    settings.register_profile(
        "default",
        max_examples=100,
        deadline=None,
    )

    # CI profile: more thorough testing
    settings.register_profile(
        "ci",
        max_examples=500,
        deadline=None,
        phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    )

    # Dev profile: fast iteration
    settings.register_profile(
        "dev",
        max_examples=10,
        deadline=None,
    )

    # Debug profile: verbose output
    settings.register_profile(
        "debug",
        max_examples=10,
        verbosity=Verbosity.verbose,
        deadline=None,
    )

    settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))

except ImportError:
    pass  # Hypothesis not installed


ITEM_FIELDS = (
    Field('id', 0, 'int32', 0),
    Field('name', 0, 'string', 1),
    Field('tags', 3, 'string', 2),
)


@pytest.fixture
def item_sheet():
    return SheetSchema(name='Item', meta=SheetMeta(category='item', key='id'),
                       fields=ITEM_FIELDS)


@pytest.fixture
def item_table(item_sheet):
    return TableSchema(name='Item', sheets=(item_sheet,))


@pytest.fixture
def item_rows():
    return [
        {'id': 1001, 'name': 'Sword', 'tags': ['melee', 'rare', 'epic']},
        {'id': 1002, 'name': 'Bow', 'tags': ['ranged', 'common', 'wood']},
        {'id': 1003, 'name': 'Staff', 'tags': ['magic', 'rare', '']},
    ]


@pytest.fixture
def item_container(item_table, item_rows):
    from config_encoder import encode_tables
    return encode_tables([item_table], {('Item', 'Item'): item_rows}, '1.2.3')


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
