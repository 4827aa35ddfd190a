"""Loading of versioned tax tables.

Tables are JSON payloads (see ``TaxTable.from_dict``). The tables shipped with
the package live in ``data/``; a deployment can point ``TAX_TABLE_PATH`` at
its own file when a new tax year is published.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path

from disbursement_engine.calculators.types import TaxTable
from disbursement_engine.errors import ConfigurationError

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_TABLE_VERSION = "2024/2025"

_BUNDLED = {
    "2024/2025": "za_2024_2025.json",
}


def load_table_file(path: str | Path) -> TaxTable:
    """Parse a tax table from a JSON file."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return TaxTable.from_dict(payload)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Tax table file not found: {path}") from e
    except (KeyError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid tax table {path}: {e}") from e


@lru_cache(maxsize=None)
def bundled_table(version: str = DEFAULT_TABLE_VERSION) -> TaxTable:
    """Return a table shipped with the package."""
    filename = _BUNDLED.get(version)
    if filename is None:
        raise ConfigurationError(
            f"No bundled tax table for {version}, available: {', '.join(sorted(_BUNDLED))}"
        )
    return load_table_file(DATA_DIR / filename)


def resolve_table(path: str | None = None) -> TaxTable:
    """Table from ``path`` when given, otherwise the default bundled table."""
    if path:
        return load_table_file(path)
    return bundled_table()
