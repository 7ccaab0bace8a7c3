"""
Resolve source file identifiers to target tables.

Identifiers follow the convention:

    [<schema>/]<table>[_full|_incremental][-<anything>]<extension>

For example "sales/orders_full-v2.csv" loads into sales.orders with a full
replace, while "orders.csv" loads into the default schema with the default
load mode.
"""

from dataclasses import dataclass
from enum import Enum

from batchloader.context import TableKey

FULL_MARKER = "_full"
INCREMENTAL_MARKER = "_incremental"


class LoadMode(str, Enum):
    FULL = "full"       # Replace table contents
    APPEND = "append"   # Append to existing rows


@dataclass(frozen=True)
class ResolvedTable:
    """Target of a single source file."""
    schema: str
    table: str
    load_mode: LoadMode
    file_name: str

    @property
    def key(self) -> TableKey:
        return TableKey(self.schema, self.table)


def apply_strip_patterns(name: str, strip_patterns: tuple[str, ...] | list[str]) -> str:
    """Remove the first occurrence of each pattern, in listed order."""
    for pattern in strip_patterns:
        if pattern:
            name = name.replace(pattern, "", 1)
    return name


def resolve_table(
    identifier: str,
    default_schema: str,
    default_load_mode: LoadMode | str,
    strip_patterns: tuple[str, ...] | list[str] = (),
    extension: str = ".csv",
) -> ResolvedTable:
    """
    Map a file identifier to (schema, table, load mode).

    Deterministic and side-effect free.

    Args:
        identifier: Path of the file relative to the source root
        default_schema: Schema used when the identifier has no directory
        default_load_mode: Load mode used when the name carries no marker
        strip_patterns: Substrings removed from the table name, first match only
        extension: File extension removed from the table name

    Returns:
        The resolved target
    """
    if "/" in identifier:
        schema, file_name = identifier.split("/", 1)
    else:
        schema, file_name = default_schema, identifier

    if FULL_MARKER in file_name:
        load_mode = LoadMode.FULL
    elif INCREMENTAL_MARKER in file_name:
        load_mode = LoadMode.APPEND
    else:
        load_mode = LoadMode(default_load_mode)

    table = file_name.removesuffix(extension) if extension else file_name
    table = table.split("-", 1)[0]
    table = table.replace(FULL_MARKER, "", 1).replace(INCREMENTAL_MARKER, "", 1)
    table = apply_strip_patterns(table, strip_patterns)

    return ResolvedTable(schema=schema, table=table, load_mode=load_mode, file_name=file_name)
