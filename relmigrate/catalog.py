"""
Schema catalog: table/field descriptors and the readers that build them.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from relmigrate import INTERNAL_TABLE_PREFIXES

# Column name -> value (str, int, float, Decimal, bool, date/time, or None)
Row = dict[str, Any]


# ═════════════════════════════════════════════════════════════
# Descriptors
# ═════════════════════════════════════════════════════════════

class FieldKind(str, Enum):
    SCALAR = "scalar"
    RELATION = "relation"
    ENUM = "enum"
    UNSUPPORTED = "unsupported"


# Kinds whose values are read from the source and written to the destination
COPYABLE_KINDS = (FieldKind.SCALAR, FieldKind.ENUM)


@dataclass(frozen=True)
class FieldDescriptor:
    """One field of a table.

    Relation fields name the table they point at. ``fk_columns`` lists the
    columns on *this* table that physically hold the foreign key; it is
    empty for inverse relations (the "many" side), which never create a
    dependency.
    """
    name: str
    kind: FieldKind
    related_table: Optional[str] = None
    fk_columns: tuple[str, ...] = ()
    data_type: str = ""

    @property
    def stores_foreign_key(self) -> bool:
        return self.kind == FieldKind.RELATION and len(self.fk_columns) > 0


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    fields: tuple[FieldDescriptor, ...] = field(default_factory=tuple)
    primary_key: Optional[str] = "id"

    @property
    def columns(self) -> list[str]:
        """Physical columns that are copied, in catalog order."""
        return [f.name for f in self.fields if f.kind in COPYABLE_KINDS]

    @property
    def relations(self) -> list[FieldDescriptor]:
        return [f for f in self.fields if f.kind == FieldKind.RELATION]


def is_internal_table(name: str) -> bool:
    return name.startswith(INTERNAL_TABLE_PREFIXES)


# ═════════════════════════════════════════════════════════════
# Assembly from introspected metadata
# ═════════════════════════════════════════════════════════════

def build_table_descriptors(
    table_names: list[str],
    columns: list[dict],
    foreign_keys: list[dict],
    primary_keys: dict[str, list[str]],
) -> list[TableDescriptor]:
    """Turn raw information-schema rows into descriptors.

    ``columns`` holds dicts with ``table``, ``column``, ``data_type`` and
    ``kind``; ``foreign_keys`` holds dicts with ``table``, ``name``,
    ``columns`` and ``ref_table``. Every foreign key yields a forward
    relation on the owning table and an inverse relation (no FK columns)
    on the referenced table.
    """
    fields_by_table: dict[str, list[FieldDescriptor]] = {name: [] for name in table_names}

    for col in columns:
        if col["table"] not in fields_by_table:
            continue
        fields_by_table[col["table"]].append(
            FieldDescriptor(
                name=col["column"],
                kind=FieldKind(col.get("kind", FieldKind.SCALAR)),
                data_type=col.get("data_type", ""),
            )
        )

    for fk in foreign_keys:
        owner, target = fk["table"], fk["ref_table"]
        fk_cols = tuple(fk["columns"])
        if owner in fields_by_table:
            fields_by_table[owner].append(
                FieldDescriptor(
                    name=fk.get("name") or "fk_" + "_".join(fk_cols),
                    kind=FieldKind.RELATION,
                    related_table=target,
                    fk_columns=fk_cols,
                )
            )
        if target in fields_by_table:
            fields_by_table[target].append(
                FieldDescriptor(
                    name=f"{owner}__{'_'.join(fk_cols)}",
                    kind=FieldKind.RELATION,
                    related_table=owner,
                )
            )

    descriptors = []
    for name in table_names:
        pk = primary_keys.get(name, [])
        descriptors.append(
            TableDescriptor(
                name=name,
                fields=tuple(fields_by_table[name]),
                primary_key=pk[0] if len(pk) == 1 else None,
            )
        )
    return descriptors


def read_catalog(store, exclude: Iterable[str] = ()) -> list[TableDescriptor]:
    """Read the table catalog from a live store, minus internal and excluded tables."""
    excluded = set(exclude)
    return [
        t for t in store.describe_tables()
        if not is_internal_table(t.name) and t.name not in excluded
    ]


# ═════════════════════════════════════════════════════════════
# Catalog file
# ═════════════════════════════════════════════════════════════

def load_catalog_file(path: Path, exclude: Iterable[str] = ()) -> list[TableDescriptor]:
    """Load descriptors from a JSON catalog file.

    Expected format::

        {"tables": [
            {"name": "Task", "primary_key": "id",
             "fields": [
                {"name": "id", "kind": "scalar"},
                {"name": "parentTaskId", "kind": "scalar"},
                {"name": "parent", "kind": "relation",
                 "related_table": "Task", "fk_columns": ["parentTaskId"]}
             ]}
        ]}
    """
    try:
        data = json.loads(Path(path).read_text())
    except OSError as e:
        raise RuntimeError(f"Cannot read catalog file {path}: {e}")
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Invalid JSON in catalog file {path}: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("tables"), list):
        raise RuntimeError(f"Catalog file {path} must contain a \"tables\" list")

    excluded = set(exclude)
    tables = []
    for raw in data["tables"]:
        try:
            name = raw["name"]
            fields = tuple(
                FieldDescriptor(
                    name=f["name"],
                    kind=FieldKind(f.get("kind", "scalar")),
                    related_table=f.get("related_table"),
                    fk_columns=tuple(f.get("fk_columns") or ()),
                    data_type=f.get("data_type", ""),
                )
                for f in raw.get("fields", [])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RuntimeError(f"Malformed table entry in catalog file {path}: {e}")
        if is_internal_table(name) or name in excluded:
            continue
        tables.append(TableDescriptor(name=name, fields=fields, primary_key=raw.get("primary_key", "id")))
    return tables
