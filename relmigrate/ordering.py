"""
Insertion ordering: table dependency graph, table topological sort,
and parent-first ordering of rows in self-referential tables.

Nothing in here raises on odd metadata. Cycles fall back to catalog
(or input) order and are reported to the caller.
"""

from collections import deque
from typing import Any

from relmigrate.catalog import Row, TableDescriptor

DependencyGraph = dict[str, set[str]]
TableOrder = list[str]


# ═════════════════════════════════════════════════════════════
# Table level
# ═════════════════════════════════════════════════════════════

def build_dependency_graph(tables: list[TableDescriptor]) -> DependencyGraph:
    """Map each table to the set of tables it references through its own FK columns."""
    known = {t.name for t in tables}
    graph: DependencyGraph = {}
    for table in tables:
        deps = set()
        for f in table.relations:
            if not f.stores_foreign_key:
                continue
            if f.related_table not in known:
                continue
            if f.related_table != table.name:
                deps.add(f.related_table)
        graph[table.name] = deps
    return graph


def _kahn_tables(tables: list[TableDescriptor], graph: DependencyGraph) -> tuple[list[str], list[str]]:
    names = [t.name for t in tables]
    position = {name: i for i, name in enumerate(names)}
    in_degree = {name: len(graph.get(name, ())) for name in names}
    children: dict[str, list[str]] = {name: [] for name in names}
    for name in names:
        for parent in graph.get(name, ()):
            if parent in children:
                children[parent].append(name)
    for kids in children.values():
        kids.sort(key=position.__getitem__)

    queue = deque(name for name in names if in_degree[name] == 0)
    ordered = []
    while queue:
        name = queue.popleft()
        ordered.append(name)
        for child in children[name]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    done = set(ordered)
    remaining = [name for name in names if name not in done]
    return ordered, remaining


def sort_tables(tables: list[TableDescriptor], graph: DependencyGraph) -> TableOrder:
    """Order tables so every table comes after the tables it depends on.

    Ties are broken by catalog order. Tables caught in a cycle are appended
    at the end in catalog order, so every table appears exactly once.
    """
    ordered, remaining = _kahn_tables(tables, graph)
    return ordered + remaining


def cyclic_tables(tables: list[TableDescriptor], graph: DependencyGraph) -> list[str]:
    """Tables that could not be ordered because of a dependency cycle."""
    return _kahn_tables(tables, graph)[1]


# ═════════════════════════════════════════════════════════════
# Row level
# ═════════════════════════════════════════════════════════════

def self_reference_columns(table: TableDescriptor) -> list[str]:
    """FK columns on ``table`` that point back at ``table`` itself (e.g. parentTaskId)."""
    cols: list[str] = []
    for f in table.relations:
        if f.related_table != table.name:
            continue
        for col in f.fk_columns:
            if col not in cols:
                cols.append(col)
    return cols


def _kahn_rows(rows: list[Row], parent_column: str, key: str) -> tuple[list[Row], list[Row]]:
    by_id = {row[key]: row for row in rows}
    in_degree = {row[key]: 0 for row in rows}
    children: dict[Any, list[Any]] = {row[key]: [] for row in rows}

    for row in rows:
        parent = row.get(parent_column)
        if parent is None or parent not in by_id:
            continue
        in_degree[row[key]] += 1
        children[parent].append(row[key])

    queue = deque(row[key] for row in rows if in_degree[row[key]] == 0)
    ordered = []
    while queue:
        row_id = queue.popleft()
        ordered.append(by_id[row_id])
        for child in children[row_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    seen = {row[key] for row in ordered}
    remaining = [row for row in rows if row[key] not in seen]
    return ordered, remaining


def sort_rows(rows: list[Row], parent_column: str, key: str = "id") -> tuple[list[Row], bool]:
    """Order rows so each parent precedes its children.

    A parent value that is NULL or not present in ``rows`` counts as
    already resolved. Rows left over by a cycle are appended in their
    input order and ``has_cycle`` is True.
    """
    ordered, remaining = _kahn_rows(rows, parent_column, key)
    return ordered + remaining, bool(remaining)


def cyclic_rows(rows: list[Row], parent_column: str, key: str = "id") -> list[Row]:
    """Rows that sit on, or hang below, a parent cycle."""
    return _kahn_rows(rows, parent_column, key)[1]
