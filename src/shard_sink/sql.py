from __future__ import annotations

from typing import Sequence

from psycopg import sql as psql

LIGHTWEIGHT_DELETE_SETTING = "allow_experimental_lightweight_delete"

# Engines that collapse rows sharing a sorting key, so a plain INSERT acts as upsert
REPLACING_ENGINES = frozenset(
    {
        "ReplacingMergeTree",
        "CollapsingMergeTree",
        "VersionedCollapsingMergeTree",
        "ReplicatedReplacingMergeTree",
        "ReplicatedCollapsingMergeTree",
        "ReplicatedVersionedCollapsingMergeTree",
    }
)


def is_replacing_engine(engine: str) -> bool:
    return (engine or "").strip() in REPLACING_ENGINES


def show_settings_like(name: str) -> psql.Composed:
    return psql.SQL("SHOW SETTINGS ILIKE {}").format(psql.Literal(f"%{name}%"))


def _where_keys(keys: Sequence[str]) -> psql.Composed:
    return psql.SQL(" AND ").join(
        psql.SQL("{} = {}").format(psql.Identifier(k), psql.Placeholder(k)) for k in keys
    )


def insert_statement(table: str, cols: Sequence[str]) -> psql.Composed:
    """INSERT INTO t (...) VALUES (...) with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    return psql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
        psql.Identifier(table), ins_cols, ins_vals
    )


def update_statement(
    table: str, update_cols: Sequence[str], key_cols: Sequence[str]
) -> psql.Composed:
    """ALTER TABLE t UPDATE a = %(a)s, ... WHERE pk = %(pk)s (mutation)."""
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = {}").format(psql.Identifier(c), psql.Placeholder(c)) for c in update_cols
    )
    return psql.SQL("ALTER TABLE {} UPDATE {} WHERE {}").format(
        psql.Identifier(table), setlist, _where_keys(key_cols)
    )


def delete_statement(
    table: str, key_cols: Sequence[str], *, lightweight: bool
) -> psql.Composed:
    """DELETE FROM (lightweight) or ALTER TABLE ... DELETE (mutation) by key."""
    if lightweight:
        return psql.SQL("DELETE FROM {} WHERE {}").format(
            psql.Identifier(table), _where_keys(key_cols)
        )
    return psql.SQL("ALTER TABLE {} DELETE WHERE {}").format(
        psql.Identifier(table), _where_keys(key_cols)
    )
