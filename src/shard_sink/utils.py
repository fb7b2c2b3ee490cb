"""
Utility functions for the shard sink.

NDJSON reading and mapping -> Record coercion used by the CLI loader.
"""

import json
from typing import IO, Any, Dict, Iterator, Mapping

from .errors import WriteError
from .models import Record, RowKind, RowSchema

KIND_FIELD = "_kind"


def iter_ndjson(stream: IO[str]) -> Iterator[Dict[str, Any]]:
    """Yield one JSON object per non-blank line."""
    for lineno, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            raise WriteError(f"Line {lineno}: invalid JSON ({e.msg})") from e
        if not isinstance(obj, dict):
            raise WriteError(f"Line {lineno}: expected a JSON object")
        yield obj


def record_from_mapping(obj: Mapping[str, Any], schema: RowSchema) -> Record:
    """Order ``obj`` by the schema; missing fields become None."""
    unknown = set(obj) - set(schema.fields) - {KIND_FIELD}
    if unknown:
        raise WriteError(f"Unknown field(s): {sorted(unknown)}")
    try:
        kind = RowKind.parse(obj.get(KIND_FIELD, RowKind.INSERT))
    except ValueError as e:
        raise WriteError(str(e)) from e
    return Record(tuple(obj.get(name) for name in schema.fields), kind)
