"""
Unit tests for SinkSettings loading and conversion.
"""

import json
import os

import pytest

from shard_sink.config import load_settings, split_keys
from shard_sink.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """No stray SHARD_SINK_* variables or .env file leak into tests."""
    for name in list(os.environ):
        if name.upper().startswith("SHARD_SINK_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_defaults_from_overrides():
    s = load_settings(table="events", columns="id, name")
    assert s.bulk_size == 20_000
    assert s.batch_interval_ms == 1_000
    assert s.split_mode is False
    assert s.to_schema().fields == ("id", "name")
    assert s.primary_keys == ()


def test_env_variables(monkeypatch):
    monkeypatch.setenv("SHARD_SINK_TABLE", "events")
    monkeypatch.setenv("SHARD_SINK_COLUMNS", "id,name,amount")
    monkeypatch.setenv("SHARD_SINK_BULK_SIZE", "500")
    monkeypatch.setenv("SHARD_SINK_PRIMARY_KEY", "id, name")
    monkeypatch.setenv("SHARD_SINK_SUPPORT_UPSERT", "true")
    s = load_settings()
    assert s.bulk_size == 500
    assert s.primary_keys == ("id", "name")
    assert s.support_upsert is True


def test_env_file(tmp_path):
    (tmp_path / ".env").write_text("SHARD_SINK_TABLE=from_file\nSHARD_SINK_COLUMNS=a,b\n")
    s = load_settings()
    assert s.table == "from_file"


def test_shards_json_to_metadata(monkeypatch):
    shards = [
        {"shard_id": 2, "host": "ch-2", "weight": 3},
        {"shard_id": 1, "host": "ch-1"},
    ]
    monkeypatch.setenv("SHARD_SINK_SHARDS", json.dumps(shards))
    s = load_settings(
        table="events",
        columns="id",
        split_mode=True,
        shard_key="id",
        database="analytics",
        table_engine="ReplacingMergeTree",
    )
    meta = s.to_metadata()
    assert meta.split_mode is True
    assert [x.shard_id for x in meta.shards] == [2, 1]
    assert meta.default_shard.shard_id == 2
    assert meta.shards[0].weight == 3
    assert meta.shards[0].table == "events"
    assert meta.shards[0].table_engine == "ReplacingMergeTree"
    assert meta.shards[1].dsn == "host=ch-1 port=9005 dbname=analytics"


def test_default_shard_without_topology():
    s = load_settings(table="events", columns="id", host="ch-0", port=9100)
    meta = s.to_metadata()
    assert meta.shards == []
    assert meta.default_shard.dsn == "host=ch-0 port=9100 dbname=default"


def test_missing_required_fields():
    with pytest.raises(ConfigurationError, match="Invalid sink settings"):
        load_settings()


@pytest.mark.parametrize("field", ["bulk_size", "batch_interval_ms"])
def test_non_positive_thresholds(field):
    with pytest.raises(ConfigurationError, match=field):
        load_settings(table="events", columns="id", **{field: 0})


def test_bad_shard_spec():
    s = load_settings(table="events", columns="id", shards=[{"shard_id": 1, "weight": -1}])
    with pytest.raises(ConfigurationError, match="Invalid shard configuration"):
        s.to_metadata()


def test_split_keys():
    assert split_keys(None) == ()
    assert split_keys(" a, b,,c ") == ("a", "b", "c")
