"""Tests for statement builders and range-query option validation."""

from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy.dialects import postgresql, sqlite

from tilestore.exceptions import UnsupportedFeatureError, ValidationError
from tilestore.models import tile_table
from tilestore.queries import (
    TileQuery,
    delete_tile,
    select_range,
    select_tile,
    select_tile_size,
    upsert_tile,
)


def sql(stmt, dialect=None) -> str:
    compiled = stmt.compile(dialect=dialect or sqlite.dialect())
    return " ".join(str(compiled).split())


@pytest.fixture
def table():
    return tile_table("tiles")


class TestPointStatements:
    """Tests for read, write and delete by primary key."""

    def test_select_tile(self, table) -> None:
        text = sql(select_tile(table, 3, 5))
        assert "SELECT tiles.tile" in text
        assert "tiles.zoom = ?" in text
        assert "tiles.idx = ?" in text

    def test_select_tile_size(self, table) -> None:
        text = sql(select_tile_size(table, 3, 5))
        assert "length(tiles.tile) AS len" in text

    def test_delete(self, table) -> None:
        text = sql(delete_tile(table, 3, 5))
        assert text.startswith("DELETE FROM tiles")

    def test_table_name_is_quoted_identifier(self) -> None:
        text = sql(select_tile(tile_table("Select"), 1, 0))
        assert '"Select"' in text

    def test_values_are_bound(self, table) -> None:
        compiled = select_tile(table, 7, 42).compile(dialect=sqlite.dialect())
        assert "42" not in str(compiled)
        assert set(compiled.params.values()) == {7, 42}


class TestUpsert:
    """Tests for the write statement shapes."""

    def test_native_sqlite(self, table) -> None:
        stmts = upsert_tile(table, 3, 5, b"data", "sqlite")
        assert len(stmts) == 1
        assert "ON CONFLICT (zoom, idx) DO UPDATE" in sql(stmts[0])

    def test_native_postgresql(self, table) -> None:
        stmts = upsert_tile(table, 3, 5, b"data", "postgresql")
        assert len(stmts) == 1
        text = sql(stmts[0], postgresql.dialect())
        assert "ON CONFLICT (zoom, idx) DO UPDATE" in text

    def test_update_then_guarded_insert(self, table) -> None:
        stmts = upsert_tile(table, 3, 5, b"data", "sqlite", atomic=False)
        assert len(stmts) == 2
        update, insert = (sql(s) for s in stmts)
        assert update.startswith("UPDATE tiles SET tile=?")
        assert insert.startswith("INSERT INTO tiles (zoom, idx, tile) SELECT")
        assert "WHERE NOT" in insert
        assert "EXISTS (SELECT tiles.idx FROM tiles" in insert

    def test_dialect_without_native_upsert(self, table) -> None:
        stmts = upsert_tile(table, 3, 5, b"data", "mssql")
        assert len(stmts) == 2


class TestSelectRange:
    """Tests for the range scan statement."""

    def test_only_zoom(self, table) -> None:
        text = sql(select_range(table, TileQuery.parse(zoom=4)))
        assert text.startswith("SELECT tiles.idx FROM tiles")
        assert "WHERE tiles.zoom = ?" in text
        assert "AND" not in text
        assert "ORDER BY tiles.idx" in text

    def test_include_tile(self, table) -> None:
        text = sql(select_range(table, TileQuery.parse(zoom=4, include_tile=True)))
        assert text.startswith("SELECT tiles.idx, tiles.tile FROM tiles")

    def test_all_filters(self, table) -> None:
        query = TileQuery.parse(
            zoom=4, idx_from=10, idx_before=20, bigger_than=5, smaller_than=100
        )
        text = sql(select_range(table, query))
        assert "tiles.idx >= ?" in text
        assert "tiles.idx < ?" in text
        assert "length(tiles.tile) < ?" in text
        assert "length(tiles.tile) >= ?" in text

    def test_supplied_filters_only(self, table) -> None:
        text = sql(select_range(table, TileQuery.parse(zoom=4, smaller_than=10)))
        assert "length(tiles.tile) < ?" in text
        assert "tiles.idx >=" not in text
        assert "tiles.idx <" not in text


class TestTileQuery:
    """Tests for option validation."""

    def test_zoom_required(self) -> None:
        with pytest.raises(ValidationError):
            TileQuery.parse()

    @pytest.mark.parametrize("zoom", ["3", 3.0, None, True, -1])
    def test_zoom_must_be_integer(self, zoom) -> None:
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=zoom)

    def test_idx_must_be_integer(self) -> None:
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=3, idx_from="1")
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=3, idx_before=2.5)

    def test_inverted_bounds(self) -> None:
        with pytest.raises(ValidationError, match="idx_from <= idx_before"):
            TileQuery.parse(zoom=3, idx_from=20, idx_before=10)

    def test_bound_beyond_zoom_level(self) -> None:
        TileQuery.parse(zoom=2, idx_before=16)
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=2, idx_before=17)
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=2, idx_from=17)

    def test_empty_range_is_valid(self) -> None:
        query = TileQuery.parse(zoom=2, idx_from=5, idx_before=5)
        assert query.idx_from == query.idx_before == 5

    def test_smaller_than_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=3, smaller_than=0)

    def test_size_filters_must_be_numbers(self) -> None:
        with pytest.raises(ValidationError):
            TileQuery.parse(zoom=3, bigger_than="10")
        assert TileQuery.parse(zoom=3, bigger_than=1.5).bigger_than == 1.5

    def test_date_filter_unsupported(self) -> None:
        with pytest.raises(UnsupportedFeatureError):
            TileQuery.parse(zoom=3, date_from=datetime(2024, 1, 1))
        with pytest.raises(UnsupportedFeatureError):
            TileQuery.parse(zoom=3, date_before=datetime(2024, 1, 1))

    def test_inverted_date_range(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            TileQuery.parse(
                zoom=3,
                date_from=datetime(2024, 2, 1),
                date_before=datetime(2024, 1, 1),
            )
        assert not isinstance(exc_info.value, UnsupportedFeatureError)
