"""
Unit tests for table definitions and batch query construction
"""

from datetime import date

import pytest

from core.exceptions import UnknownTableError
from refresh.tables import (
    ASIN_PERFORMANCE,
    SEARCH_QUERY_PERFORMANCE,
    build_batch_query,
    get_table_spec,
)


class TestBuildBatchQuery:
    """Deterministic, bounded warehouse queries"""
    
    def test_query_is_ordered_and_bounded(self):
        sql, params = build_batch_query(ASIN_PERFORMANCE, "proj.ds.src", limit=1000, offset=2000)
        
        assert "FROM `proj.ds.src`" in sql
        assert "ORDER BY start_date ASC, end_date ASC, asin ASC" in sql
        assert sql.rstrip().endswith("LIMIT 1000 OFFSET 2000")
        assert "SELECT DISTINCT" in sql
        assert params == {}
    
    def test_lookback_adds_named_parameter(self):
        sql, params = build_batch_query(
            SEARCH_QUERY_PERFORMANCE, "proj.ds.src", limit=10, offset=0, since=date(2024, 1, 1)
        )
        
        assert "start_date >= @since" in sql
        assert "search_query IS NOT NULL" in sql
        assert params == {"since": date(2024, 1, 1)}
    
    def test_update_columns_exclude_keys(self):
        columns = SEARCH_QUERY_PERFORMANCE.columns_to_update()
        
        assert "search_query" not in columns
        assert "id" not in columns
        assert "impressions" in columns
        assert "updated_at" in columns


def test_get_table_spec():
    assert get_table_spec("refresh-asin-performance") is ASIN_PERFORMANCE
    with pytest.raises(UnknownTableError):
        get_table_spec("refresh-nothing")
