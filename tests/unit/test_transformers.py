"""
Unit tests for row transformers and target row schemas
"""

from datetime import date, datetime

from refresh.tables import ASIN_PERFORMANCE, SEARCH_QUERY_PERFORMANCE, derive_funnel_rates
from refresh.transformers.performance import RowTransformer
from schemas.performance import SearchQueryPerformanceRow, coerce_date, coerce_float, coerce_int
from tests.fakes import make_asin_rows, make_search_query_rows

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0)


class TestCoercion:
    """Lenient numeric and date parsing"""
    
    def test_missing_numerics_default_to_zero(self):
        assert coerce_int(None) == 0
        assert coerce_int("") == 0
        assert coerce_int("abc") == 0
        assert coerce_float(None) == 0.0
        assert coerce_float("n/a") == 0.0
        assert coerce_float(float("nan")) == 0.0
    
    def test_numeric_strings_are_parsed(self):
        assert coerce_int("42") == 42
        assert coerce_int("42.9") == 42
        assert coerce_float("3.5") == 3.5
    
    def test_dates(self):
        assert coerce_date("2024-01-08") == date(2024, 1, 8)
        assert coerce_date({"value": "2024-01-08"}) == date(2024, 1, 8)
        assert coerce_date(datetime(2024, 1, 8, 5, 0)) == date(2024, 1, 8)
        assert coerce_date("not a date") is None
        assert coerce_date(None) is None
    
    def test_schema_applies_defaults(self):
        row = SearchQueryPerformanceRow(
            start_date="2024-01-01",
            end_date="2024-01-07",
            asin=" B0TEST ",
            search_query="cable",
            impressions=None,
            ctr_percentage="bad",
        )
        assert row.asin == "B0TEST"
        assert row.impressions == 0
        assert row.ctr_percentage == 0.0


class TestRowTransformer:
    """Transformation into target rows"""
    
    def test_asin_rows_transform(self):
        transformer = RowTransformer(ASIN_PERFORMANCE, clock=lambda: FIXED_NOW)
        rows = make_asin_rows(3)
        
        result = transformer.transform(rows)
        
        assert len(result.records) == 3
        assert result.skipped == 0
        assert result.records[0]["start_date"] == date(2024, 1, 1)
        assert result.records[0]["updated_at"] == FIXED_NOW
        assert result.last_start_date == rows[-1]["start_date"]
    
    def test_rows_missing_conflict_key_are_skipped(self):
        transformer = RowTransformer(ASIN_PERFORMANCE, clock=lambda: FIXED_NOW)
        rows = make_asin_rows(3)
        rows[1]["asin"] = None
        rows[2]["end_date"] = "garbage"
        
        result = transformer.transform(rows)
        
        assert len(result.records) == 1
        assert result.skipped == 2
        # the cursor still reflects the last source row
        assert result.last_start_date == rows[-1]["start_date"]
    
    def test_search_query_rows_get_derived_rates(self):
        transformer = RowTransformer(SEARCH_QUERY_PERFORMANCE, clock=lambda: FIXED_NOW)
        
        result = transformer.transform(make_search_query_rows(1))
        record = result.records[0]
        
        assert record["impressions"] == 1000
        assert record["cvr_percentage"] == 0.0
        assert record["click_share_percentage"] == 0.0
        assert record["cart_add_rate"] == 20.0
        assert record["purchase_rate"] == 50.0
    
    def test_empty_batch(self):
        result = RowTransformer(ASIN_PERFORMANCE).transform([])
        
        assert result.records == []
        assert result.last_start_date is None


def test_derive_funnel_rates_handles_zero_denominators():
    row = derive_funnel_rates({"clicks": 0, "cart_adds": 0, "purchases": 3})
    assert row["cart_add_rate"] == 0.0
    assert row["purchase_rate"] == 0.0
