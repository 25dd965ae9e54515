"""
Synchronized table definitions.

Each ``TableSpec`` ties a worker function name to its target model, the
warehouse projection that feeds it, the natural conflict key used for
idempotent upserts, and the deterministic ordering that makes offset
cursors stable across invocations.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from models.performance import AsinPerformanceData, SearchQueryPerformance
from schemas.performance import AsinPerformanceRow, SearchQueryPerformanceRow
from core.exceptions import UnknownTableError


@dataclass(frozen=True)
class TableSpec:
    function_name: str
    table_schema: str
    table_name: str
    model: Type
    row_schema: Type[BaseModel]
    conflict_keys: Tuple[str, ...]
    projection: str
    filters: Tuple[str, ...] = ()
    order_by: Tuple[str, ...] = ("start_date",)
    distinct: bool = False
    derive: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    update_columns: Tuple[str, ...] = field(default=())
    
    def columns_to_update(self) -> List[str]:
        """Non-key columns overwritten on conflict (last write wins)."""
        if self.update_columns:
            return list(self.update_columns)
        skip = set(self.conflict_keys) | {"id"}
        return [c.name for c in self.model.__table__.columns if c.name not in skip]


def build_batch_query(
    spec: TableSpec,
    source_table: str,
    limit: int,
    offset: int,
    since: Optional[date] = None
) -> Tuple[str, Dict[str, Any]]:
    """
    SQL for one bounded batch, ordered so that re-running a batch after a
    crash sees the same rows at the same offsets. New source rows for
    later periods sort after everything already read.
    
    Returns:
        (sql, named parameters)
    """
    filters = list(spec.filters)
    params: Dict[str, Any] = {}
    if since is not None:
        filters.append("start_date >= @since")
        params["since"] = since
    
    where = f"WHERE {' AND '.join(filters)}" if filters else ""
    select_kw = "SELECT DISTINCT" if spec.distinct else "SELECT"
    order = ", ".join(f"{col} ASC" for col in spec.order_by)
    
    sql = (
        f"SELECT * FROM (\n"
        f"  {select_kw} {spec.projection}\n"
        f"  FROM `{source_table}`\n"
        f")\n"
        f"{where}\n"
        f"ORDER BY {order}\n"
        f"LIMIT {int(limit)} OFFSET {int(offset)}"
    )
    return sql, params


def derive_funnel_rates(row: Dict[str, Any]) -> Dict[str, Any]:
    """cart_add_rate = cart adds / clicks, purchase_rate = purchases / cart adds (percent)."""
    clicks = row.get("clicks") or 0
    cart_adds = row.get("cart_adds") or 0
    purchases = row.get("purchases") or 0
    row["cart_add_rate"] = cart_adds / clicks * 100 if clicks > 0 else 0.0
    row["purchase_rate"] = purchases / cart_adds * 100 if cart_adds > 0 else 0.0
    return row


ASIN_PERFORMANCE = TableSpec(
    function_name="refresh-asin-performance",
    table_schema="sqp",
    table_name="asin_performance_data",
    model=AsinPerformanceData,
    row_schema=AsinPerformanceRow,
    conflict_keys=("start_date", "end_date", "asin"),
    projection=(
        "PARSE_DATE('%Y-%m-%d', `Start Date`) AS start_date, "
        "PARSE_DATE('%Y-%m-%d', `End Date`) AS end_date, "
        "`Child ASIN` AS asin, "
        "`Product Name` AS product_name, "
        "`Brand` AS brand"
    ),
    filters=("asin IS NOT NULL",),
    order_by=("start_date", "end_date", "asin"),
    distinct=True,
)

SEARCH_QUERY_PERFORMANCE = TableSpec(
    function_name="refresh-search-queries",
    table_schema="sqp",
    table_name="search_query_performance",
    model=SearchQueryPerformance,
    row_schema=SearchQueryPerformanceRow,
    conflict_keys=("start_date", "end_date", "asin", "search_query"),
    projection=(
        "PARSE_DATE('%Y-%m-%d', `Start Date`) AS start_date, "
        "PARSE_DATE('%Y-%m-%d', `End Date`) AS end_date, "
        "`Child ASIN` AS asin, "
        "`Search Query` AS search_query, "
        "`Impressions` AS impressions, "
        "`Clicks` AS clicks, "
        "`Cart Adds` AS cart_adds, "
        "`Total Orders (#)` AS purchases, "
        "`Total Units (#)` AS total_units, "
        "`CTR (%)` AS ctr_percentage, "
        "`CVR (%)` AS cvr_percentage, "
        "`CPC ($)` AS cpc_dollars, "
        "`Spend ($)` AS spend_dollars, "
        "`Total Sales  ($)` AS total_sales_dollars, "
        "CAST(`Search Impression Share (%)` AS FLOAT64) AS search_impression_share_percentage, "
        "CAST(`Search Impression Rank (avg)` AS FLOAT64) AS search_impression_rank_avg, "
        "CAST(`Click Share (%)` AS FLOAT64) AS click_share_percentage, "
        "CAST(`Click Rank (avg)` AS FLOAT64) AS click_rank_avg"
    ),
    filters=("asin IS NOT NULL", "search_query IS NOT NULL"),
    order_by=("start_date", "end_date", "asin", "search_query"),
    derive=derive_funnel_rates,
)

TABLE_SPECS: Dict[str, TableSpec] = {
    spec.function_name: spec for spec in (ASIN_PERFORMANCE, SEARCH_QUERY_PERFORMANCE)
}


def get_table_spec(function_name: str) -> TableSpec:
    try:
        return TABLE_SPECS[function_name]
    except KeyError:
        raise UnknownTableError(
            f"No refresh function registered as {function_name}",
            context={"function_name": function_name}
        )
