"""
Pydantic schemas for rows written to the synchronized target tables.

Missing or unparseable numerics become 0 and dates become None rather
than failing validation; the transformer decides whether a row without
its conflict key is usable.
"""

from pydantic import BaseModel, validator
from typing import Optional
from datetime import date, datetime


def coerce_int(value) -> int:
    """Integer coercion that treats junk as 0"""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def coerce_float(value) -> float:
    """Float coercion that treats junk (and NaN) as 0"""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if result == result else 0.0


def coerce_date(value) -> Optional[date]:
    """Accept date, datetime, ISO strings or {"value": "..."} wrappers"""
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def clean_text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class AsinPerformanceRow(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    asin: Optional[str] = None
    product_name: Optional[str] = None
    brand: Optional[str] = None
    
    @validator("start_date", "end_date", pre=True)
    def parse_dates(cls, v):
        return coerce_date(v)
    
    @validator("asin", "product_name", "brand", pre=True)
    def strip_text(cls, v):
        return clean_text(v)


class SearchQueryPerformanceRow(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    asin: Optional[str] = None
    search_query: Optional[str] = None
    
    impressions: int = 0
    clicks: int = 0
    cart_adds: int = 0
    purchases: int = 0
    total_units: int = 0
    
    ctr_percentage: float = 0.0
    cvr_percentage: float = 0.0
    cpc_dollars: float = 0.0
    spend_dollars: float = 0.0
    total_sales_dollars: float = 0.0
    
    search_impression_share_percentage: float = 0.0
    search_impression_rank_avg: float = 0.0
    click_share_percentage: float = 0.0
    click_rank_avg: float = 0.0
    
    cart_add_rate: float = 0.0
    purchase_rate: float = 0.0
    
    @validator("start_date", "end_date", pre=True)
    def parse_dates(cls, v):
        return coerce_date(v)
    
    @validator("asin", "search_query", pre=True)
    def strip_text(cls, v):
        return clean_text(v)
    
    @validator("impressions", "clicks", "cart_adds", "purchases", "total_units", pre=True)
    def parse_counts(cls, v):
        return coerce_int(v)
    
    @validator(
        "ctr_percentage", "cvr_percentage", "cpc_dollars", "spend_dollars",
        "total_sales_dollars", "search_impression_share_percentage",
        "search_impression_rank_avg", "click_share_percentage", "click_rank_avg",
        "cart_add_rate", "purchase_rate",
        pre=True,
    )
    def parse_metrics(cls, v):
        return coerce_float(v)
