from sqlalchemy import Column, Integer, BigInteger, String, Date, DateTime, Float, Text, UniqueConstraint
from models.base import Base, utcnow


class AsinPerformanceData(Base):
    """
    Product-level rows synchronized from the warehouse.
    
    Conflict key: (start_date, end_date, asin)
    """
    __tablename__ = "asin_performance_data"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    asin = Column(String(20), nullable=False)
    product_name = Column(Text, nullable=True)
    brand = Column(String(255), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        UniqueConstraint("start_date", "end_date", "asin", name="uq_asin_performance_period"),
    )


class SearchQueryPerformance(Base):
    """
    Search-query funnel rows per product and period.
    
    Conflict key: (start_date, end_date, asin, search_query)
    """
    __tablename__ = "search_query_performance"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    asin = Column(String(20), nullable=False)
    search_query = Column(Text, nullable=False)
    
    # Funnel
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    cart_adds = Column(BigInteger, nullable=False, default=0)
    purchases = Column(BigInteger, nullable=False, default=0)
    total_units = Column(BigInteger, nullable=False, default=0)
    
    # Performance
    ctr_percentage = Column(Float, nullable=False, default=0)
    cvr_percentage = Column(Float, nullable=False, default=0)
    cpc_dollars = Column(Float, nullable=False, default=0)
    spend_dollars = Column(Float, nullable=False, default=0)
    total_sales_dollars = Column(Float, nullable=False, default=0)
    
    # Market share
    search_impression_share_percentage = Column(Float, nullable=False, default=0)
    search_impression_rank_avg = Column(Float, nullable=False, default=0)
    click_share_percentage = Column(Float, nullable=False, default=0)
    click_rank_avg = Column(Float, nullable=False, default=0)
    
    # Derived
    cart_add_rate = Column(Float, nullable=False, default=0)
    purchase_rate = Column(Float, nullable=False, default=0)
    
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    
    __table_args__ = (
        UniqueConstraint(
            "start_date", "end_date", "asin", "search_query",
            name="uq_search_query_performance_period",
        ),
    )
