"""
Abstract base class for warehouse sources
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from refresh.tables import TableSpec


@dataclass
class SourceBatch:
    """Rows returned for one bounded fetch"""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    job_id: Optional[str] = None


class WarehouseSource(ABC):
    """
    Abstract base class for the columnar warehouse a table is pulled from.
    
    Implementations must return rows in the table's deterministic order so
    that an offset cursor identifies the same position on every call.
    """
    
    @abstractmethod
    async def fetch_batch(
        self,
        spec: TableSpec,
        offset: int,
        limit: int,
        since: Optional[date] = None
    ) -> SourceBatch:
        """
        Fetch at most ``limit`` rows starting at ``offset``.
        
        Args:
            spec: Table definition (projection, ordering, filters)
            offset: Rows already consumed by previous batches
            limit: Batch size
            since: Optional lower bound on start_date (lookback window)
        
        Raises:
            SourceError: subclasses describe transient vs permanent failures
        """
        pass
    
    async def close(self):
        """Release resources held by the source"""
        pass
