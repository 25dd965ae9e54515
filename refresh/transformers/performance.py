"""
Transform warehouse rows into target table rows with Pydantic validation
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from refresh.tables import TableSpec

logger = logging.getLogger(__name__)


@dataclass
class TransformResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    skipped: int = 0
    last_start_date: Optional[str] = None


class RowTransformer:
    """
    Map warehouse rows onto a target table.
    
    Handles:
    - Type coercion (missing numerics → 0, bad dates → None)
    - Derived metrics
    - Skipping rows that lack a conflict-key value
    
    A bad row never fails the batch; it is skipped and counted.
    """
    
    def __init__(self, spec: TableSpec, clock: Optional[Callable[[], datetime]] = None):
        self.spec = spec
        self.clock = clock or datetime.utcnow
    
    def transform(self, rows: List[Dict[str, Any]]) -> TransformResult:
        result = TransformResult()
        updated_at = self.clock()
        
        for index, raw in enumerate(rows):
            row = self.spec.row_schema(**raw).model_dump()
            
            # The cursor follows source order, skipped rows included
            if row.get("start_date") is not None:
                result.last_start_date = row["start_date"].isoformat()
            
            missing = [key for key in self.spec.conflict_keys if row.get(key) is None]
            if missing:
                result.skipped += 1
                logger.warning(
                    f"Skipping {self.spec.table_name} row {index}: missing {', '.join(missing)}"
                )
                continue
            
            if self.spec.derive:
                row = self.spec.derive(row)
            row["updated_at"] = updated_at
            result.records.append(row)
        
        if result.skipped:
            logger.info(f"Transformed {len(result.records)} rows, skipped {result.skipped}")
        return result
