"""
Load transformed rows into the target store with upsert logic (idempotency)
"""

import asyncio
from typing import Any, Dict, List
import logging

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from refresh.tables import TableSpec
from core.exceptions import TargetTransientError, UpsertError

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

# Stay well under PostgreSQL's 65535 bind-parameter limit
MAX_PARAMETERS_PER_STATEMENT = 30000


class UpsertLoader:
    """
    Idempotent batch upsert keyed by a table's natural conflict key.
    
    Ensures:
    - No duplicate rows on repeated runs
    - Non-key columns take the values of the latest fetch (last write wins)
    - Duplicate keys inside one batch collapse to the last occurrence
    - A hanging statement is cut off after ``timeout_seconds``
    """
    
    def __init__(self, db_session: AsyncSession, timeout_seconds: float = 30.0):
        self.db = db_session
        self.timeout_seconds = timeout_seconds
    
    def _dedupe(self, spec: TableSpec, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        by_key: Dict[tuple, Dict[str, Any]] = {}
        for record in records:
            by_key[tuple(record[k] for k in spec.conflict_keys)] = record
        return list(by_key.values())
    
    def _insert_for_dialect(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise UpsertError(
                f"Upsert is not supported on dialect {dialect}",
                context={"dialect": dialect}
            )
    
    async def load(self, spec: TableSpec, records: List[Dict[str, Any]]) -> int:
        """
        Upsert records (INSERT ... ON CONFLICT DO UPDATE) and commit.
        
        Returns:
            Number of distinct rows written
        
        Raises:
            UpsertError: the statement failed or timed out
            TargetTransientError: the connection to the store dropped
        """
        if not records:
            return 0
        
        rows = self._dedupe(spec, records)
        insert = self._insert_for_dialect()
        update_columns = spec.columns_to_update()
        chunk_size = max(1, MAX_PARAMETERS_PER_STATEMENT // max(len(rows[0]), 1))
        
        try:
            await asyncio.wait_for(
                self._execute(insert, spec, rows, update_columns, chunk_size),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            await self.db.rollback()
            raise UpsertError(
                f"Upsert into {spec.table_name} timed out",
                context={
                    "table_name": spec.table_name,
                    "batch_size": len(rows),
                    "timeout_seconds": self.timeout_seconds
                },
                original_exception=e
            )
        except OperationalError as e:
            await self.db.rollback()
            raise TargetTransientError(
                f"Connection to target store failed during upsert into {spec.table_name}",
                context={"table_name": spec.table_name, "batch_size": len(rows)},
                original_exception=e
            )
        except DBAPIError as e:
            await self.db.rollback()
            raise UpsertError(
                f"Upsert into {spec.table_name} failed",
                context={
                    "table_name": spec.table_name,
                    "conflict_fields": list(spec.conflict_keys),
                    "batch_size": len(rows)
                },
                original_exception=e
            )
        
        logger.info(f"Upserted {len(rows)} rows into {spec.table_name}")
        return len(rows)
    
    async def _execute(self, insert, spec: TableSpec, rows, update_columns, chunk_size):
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start:start + chunk_size]
            stmt = insert(spec.model).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(spec.conflict_keys),
                set_={col: stmt.excluded[col] for col in update_columns}
            )
            await self.db.execute(stmt)
        await self.db.commit()
