"""
Checkpoint store: lease-based progress markers for table refreshes.

A checkpoint row with ``status = 'active'`` is both the resume cursor and
the per-table mutex (a partial unique index allows one active row per
function/schema/table). Holders renew the lease on every advance; an
expired lease can be reclaimed by the next caller or by maintenance.
All mutations are compare-and-swap updates on (id, status, version).
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.base import CheckpointStatus
from models.checkpoint import RefreshCheckpoint
from schemas.refresh import ReclaimedCheckpoint
from core.exceptions import CheckpointError, CheckpointConflictError

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Lease-style checkpoint management.
    
    Responsibilities:
    - Acquire a fresh checkpoint or resume the active one
    - Advance the cursor idempotently and renew the lease
    - Complete the checkpoint, releasing the mutex
    - Reclaim leases whose holder stopped renewing them
    """
    
    def __init__(
        self,
        db_session: AsyncSession,
        lease_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db_session
        self.lease = timedelta(seconds=lease_seconds)
        self.clock = clock or datetime.utcnow
    
    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    
    async def get(self, checkpoint_id: int) -> Optional[RefreshCheckpoint]:
        return await self.db.get(RefreshCheckpoint, checkpoint_id, populate_existing=True)
    
    async def find_active(
        self,
        function_name: str,
        table_schema: str,
        table_name: str
    ) -> Optional[RefreshCheckpoint]:
        result = await self.db.execute(
            select(RefreshCheckpoint)
            .where(
                RefreshCheckpoint.function_name == function_name,
                RefreshCheckpoint.table_schema == table_schema,
                RefreshCheckpoint.table_name == table_name,
                RefreshCheckpoint.status == CheckpointStatus.ACTIVE,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()
    
    async def list_active(self) -> List[RefreshCheckpoint]:
        result = await self.db.execute(
            select(RefreshCheckpoint)
            .where(RefreshCheckpoint.status == CheckpointStatus.ACTIVE)
            .order_by(RefreshCheckpoint.created_at)
        )
        return list(result.scalars().all())
    
    # ------------------------------------------------------------------
    # Lease lifecycle
    # ------------------------------------------------------------------
    
    async def acquire_or_resume(
        self,
        function_name: str,
        table_schema: str,
        table_name: str,
        audit_log_id: Optional[int] = None,
        initial_cursor: Optional[Dict[str, Any]] = None
    ) -> RefreshCheckpoint:
        """
        Return the active checkpoint for this identity, creating one if needed.
        
        - active, unexpired: resumed (ownership moves to ``audit_log_id``)
        - active, expired: reclaimed, then resumed
        - none: a fresh checkpoint holding ``initial_cursor`` (offset 0)
        
        A resumed checkpoint keeps its own cursor; ``initial_cursor`` only
        applies to a fresh one.
        
        Losing the insert race to a concurrent caller resumes the winner's row.
        """
        existing = await self.find_active(function_name, table_schema, table_name)
        if existing is not None:
            return await self._resume(existing, audit_log_id)
        
        now = self.clock()
        checkpoint = RefreshCheckpoint(
            function_name=function_name,
            table_schema=table_schema,
            table_name=table_name,
            status=CheckpointStatus.ACTIVE,
            checkpoint_data=dict(initial_cursor or {"offset": 0}),
            last_processed_row=0,
            version=1,
            audit_log_id=audit_log_id,
            reclaim_count=0,
            expires_at=now + self.lease,
            created_at=now,
            updated_at=now,
        )
        self.db.add(checkpoint)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                f"Concurrent checkpoint creation for {function_name}/{table_name}; "
                f"resuming the existing lease"
            )
            winner = await self.find_active(function_name, table_schema, table_name)
            if winner is None:
                raise CheckpointError(
                    "Checkpoint insert conflicted but no active checkpoint was found",
                    context={
                        "function_name": function_name,
                        "table_name": table_name,
                        "operation": "acquire"
                    }
                )
            return await self._resume(winner, audit_log_id)
        
        logger.info(f"Checkpoint {checkpoint.id} created for {function_name}/{table_name}")
        return checkpoint
    
    async def _resume(
        self,
        checkpoint: RefreshCheckpoint,
        audit_log_id: Optional[int]
    ) -> RefreshCheckpoint:
        now = self.clock()
        
        if checkpoint.expires_at <= now:
            return await self._reclaim(checkpoint, new_owner=audit_log_id)
        
        if audit_log_id is None or checkpoint.audit_log_id == audit_log_id:
            logger.info(
                f"Resuming checkpoint {checkpoint.id} for {checkpoint.table_name} "
                f"at offset {checkpoint.offset}"
            )
            return checkpoint
        
        previous_owner = checkpoint.audit_log_id
        swapped = await self._compare_and_set(
            checkpoint,
            audit_log_id=audit_log_id,
            expires_at=now + self.lease,
        )
        if not swapped:
            raise CheckpointConflictError(
                "Checkpoint changed while taking over the lease",
                context={
                    "checkpoint_id": checkpoint.id,
                    "table_name": checkpoint.table_name,
                    "operation": "acquire"
                }
            )
        logger.info(
            f"Checkpoint {checkpoint.id} for {checkpoint.table_name} taken over "
            f"(audit {previous_owner} -> {audit_log_id}) at offset {checkpoint.offset}"
        )
        return checkpoint
    
    async def _reclaim(
        self,
        checkpoint: RefreshCheckpoint,
        new_owner: Optional[int] = None
    ) -> RefreshCheckpoint:
        previous_owner = checkpoint.audit_log_id
        swapped = await self._compare_and_set(
            checkpoint,
            audit_log_id=new_owner,
            expires_at=self.clock() + self.lease,
            reclaim_count=(checkpoint.reclaim_count or 0) + 1,
        )
        if not swapped:
            raise CheckpointConflictError(
                "Expired checkpoint was reclaimed by another caller",
                context={
                    "checkpoint_id": checkpoint.id,
                    "table_name": checkpoint.table_name,
                    "operation": "reclaim"
                }
            )
        logger.warning(
            f"Reclaimed expired checkpoint {checkpoint.id} for {checkpoint.table_name} "
            f"(previous owner audit {previous_owner}, offset {checkpoint.offset})"
        )
        return checkpoint
    
    async def advance(
        self,
        checkpoint: RefreshCheckpoint,
        cursor: Dict[str, Any],
        rows_so_far: int
    ) -> RefreshCheckpoint:
        """
        Move the cursor forward and renew the lease.
        
        Writing the cursor the row already holds is a no-op, including
        when a retried write finds its first attempt already applied.
        
        Raises:
            CheckpointConflictError: another holder changed the checkpoint
        """
        if checkpoint.checkpoint_data == cursor and checkpoint.last_processed_row == rows_so_far:
            return checkpoint
        
        swapped = await self._compare_and_set(
            checkpoint,
            checkpoint_data=dict(cursor),
            last_processed_row=rows_so_far,
            expires_at=self.clock() + self.lease,
        )
        if swapped:
            return checkpoint
        
        await self.db.refresh(checkpoint)
        if (
            checkpoint.status == CheckpointStatus.ACTIVE
            and checkpoint.checkpoint_data == cursor
            and checkpoint.last_processed_row == rows_so_far
        ):
            return checkpoint
        
        raise CheckpointConflictError(
            "Checkpoint was advanced or released by another holder",
            context={
                "checkpoint_id": checkpoint.id,
                "table_name": checkpoint.table_name,
                "expected_cursor": cursor,
                "current_cursor": checkpoint.checkpoint_data,
                "operation": "advance"
            }
        )
    
    async def complete(
        self,
        checkpoint: RefreshCheckpoint,
        total_rows: Optional[int] = None
    ) -> RefreshCheckpoint:
        """Mark the checkpoint completed; completing twice is a no-op."""
        if checkpoint.status == CheckpointStatus.COMPLETED:
            return checkpoint
        
        now = self.clock()
        swapped = await self._compare_and_set(
            checkpoint,
            status=CheckpointStatus.COMPLETED,
            completed_at=now,
            total_rows=total_rows if total_rows is not None else checkpoint.last_processed_row,
        )
        if not swapped:
            await self.db.refresh(checkpoint)
            if checkpoint.status != CheckpointStatus.COMPLETED:
                raise CheckpointConflictError(
                    "Checkpoint changed before it could be completed",
                    context={
                        "checkpoint_id": checkpoint.id,
                        "table_name": checkpoint.table_name,
                        "operation": "complete"
                    }
                )
        
        logger.info(
            f"Checkpoint {checkpoint.id} for {checkpoint.table_name} completed "
            f"at {checkpoint.last_processed_row} rows"
        )
        return checkpoint
    
    async def reclaim_expired(self) -> List[ReclaimedCheckpoint]:
        """
        Give every expired active checkpoint a fresh, unowned lease.
        
        The cursor is kept so the next run resumes instead of restarting.
        """
        now = self.clock()
        result = await self.db.execute(
            select(RefreshCheckpoint).where(
                RefreshCheckpoint.status == CheckpointStatus.ACTIVE,
                RefreshCheckpoint.expires_at <= now,
            )
        )
        reclaimed = []
        for checkpoint in result.scalars().all():
            previous_owner = checkpoint.audit_log_id
            try:
                await self._reclaim(checkpoint)
            except CheckpointConflictError as e:
                logger.info(f"Skipping reclaim of checkpoint {checkpoint.id}: {e.message}")
                continue
            reclaimed.append(ReclaimedCheckpoint(
                checkpoint_id=checkpoint.id,
                function_name=checkpoint.function_name,
                table_name=checkpoint.table_name,
                offset=checkpoint.offset,
                reclaim_count=checkpoint.reclaim_count,
                previous_audit_log_id=previous_owner,
            ))
        
        if reclaimed:
            logger.warning(f"Reclaimed {len(reclaimed)} expired checkpoint(s)")
        return reclaimed
    
    # ------------------------------------------------------------------
    # Compare-and-swap
    # ------------------------------------------------------------------
    
    async def _compare_and_set(self, checkpoint: RefreshCheckpoint, **values) -> bool:
        """
        UPDATE ... WHERE id = :id AND status = 'active' AND version = :version.
        
        Returns True and refreshes ``checkpoint`` if the row matched.
        """
        expected_version = checkpoint.version
        result = await self.db.execute(
            update(RefreshCheckpoint)
            .where(
                RefreshCheckpoint.id == checkpoint.id,
                RefreshCheckpoint.status == CheckpointStatus.ACTIVE,
                RefreshCheckpoint.version == expected_version,
            )
            .values(version=expected_version + 1, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        
        if result.rowcount != 1:
            return False
        
        await self.db.refresh(checkpoint)
        return True
