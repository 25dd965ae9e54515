"""
Checkpointed warehouse refresh pipeline.

This package contains every component that moves rows from the warehouse
into the transactional store:

Modules:
    registry: Refresh config lookups, ordering and run bookkeeping
    checkpoint: Lease-based checkpoints (resume cursor + per-table mutex)
    audit: Audit log writes and the read queries behind health/metrics
    base: Abstract warehouse source
    tables: Table definitions (conflict keys, ordering, warehouse projection)
    worker: Bounded-time, resumable refresh of one table
    continuation: Typed work items replacing self-invocation
    orchestrator: Priority-ordered runs with throttling and isolation
    webhooks: Signed notifications with exponential backoff
    metrics: Aggregation of audit rows into the metrics report
    runtime: Explicitly created handles shared by all components
    scheduler: APScheduler jobs (due refreshes, webhook drain, reclaim)

Subpackages:
    sources: Warehouse implementations (BigQuery REST)
    transformers: Row coercion into target schemas
    loaders: Idempotent upserts into the target store

Architecture:
    Each worker invocation follows the same loop:
    
    1. Acquire or resume the checkpoint lease
    2. Fetch a bounded, deterministically ordered batch
    3. Transform and upsert it idempotently
    4. Advance the checkpoint, then finish, continue, or hand off
    
    A failure leaves the cursor untouched so the next run resumes it.

Usage:
    runtime = RefreshRuntime.create(settings)
    async with runtime.database.session() as session:
        summary = await runtime.orchestrator(session).run_all()
    await runtime.continuations.run_pending()
"""
