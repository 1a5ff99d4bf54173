"""
payroll_batch -- Database-backed job runner for payroll runs.

Provides a durable job queue (one table, deduplicated by job key, with
attempt counting, exponential backoff and lease expiry), a polling worker
with a heartbeat thread, and the composition root that wires the payroll
pipeline to the queue.

Architecture:
    payroll_batch/ is a top-level package.  Nothing in payroll_kernel/ or
    payroll_modules/ imports from payroll_batch; the run service reaches the
    queue only through the ``submit_job`` callable the orchestrator injects.

Invariants:
    - One live job per job key (UNIQUE job_key)
    - Exclusive lease per job (conditional UPDATE, never an in-process lock)
    - Clock injection (no datetime.now() calls)
    - Bounded attempts with backoff; an exhaustion callback on the last one
    - Graceful shutdown (stop signal checked between jobs)
"""
