"""
payroll_batch.models -- ORM model for queued jobs.

Architecture: payroll_batch/models. Imports from payroll_kernel.db.base only.
"""

from payroll_batch.models.job import QueuedJobModel

__all__ = ["QueuedJobModel"]
