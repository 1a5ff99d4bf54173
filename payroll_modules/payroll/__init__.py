"""
Payroll Module (``payroll_modules.payroll``).

Responsibility
--------------
The payroll run processing pipeline: a run per pay period, an exclusive
claim by one worker, per-employee attendance aggregation and gross-to-net
computation, idempotent payslip creation, payment dispatch, and an
auditable outcome for the run and for every employee in it.

Architecture position
---------------------
**Modules layer** -- pure models and calculators (``models``,
``attendance``, ``calculator``), persistence (``orm``, ``repository``),
and services (``service``, ``pipeline``, ``payments``, ``payslips``).
Wired together with the job runner by ``payroll_batch.orchestrator``.

Invariants enforced
-------------------
* One run per period; one payslip per (run, employee).
* Run status moves forward only; every transition is a conditional UPDATE.
* Decimal money, quantized to cents with ROUND_HALF_UP.

Failure modes
-------------
* Per-employee errors become typed ``EmployeeOutcome`` values.
* Transient infrastructure errors are raised to the job runner for retry.
* Any other run-level error marks the run FAILED.

Audit relevance
---------------
Every run transition and every per-employee outcome is an append-only
``AuditLogEntry``.
"""

from payroll_modules.payroll.config import PayrollPolicy, QueueSettings, RuntimeSettings
from payroll_modules.payroll.models import (
    EmployeeOutcome,
    EnqueueResult,
    OutcomeKind,
    PayrollRunStatus,
    RunProcessingResult,
)

__all__ = [
    "EmployeeOutcome",
    "EnqueueResult",
    "OutcomeKind",
    "PayrollPolicy",
    "PayrollRunStatus",
    "QueueSettings",
    "RunProcessingResult",
    "RuntimeSettings",
]
