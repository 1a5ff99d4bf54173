"""
Typed Exception Hierarchy for the Payroll Kernel.

Every error has a typed class, a machine-readable ``code`` class attribute,
and structured attributes instead of a message that callers must parse.

    PayrollKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidPeriodError
    |   +-- RunNotFoundError
    |   +-- PolicyConfigError
    |
    +-- ConflictError
    |   +-- RunNotReprocessableError
    |
    +-- TransientInfraError
    |
    +-- PerEmployeeComputationError
    |   +-- MissingSalaryStructureError
    |   +-- InvalidAttendanceDataError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- QueueError
        +-- JobNotFoundError
        +-- HandlerNotRegisteredError

Error codes - quick reference:

Category     | Code                        | When raised
-------------|-----------------------------|-------------------------------------
Validation   | INVALID_PERIOD              | Period text is not YYYY-MM
             | RUN_NOT_FOUND               | Run id does not exist
             | POLICY_CONFIG_INVALID       | Policy value out of range
Conflict     | RUN_NOT_REPROCESSABLE       | Reprocess requested for a non-FAILED run
Transient    | TRANSIENT_INFRA             | Store/queue/network failure (retried)
Employee     | MISSING_SALARY_STRUCTURE    | No structure effective at the run date
             | INVALID_ATTENDANCE_DATA     | Attendance row cannot be interpreted
Immutability | IMMUTABILITY_VIOLATION      | Update/delete of an audit entry
Queue        | JOB_NOT_FOUND               | Job id does not exist
             | HANDLER_NOT_REGISTERED      | Worker started without a handler

A run that is not eligible for enqueue is NOT an exception: callers of
``request_processing`` receive ``EnqueueResult(enqueued=False, reason=...)``.
"""


class PayrollKernelError(Exception):
    """
    Base exception for all payroll kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "PAYROLL_KERNEL_ERROR"


# Validation-related exceptions


class ValidationError(PayrollKernelError):
    """Caller supplied input that cannot be processed."""

    code: str = "VALIDATION_ERROR"


class InvalidPeriodError(ValidationError):
    """Period text is not a valid ``YYYY-MM`` value."""

    code: str = "INVALID_PERIOD"

    def __init__(self, period: str, reason: str):
        self.period = period
        self.reason = reason
        super().__init__(f"Invalid payroll period {period!r}: {reason}")


class RunNotFoundError(ValidationError):
    """Payroll run does not exist."""

    code: str = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Payroll run not found: {run_id}")


class PolicyConfigError(ValidationError):
    """Payroll policy value is missing or out of range."""

    code: str = "POLICY_CONFIG_INVALID"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid payroll policy field '{field_name}': {reason}")


# Conflict-related exceptions


class ConflictError(PayrollKernelError):
    """Operation conflicts with the current state of an entity."""

    code: str = "CONFLICT"


class RunNotReprocessableError(ConflictError):
    """Only FAILED runs can be re-opened for processing."""

    code: str = "RUN_NOT_REPROCESSABLE"

    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(
            f"Payroll run {run_id} cannot be reprocessed from status {status}"
        )


# Infrastructure exceptions


class TransientInfraError(PayrollKernelError):
    """
    Store, queue, or network failure that may succeed on retry.

    The job runner retries the whole claimed attempt with backoff when a
    handler raises this error.
    """

    code: str = "TRANSIENT_INFRA"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Transient failure during {operation}: {detail}")


# Per-employee exceptions


class PerEmployeeComputationError(PayrollKernelError):
    """
    Failure confined to one employee within a run.

    Captured into the run result and the audit trail; never aborts the run.
    """

    code: str = "PER_EMPLOYEE_COMPUTATION"

    def __init__(self, employee_id: str, reason: str):
        self.employee_id = employee_id
        self.reason = reason
        super().__init__(f"Employee {employee_id}: {reason}")


class MissingSalaryStructureError(PerEmployeeComputationError):
    """No salary structure is effective at the run date."""

    code: str = "MISSING_SALARY_STRUCTURE"

    def __init__(self, employee_id: str, as_of: str):
        self.as_of = as_of
        super().__init__(
            employee_id, f"no salary structure effective on or before {as_of}"
        )


class InvalidAttendanceDataError(PerEmployeeComputationError):
    """Attendance record carries values that cannot be aggregated."""

    code: str = "INVALID_ATTENDANCE_DATA"

    def __init__(self, employee_id: str, record_date: str, reason: str):
        self.record_date = record_date
        super().__init__(employee_id, f"attendance on {record_date}: {reason}")


# Immutability-related exceptions


class ImmutabilityError(PayrollKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Queue-related exceptions


class QueueError(PayrollKernelError):
    """Base exception for job queue errors."""

    code: str = "QUEUE_ERROR"


class JobNotFoundError(QueueError):
    """Queued job does not exist."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_key: str):
        self.job_key = job_key
        super().__init__(f"Queued job not found: {job_key}")


class HandlerNotRegisteredError(QueueError):
    """Worker asked to process jobs before a handler was registered."""

    code: str = "HANDLER_NOT_REGISTERED"

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"No job handler registered for queue '{queue_name}'")
