"""
Payroll Configuration Schema.

Defines the policy values that drive attendance deductions and overtime,
the job queue settings for run processing, and the runtime settings of a
worker process.  Actual values are loaded by ``payroll_config.loader``
from YAML plus environment overrides; the defaults below are the policy
currently in force.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Self

from payroll_kernel.exceptions import PolicyConfigError
from payroll_kernel.logging_config import get_logger

logger = get_logger("modules.payroll.config")

POLICY_VERSION = "v1.0"


def _as_decimal(name: str, value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise PolicyConfigError(name, f"expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise PolicyConfigError(name, f"not a number: {value!r}") from exc


@dataclass(frozen=True)
class PayrollPolicy:
    """
    Attendance and overtime policy applied to every payroll run.

    Thresholds and multipliers are read from here by the attendance
    aggregator and the compensation calculator; neither hard-codes them.

        policy = PayrollPolicy(late_count_for_half_day=4)
    """

    workdays_per_month: int = 22
    hours_per_day: int = 8
    late_count_for_half_day: int = 3
    early_count_for_half_day: int = 2
    absence_deduction_days: Decimal = Decimal("1")
    overtime_weekday_multiplier: Decimal = Decimal("1.5")
    overtime_weekend_multiplier: Decimal = Decimal("2.0")
    # Monday=0 ... Sunday=6
    weekend_days: tuple[int, ...] = (5, 6)
    currency: str = "USD"
    policy_version: str = POLICY_VERSION

    def __post_init__(self):
        for name in (
            "workdays_per_month",
            "hours_per_day",
            "late_count_for_half_day",
            "early_count_for_half_day",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise PolicyConfigError(name, f"expected an integer, got {value!r}")
            if value <= 0:
                raise PolicyConfigError(name, "must be positive")

        if self.hours_per_day > 24:
            raise PolicyConfigError("hours_per_day", "cannot exceed 24")
        if self.workdays_per_month > 31:
            raise PolicyConfigError("workdays_per_month", "cannot exceed 31")

        for name in (
            "absence_deduction_days",
            "overtime_weekday_multiplier",
            "overtime_weekend_multiplier",
        ):
            object.__setattr__(self, name, _as_decimal(name, getattr(self, name)))

        if self.absence_deduction_days < 0:
            raise PolicyConfigError("absence_deduction_days", "cannot be negative")
        if self.overtime_weekday_multiplier < 1:
            raise PolicyConfigError("overtime_weekday_multiplier", "must be at least 1")
        if self.overtime_weekend_multiplier < 1:
            raise PolicyConfigError("overtime_weekend_multiplier", "must be at least 1")

        weekend = tuple(self.weekend_days)
        if any(isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in weekend):
            raise PolicyConfigError("weekend_days", "days must be integers 0 (Mon) to 6 (Sun)")
        if len(set(weekend)) != len(weekend):
            raise PolicyConfigError("weekend_days", "duplicate day")
        object.__setattr__(self, "weekend_days", weekend)

        if not self.currency or len(self.currency) != 3:
            raise PolicyConfigError("currency", "must be a 3-letter ISO code")

        logger.debug(
            "payroll_policy_initialized",
            extra={
                "policy_version": self.policy_version,
                "workdays_per_month": self.workdays_per_month,
                "hours_per_day": self.hours_per_day,
                "late_count_for_half_day": self.late_count_for_half_day,
                "early_count_for_half_day": self.early_count_for_half_day,
            },
        )

    @property
    def monthly_hours(self) -> int:
        return self.workdays_per_month * self.hours_per_day

    def overtime_multiplier(self, weekday: int) -> Decimal:
        """Multiplier for a day of week (``date.weekday()``)."""
        if weekday in self.weekend_days:
            return self.overtime_weekend_multiplier
        return self.overtime_weekday_multiplier

    @classmethod
    def with_defaults(cls) -> Self:
        """Create the policy currently in force."""
        logger.info("payroll_policy_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create a policy from a dictionary (e.g., loaded from YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise PolicyConfigError(unknown[0], "unknown policy field")
        logger.info(
            "payroll_policy_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        values = dict(data)
        if "weekend_days" in values:
            values["weekend_days"] = tuple(values["weekend_days"])
        return cls(**values)


@dataclass(frozen=True)
class QueueSettings:
    """Job options and worker timings for the run-processing queue."""

    queue_name: str = "payroll-runs"
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay_ms: int = 2000
    lease_seconds: float = 60.0
    heartbeat_interval: float = 15.0
    poll_interval: float = 1.0
    # At most lease_seconds: a re-leased job finds the old run claim expired.
    claim_lease_seconds: float = 60.0

    def __post_init__(self):
        if self.attempts < 1:
            raise PolicyConfigError("attempts", "must be at least 1")
        if self.backoff_type not in ("exponential", "fixed"):
            raise PolicyConfigError("backoff_type", "must be 'exponential' or 'fixed'")
        if self.backoff_delay_ms < 0:
            raise PolicyConfigError("backoff_delay_ms", "cannot be negative")
        if self.lease_seconds <= 0:
            raise PolicyConfigError("lease_seconds", "must be positive")
        if not 0 < self.heartbeat_interval < self.lease_seconds:
            raise PolicyConfigError(
                "heartbeat_interval", "must be positive and shorter than lease_seconds",
            )
        if self.poll_interval <= 0:
            raise PolicyConfigError("poll_interval", "must be positive")
        if self.claim_lease_seconds <= 0:
            raise PolicyConfigError("claim_lease_seconds", "must be positive")
        if self.claim_lease_seconds > self.lease_seconds:
            raise PolicyConfigError("claim_lease_seconds", "cannot exceed lease_seconds")

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise PolicyConfigError(unknown[0], "unknown queue setting")
        return cls(**data)


@dataclass(frozen=True)
class RuntimeSettings:
    """Everything a worker or CLI process needs to start."""

    database_url: str = "sqlite:///payroll.db"
    payment_provider: str = "mock"
    log_level: str = "INFO"
    policy: PayrollPolicy = field(default_factory=PayrollPolicy)
    queue: QueueSettings = field(default_factory=QueueSettings)

    def __post_init__(self):
        if not self.database_url:
            raise PolicyConfigError("database_url", "must not be empty")
        object.__setattr__(self, "payment_provider", self.payment_provider.strip().lower())
