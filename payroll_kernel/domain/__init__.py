"""Pure kernel value objects.  ZERO I/O except SystemClock."""

from payroll_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from payroll_kernel.domain.values import PayPeriod, quantize_money, to_decimal

__all__ = [
    "Clock",
    "DeterministicClock",
    "PayPeriod",
    "SystemClock",
    "quantize_money",
    "to_decimal",
]
