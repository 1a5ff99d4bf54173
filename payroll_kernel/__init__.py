"""
Payroll Kernel

Shared infrastructure for the payroll run pipeline:
- Structured JSON logging with run/job/employee context
- Typed exception hierarchy with machine-readable codes
- SQLAlchemy engine, session scope and declarative base
- Injectable clock and Decimal money helpers
- Append-only audit trail
"""

__version__ = "0.1.0"
