"""
Payroll Modules.

Domain layer over the Payroll Kernel.  Each module contains:
- Domain models (the nouns)
- ORM persistence companions
- Pure calculators
- Services that own transaction boundaries
- Configuration schemas (policy and settings)

Modules:
- Payroll: runs, attendance aggregation, compensation, payslips, payments
"""
