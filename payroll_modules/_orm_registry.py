"""
Module ORM Registry (``payroll_modules._orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy ORM model is imported so that ``Base.metadata``
contains its table definition before tables are created.
``payroll_kernel.db.engine.create_tables()`` calls
``import_all_orm_models()`` first.

Architecture position
---------------------
**Modules layer** -- utility.  Imports kernel models, the payroll module
ORM, and the job runner's queue table.
"""


def import_all_orm_models() -> None:
    """Import every ORM module to register its tables.  Idempotent."""
    import payroll_kernel.models  # noqa: F401
    import payroll_kernel.services.sequence_service  # noqa: F401  # sequence_counters
    import payroll_modules.payroll.orm  # noqa: F401
    import payroll_batch.models  # noqa: F401  # queue_jobs
