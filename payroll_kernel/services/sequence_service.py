"""
SequenceService -- monotonic sequence allocation via counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for audit entries.  The
    counter row is incremented with a single ``UPDATE ... SET value =
    value + 1`` so the write lock is taken by the first statement of the
    transaction; the aggregate-max-plus-one pattern is never used.

Failure modes:
    - IntegrityError: two transactions creating the same counter row at
      once on PostgreSQL.  Propagates to the caller.
"""

from sqlalchemy import BigInteger, String, select, update
from sqlalchemy.orm import Mapped, Session, mapped_column

from payroll_kernel.db.base import Base
from payroll_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One row per named sequence holding its current value."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """
    Transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_ENTRY = "audit_entry"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """
        Increment and return the named sequence (always > 0).

        The increment is only visible once the caller's transaction commits.
        """
        result = self._session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .values(current_value=SequenceCounter.current_value + 1)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self._session.add(SequenceCounter(name=sequence_name, current_value=1))
            self._session.flush()
            value = 1
        else:
            value = self._session.execute(
                select(SequenceCounter.current_value).where(
                    SequenceCounter.name == sequence_name,
                )
            ).scalar_one()

        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value
