"""
Payment dispatch for payslips.

Contract:
    ``PaymentDispatcher.dispatch()`` sends one payslip's net amount to the
    configured provider, marks the payslip paid on SUCCESS, and writes one
    audit entry per outcome (SUCCESS, FAILED, SKIPPED).

Architecture position:
    Modules layer.  The provider is an external, non-transactional system:
    it is called with no database transaction open.  A PENDING payment
    attempt carrying the reference about to be sent is recorded before the
    call.  The outcome (plus ``paid_at`` on SUCCESS) is written afterwards in
    a short transaction of its own, retried on lock or connection errors.

Invariants enforced:
    - A failed or raising provider call yields a FAILED result; it never
      propagates out of ``dispatch()`` and never aborts the run.
    - A non-positive net amount is never sent to a provider.
    - ``paid_at`` is set at most once per payslip; a paid payslip is never
      sent again.
    - A payslip whose latest attempt is still PENDING has an unknown
      outcome.  It is resent with the same ``payment_ref`` so the provider
      can deduplicate it.

Built-in providers (selected by name, the ``PAYMENT_PROVIDER`` setting):
    mock      -> SUCCESS "Mock payment processed"
    disabled  -> SKIPPED "Payment provider disabled"
    otherwise -> FAILED  "Payment provider not configured"
"""

from __future__ import annotations

import secrets
import time
from typing import Callable, Protocol, runtime_checkable

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from payroll_kernel.db.engine import session_scope
from payroll_kernel.domain.clock import Clock, SystemClock
from payroll_kernel.exceptions import TransientInfraError
from payroll_kernel.logging_config import get_logger
from payroll_kernel.models.audit_event import AuditAction
from payroll_kernel.services.auditor_service import AuditorService
from payroll_modules.payroll.models import (
    Employee,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    Payslip,
)
from payroll_modules.payroll.repository import PayrollRepository

logger = get_logger("modules.payroll.payments")

_AUDIT_ACTIONS = {
    PaymentStatus.SUCCESS: AuditAction.PAYMENT_SUCCEEDED,
    PaymentStatus.FAILED: AuditAction.PAYMENT_FAILED,
    PaymentStatus.SKIPPED: AuditAction.PAYMENT_SKIPPED,
}


@runtime_checkable
class PaymentProvider(Protocol):
    """External payment rail."""

    name: str

    def dispatch(self, request: PaymentRequest) -> PaymentResult: ...


class MockPaymentProvider:
    name = "mock"

    def dispatch(self, request: PaymentRequest) -> PaymentResult:
        return PaymentResult(
            status=PaymentStatus.SUCCESS,
            transaction_ref=request.transaction_ref,
            message="Mock payment processed",
        )


class DisabledPaymentProvider:
    name = "disabled"

    def dispatch(self, request: PaymentRequest) -> PaymentResult:
        return PaymentResult(
            status=PaymentStatus.SKIPPED,
            transaction_ref=request.transaction_ref,
            message="Payment provider disabled",
        )


class UnconfiguredPaymentProvider:
    """Stands in for a provider name with no integration."""

    def __init__(self, name: str):
        self.name = name

    def dispatch(self, request: PaymentRequest) -> PaymentResult:
        return PaymentResult(
            status=PaymentStatus.FAILED,
            transaction_ref=request.transaction_ref,
            message="Payment provider not configured",
        )


def build_payment_provider(name: str | None) -> PaymentProvider:
    key = (name or "mock").strip().lower()
    if key == "mock":
        return MockPaymentProvider()
    if key == "disabled":
        return DisabledPaymentProvider()
    logger.warning("payment_provider_not_configured", extra={"provider": key})
    return UnconfiguredPaymentProvider(key)


class PaymentDispatcher:
    """Sends payslip payments and records their outcome."""

    def __init__(
        self,
        provider: PaymentProvider,
        session_factory: sessionmaker[Session],
        auditor: AuditorService,
        clock: Clock | None = None,
        currency: str = "USD",
        state_write_attempts: int = 3,
        state_retry_delay: float = 0.1,
    ):
        self._provider = provider
        self._session_factory = session_factory
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._currency = currency
        self._state_write_attempts = max(1, state_write_attempts)
        self._state_retry_delay = state_retry_delay

    @property
    def provider(self) -> PaymentProvider:
        return self._provider

    @staticmethod
    def retry_ref(payslip: Payslip) -> str:
        """Fresh reference for a re-dispatch of an unpaid payslip."""
        return f"{payslip.transaction_ref}-R{secrets.token_hex(4).upper()}"

    @classmethod
    def resend_ref(cls, payslip: Payslip) -> str:
        """Reference for sending an unpaid payslip again.

        Never sent: the payslip's own reference.  Sent with no recorded
        outcome (PENDING): the reference that was sent, so the provider sees
        the same idempotency key.  FAILED or SKIPPED: a fresh retry reference.
        """
        if payslip.payment_status is None:
            return payslip.transaction_ref
        if payslip.payment_status == PaymentStatus.PENDING:
            return payslip.payment_ref or payslip.transaction_ref
        return cls.retry_ref(payslip)

    def build_request(
        self, payslip: Payslip, employee: Employee, transaction_ref: str,
    ) -> PaymentRequest:
        return PaymentRequest(
            method=payslip.payment_method,
            amount=payslip.net,
            currency=self._currency,
            transaction_ref=transaction_ref,
            employee_id=employee.id,
            mobile_money_number=employee.mobile_money_number,
            bank_account=employee.bank_account,
        )

    def dispatch(
        self,
        payslip: Payslip,
        employee: Employee,
        transaction_ref: str | None = None,
    ) -> PaymentResult:
        """Pay one payslip.  ``transaction_ref`` overrides the payslip's own (retries).

        Raises:
            TransientInfraError: The payment state could not be written.  When
                this happens after the provider answered, the payslip is left
                PENDING with its ``payment_ref`` so the next attempt resends
                the same reference.
        """
        ref = transaction_ref or payslip.transaction_ref
        request = self.build_request(payslip, employee, ref)

        started = self._write_state(
            "payment start", lambda repo: repo.start_payment(payslip.id, ref),
        )
        if not started:
            logger.warning(
                "payslip_already_paid",
                extra={"payslip_id": str(payslip.id), "transaction_ref": ref},
            )
            return PaymentResult(
                status=PaymentStatus.SUCCESS,
                transaction_ref=ref,
                message="Payslip already paid",
            )

        if request.amount <= 0:
            result = PaymentResult(
                status=PaymentStatus.FAILED,
                transaction_ref=ref,
                message=f"Net amount {request.amount} is not payable",
            )
        else:
            result = self._call_provider(request)

        log = logger.info if result.status == PaymentStatus.SUCCESS else logger.warning
        log(
            "payment_dispatched",
            extra={
                "payslip_id": str(payslip.id),
                "employee_id": str(employee.id),
                "provider": self._provider.name,
                "status": result.status.value,
                "amount": str(request.amount),
                "transaction_ref": ref,
                "detail": result.message,
            },
        )

        self._auditor.record_payment_outcome(
            _AUDIT_ACTIONS[result.status],
            payslip.id,
            {
                "payroll_run_id": payslip.payroll_run_id,
                "employee_id": employee.id,
                "method": request.method,
                "amount": request.amount,
                "currency": request.currency,
                "transaction_ref": ref,
                "provider": self._provider.name,
                "message": result.message,
            },
        )

        settled = self._write_state(
            "payment outcome",
            lambda repo: repo.settle_payment(
                payslip.id,
                ref,
                result.status,
                transaction_ref=ref if ref != payslip.transaction_ref else None,
            ),
        )
        if not settled:
            logger.warning(
                "payslip_already_paid",
                extra={"payslip_id": str(payslip.id), "transaction_ref": ref},
            )
        return result

    def _write_state(self, operation: str, write: Callable[[PayrollRepository], bool]) -> bool:
        """Run ``write`` in its own transaction, retrying lock/connection errors."""
        for attempt in range(1, self._state_write_attempts + 1):
            try:
                with session_scope(self._session_factory) as session:
                    return write(PayrollRepository(session, self._clock))
            except (OperationalError, InterfaceError) as exc:
                if attempt == self._state_write_attempts:
                    logger.error(
                        "payment_state_write_failed",
                        extra={"operation": operation, "attempts": attempt},
                    )
                    raise TransientInfraError(
                        operation, f"{type(exc).__name__}: {exc}",
                    ) from exc
                logger.warning(
                    "payment_state_write_retry",
                    extra={"operation": operation, "attempt": attempt},
                )
                time.sleep(self._state_retry_delay * attempt)
        return False

    def _call_provider(self, request: PaymentRequest) -> PaymentResult:
        try:
            return self._provider.dispatch(request)
        except Exception as exc:
            logger.exception(
                "payment_provider_error",
                extra={
                    "provider": self._provider.name,
                    "transaction_ref": request.transaction_ref,
                },
            )
            code = getattr(exc, "code", type(exc).__name__)
            return PaymentResult(
                status=PaymentStatus.FAILED,
                transaction_ref=request.transaction_ref,
                message=f"{code}: {exc}",
            )
