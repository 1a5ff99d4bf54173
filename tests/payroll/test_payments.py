"""
Tests for payment dispatch.

Validates:
- Built-in providers (mock / disabled / unconfigured)
- SUCCESS marks the payslip paid exactly once
- Provider exceptions and non-positive nets become FAILED outcomes
- One audit entry per outcome
- Retry references
- Payment state: PENDING before the call, outcome written after with retries
"""

from __future__ import annotations

import re

import pytest
from sqlalchemy.exc import OperationalError

from payroll_kernel.db.engine import session_scope
from payroll_kernel.exceptions import TransientInfraError
from payroll_kernel.models.audit_event import AuditAction
from payroll_kernel.services.auditor_service import SqlAuditSink
from payroll_modules.payroll.models import PaymentStatus
from payroll_modules.payroll.payments import (
    DisabledPaymentProvider,
    MockPaymentProvider,
    PaymentDispatcher,
    UnconfiguredPaymentProvider,
    build_payment_provider,
)
from payroll_modules.payroll.repository import PayrollRepository


@pytest.fixture
def reload_payslip(session_factory, clock, january_run):
    def _reload(employee_id):
        with session_scope(session_factory) as s:
            return PayrollRepository(s, clock).find_payslip(january_run.id, employee_id)

    return _reload


@pytest.fixture
def payment_entries(session_factory):
    def _entries(payslip_id):
        return SqlAuditSink(session_factory).entries_for("Payslip", str(payslip_id))

    return _entries


class TestProviderSelection:

    @pytest.mark.parametrize(
        "name,cls",
        [
            ("mock", MockPaymentProvider),
            ("MOCK", MockPaymentProvider),
            (None, MockPaymentProvider),
            ("disabled", DisabledPaymentProvider),
            ("paystack", UnconfiguredPaymentProvider),
        ],
    )
    def test_build_payment_provider(self, name, cls):
        assert isinstance(build_payment_provider(name), cls)

    def test_unconfigured_provider_keeps_name(self):
        assert build_payment_provider("Paystack").name == "paystack"


class TestDispatch:

    def test_success_marks_paid_and_audits(
        self, seed, make_payslip, find_employee, dispatcher, provider,
        reload_payslip, payment_entries, clock,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.SUCCESS
        assert provider.requests[0].amount == payslip.net
        assert provider.requests[0].currency == "USD"
        assert provider.requests[0].transaction_ref == payslip.transaction_ref
        assert reload_payslip(employee_id).paid_at == clock.now()
        entries = payment_entries(payslip.id)
        assert [e.action for e in entries] == [AuditAction.PAYMENT_SUCCEEDED]
        assert entries[0].details["amount"] == "2850.00"
        assert entries[0].details["provider"] == "recording"

    def test_failed_status_leaves_unpaid(
        self, seed, make_payslip, find_employee, dispatcher, provider,
        reload_payslip, payment_entries,
    ):
        employee_id = seed.employee()
        provider.outcomes[employee_id] = PaymentStatus.FAILED
        payslip = make_payslip(employee_id)

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.FAILED
        assert reload_payslip(employee_id).paid_at is None
        assert [e.action for e in payment_entries(payslip.id)] == [AuditAction.PAYMENT_FAILED]

    def test_provider_exception_becomes_failed(
        self, seed, make_payslip, find_employee, dispatcher, provider, reload_payslip,
    ):
        employee_id = seed.employee()
        provider.raise_for.add(employee_id)
        payslip = make_payslip(employee_id)

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.FAILED
        assert "provider timeout" in result.message
        assert reload_payslip(employee_id).paid_at is None

    @pytest.mark.parametrize("net", ["0.00", "-400.00"])
    def test_non_positive_net_never_sent(
        self, net, seed, make_payslip, find_employee, dispatcher, provider, reload_payslip,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id, net=net, gross="100.00")

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.FAILED
        assert "not payable" in result.message
        assert provider.requests == []
        assert reload_payslip(employee_id).payment_status == PaymentStatus.FAILED

    def test_disabled_provider_skips(
        self, seed, make_payslip, find_employee, session_factory, auditor, clock,
        reload_payslip, payment_entries,
    ):
        dispatcher = PaymentDispatcher(DisabledPaymentProvider(), session_factory, auditor, clock)
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.SKIPPED
        assert result.message == "Payment provider disabled"
        assert reload_payslip(employee_id).paid_at is None
        assert [e.action for e in payment_entries(payslip.id)] == [AuditAction.PAYMENT_SKIPPED]

    def test_unconfigured_provider_fails(
        self, seed, make_payslip, find_employee, session_factory, auditor, clock,
    ):
        dispatcher = PaymentDispatcher(
            build_payment_provider("paystack"), session_factory, auditor, clock,
        )
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.FAILED
        assert result.message == "Payment provider not configured"

    def test_paid_at_set_once(
        self, seed, make_payslip, find_employee, dispatcher, reload_payslip, clock, captured_logs,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)
        employee = find_employee(employee_id)

        dispatcher.dispatch(payslip, employee)
        first_paid_at = reload_payslip(employee_id).paid_at
        clock.advance(3600)
        dispatcher.dispatch(payslip, employee)

        assert reload_payslip(employee_id).paid_at == first_paid_at
        assert any(r["message"] == "payslip_already_paid" for r in captured_logs())


class TestRetryReference:

    def test_retry_ref_format(self, seed, make_payslip):
        payslip = make_payslip(seed.employee(), ref="PR202501-AAAA0000-00000001")
        ref = PaymentDispatcher.retry_ref(payslip)
        assert re.fullmatch(r"PR202501-AAAA0000-00000001-R[0-9A-F]{8}", ref)
        assert ref != PaymentDispatcher.retry_ref(payslip)

    def test_retry_ref_stored_on_success(
        self, seed, make_payslip, find_employee, dispatcher, provider, reload_payslip,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)
        ref = PaymentDispatcher.retry_ref(payslip)

        dispatcher.dispatch(payslip, find_employee(employee_id), transaction_ref=ref)

        assert provider.requests[0].transaction_ref == ref
        assert reload_payslip(employee_id).transaction_ref == ref

    def test_retry_ref_not_stored_on_failure(
        self, seed, make_payslip, find_employee, dispatcher, provider, reload_payslip,
    ):
        employee_id = seed.employee()
        provider.outcomes[employee_id] = PaymentStatus.FAILED
        payslip = make_payslip(employee_id)

        dispatcher.dispatch(
            payslip, find_employee(employee_id),
            transaction_ref=PaymentDispatcher.retry_ref(payslip),
        )

        assert reload_payslip(employee_id).transaction_ref == payslip.transaction_ref


def _locked_once(original):
    calls = []

    def _mark_paid(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise OperationalError("UPDATE payroll_payslips", {}, Exception("database is locked"))
        return original(self, *args, **kwargs)

    return _mark_paid


class TestPaymentState:

    def test_payment_state_recorded(
        self, seed, make_payslip, find_employee, dispatcher, provider, reload_payslip,
    ):
        paid_id, declined_id = seed.employee(), seed.employee()
        provider.outcomes[declined_id] = PaymentStatus.FAILED
        for employee_id in (paid_id, declined_id):
            dispatcher.dispatch(make_payslip(employee_id), find_employee(employee_id))

        paid = reload_payslip(paid_id)
        assert paid.payment_status == PaymentStatus.SUCCESS
        assert paid.payment_ref == paid.transaction_ref
        assert not paid.payment_unsettled
        declined = reload_payslip(declined_id)
        assert declined.payment_status == PaymentStatus.FAILED
        assert not declined.payment_unsettled

    def test_locked_outcome_write_is_retried(
        self, seed, make_payslip, find_employee, dispatcher, provider,
        reload_payslip, payment_entries, monkeypatch, captured_logs,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)
        monkeypatch.setattr(
            PayrollRepository, "mark_paid", _locked_once(PayrollRepository.mark_paid),
        )

        result = dispatcher.dispatch(payslip, find_employee(employee_id))

        assert result.status == PaymentStatus.SUCCESS
        assert len(provider.requests) == 1
        assert reload_payslip(employee_id).paid_at is not None
        assert [e.action for e in payment_entries(payslip.id)] == [AuditAction.PAYMENT_SUCCEEDED]
        assert any(r["message"] == "payment_state_write_retry" for r in captured_logs())

    def test_unwritable_outcome_leaves_payslip_pending(
        self, seed, make_payslip, find_employee, dispatcher, reload_payslip,
        payment_entries, monkeypatch,
    ):
        employee_id = seed.employee()
        payslip = make_payslip(employee_id)

        def _locked(self, *args, **kwargs):
            raise OperationalError("UPDATE payroll_payslips", {}, Exception("database is locked"))

        monkeypatch.setattr(PayrollRepository, "mark_paid", _locked)

        with pytest.raises(TransientInfraError) as exc_info:
            dispatcher.dispatch(payslip, find_employee(employee_id))

        assert exc_info.value.operation == "payment outcome"
        pending = reload_payslip(employee_id)
        assert pending.payment_status == PaymentStatus.PENDING
        assert pending.payment_ref == payslip.transaction_ref
        assert pending.payment_unsettled
        # The provider's answer is already in the audit trail.
        assert [e.action for e in payment_entries(payslip.id)] == [AuditAction.PAYMENT_SUCCEEDED]

    @pytest.mark.parametrize(
        "status,expected",
        [
            (None, "own"),
            (PaymentStatus.PENDING, "sent"),
            (PaymentStatus.FAILED, "fresh"),
            (PaymentStatus.SKIPPED, "fresh"),
        ],
    )
    def test_resend_ref(self, seed, make_payslip, status, expected):
        own = "PR202501-AAAA0000-00000001"
        sent = own + "-R0000000B"
        payslip = make_payslip(
            seed.employee(), ref=own, payment_status=status,
            payment_ref=sent if status == PaymentStatus.PENDING else None,
        )

        ref = PaymentDispatcher.resend_ref(payslip)

        if expected == "own":
            assert ref == own
        elif expected == "sent":
            assert ref == sent
        else:
            assert re.fullmatch(re.escape(own) + r"-R[0-9A-F]{8}", ref)
