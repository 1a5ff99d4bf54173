"""
Tests for PayrollRunProcessor.

Validates:
- End-to-end processing of a claimed run (payslips, payments, totals)
- Claim refusal for FAILED / COMPLETED / unknown runs
- Partial failure: per-employee computation and payment errors
- Idempotent retries: existing payslips are not recreated or paid twice;
  unsent or PENDING payslips left by a crashed attempt are paid
- Transient errors release the claim and propagate; other errors fail the run
- Explicit payment retry for COMPLETED runs
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from payroll_kernel.db.engine import session_scope
from payroll_kernel.exceptions import RunNotReprocessableError, TransientInfraError
from payroll_kernel.models.audit_event import AuditAction
from payroll_kernel.services.auditor_service import SqlAuditSink
from payroll_modules.payroll.models import (
    AttendanceStatus,
    OutcomeKind,
    PaymentStatus,
    PayrollRunStatus,
)
from payroll_modules.payroll.repository import PayrollRepository


@pytest.fixture
def repo_call(session_factory, clock):
    """Run one repository method in its own committed transaction."""

    def _call(method, *args, **kwargs):
        with session_scope(session_factory) as s:
            return getattr(PayrollRepository(s, clock), method)(*args, **kwargs)

    return _call


@pytest.fixture
def queued_run(january_run, repo_call):
    assert repo_call("mark_queued", january_run.id)
    return january_run


@pytest.fixture
def sink(session_factory):
    return SqlAuditSink(session_factory)


def _outcome(result, employee_id):
    return next(o for o in result.outcomes if o.employee_id == employee_id)


class TestEndToEnd:

    def test_single_employee_run(self, seed, processor, queued_run, repo_call, provider, sink):
        seed.statutory("NSSF", "5")
        employee_id = seed.employee(base_salary="3000")

        result = processor.process(queued_run.id, "worker-1")

        assert not result.skipped
        assert result.status == PayrollRunStatus.COMPLETED
        assert result.payslip_count == 1
        assert result.total_gross == Decimal("3000.00")
        assert result.total_net == Decimal("2850.00")
        assert _outcome(result, employee_id).kind == OutcomeKind.PAID

        payslip = repo_call("find_payslip", queued_run.id, employee_id)
        assert payslip.gross == Decimal("3000")
        assert payslip.statutory_deductions == Decimal("150")
        assert payslip.net == Decimal("2850")
        assert payslip.paid_at is not None
        assert len(provider.requests) == 1

        run = repo_call("get_run", queued_run.id)
        assert run.status == PayrollRunStatus.COMPLETED
        assert run.completed_at is not None
        assert run.claimed_by is None
        assert run.attempt_count == 1

        actions = [r.action for r in sink.entries_for("PayrollRun", str(queued_run.id))]
        assert actions == [AuditAction.RUN_CLAIMED, AuditAction.RUN_COMPLETED]
        completed = sink.entries_for("PayrollRun", str(queued_run.id))[-1]
        assert completed.details["net"] == "2850.00"
        assert completed.details["outcomes"]["PAID"] == 1
        assert completed.details["policy_version"] == "v1.0"

    def test_attendance_and_overtime_flow_into_gross(self, seed, processor, queued_run, repo_call):
        late = seed.employee(base_salary="3000")
        overtime = seed.employee(base_salary="3520")
        for day in (6, 7, 8):
            seed.attendance(late, date(2025, 1, day), AttendanceStatus.LATE, late_minutes=20)
        seed.attendance(
            overtime, date(2025, 1, 4), overtime_minutes=240, overtime_approved=True,
        )

        processor.process(queued_run.id, "worker-1")

        # 21.5 / 22 * 3000
        assert repo_call("find_payslip", queued_run.id, late).gross == Decimal("2931.82")
        assert repo_call("find_payslip", queued_run.id, overtime).gross == Decimal("3680.00")

    def test_unpaid_leave_is_deducted(self, seed, processor, queued_run, repo_call):
        employee_id = seed.employee(base_salary="2200")
        unpaid = seed.leave(employee_id, is_paid=False)
        paid = seed.leave(employee_id, is_paid=True)
        seed.attendance(employee_id, date(2025, 1, 6), AttendanceStatus.ON_LEAVE, leave_request_id=unpaid)
        seed.attendance(employee_id, date(2025, 1, 7), AttendanceStatus.ON_LEAVE, leave_request_id=paid)

        processor.process(queued_run.id, "worker-1")

        payslip = repo_call("find_payslip", queued_run.id, employee_id)
        assert payslip.leave_deductions == Decimal("100.00")
        assert payslip.gross == Decimal("2100.00")

    def test_inactive_employees_excluded(self, seed, processor, queued_run):
        seed.employee(is_active=False)
        active = seed.employee()

        result = processor.process(queued_run.id, "worker-1")

        assert [o.employee_id for o in result.outcomes] == [active]

    def test_structure_effective_at_run_date(self, seed, processor, queued_run, repo_call):
        employee_id = seed.employee(base_salary="3000", effective_from=date(2024, 6, 1))
        seed.salary_structure(employee_id, "3300", effective_from=date(2025, 1, 15))
        seed.salary_structure(employee_id, "9999", effective_from=date(2025, 2, 1))

        processor.process(queued_run.id, "worker-1")

        assert repo_call("find_payslip", queued_run.id, employee_id).gross == Decimal("3300.00")


class TestClaim:

    def test_failed_run_is_skipped(self, seed, processor, queued_run, repo_call, provider):
        seed.employee()
        repo_call("fail_run", queued_run.id, "earlier failure")

        result = processor.process(queued_run.id, "worker-1")

        assert result.skipped
        assert result.status == PayrollRunStatus.FAILED
        assert "status=FAILED" in result.reason
        assert repo_call("list_payslips", queued_run.id) == []
        assert provider.requests == []
        untouched = repo_call("get_run", queued_run.id)
        assert untouched.status == PayrollRunStatus.FAILED
        assert untouched.error_log == "earlier failure"
        assert untouched.attempt_count == 0

    def test_completed_run_is_skipped(self, seed, processor, queued_run):
        seed.employee()
        processor.process(queued_run.id, "worker-1")

        result = processor.process(queued_run.id, "worker-2")

        assert result.skipped
        assert result.reason == "run not claimable (status=COMPLETED)"

    def test_pending_run_is_skipped(self, processor, january_run):
        result = processor.process(january_run.id, "worker-1")
        assert result.skipped
        assert result.status == PayrollRunStatus.PENDING

    def test_unknown_run_is_skipped(self, processor):
        from uuid import uuid4

        result = processor.process(uuid4(), "worker-1")
        assert result.skipped
        assert result.reason == "run not found"

    def test_live_claim_blocks_second_worker(self, processor, queued_run, repo_call):
        assert repo_call("claim_run", queued_run.id, "worker-1", 300)

        result = processor.process(queued_run.id, "worker-2")

        assert result.skipped
        assert result.status == PayrollRunStatus.PROCESSING

    def test_expired_claim_is_taken_over(self, seed, processor, queued_run, repo_call, clock):
        seed.employee()
        assert repo_call("claim_run", queued_run.id, "worker-1", 300)
        clock.advance(301)

        result = processor.process(queued_run.id, "worker-2")

        assert result.status == PayrollRunStatus.COMPLETED
        assert repo_call("get_run", queued_run.id).attempt_count == 2


class TestPartialFailure:

    def test_missing_structure_does_not_abort_run(self, seed, processor, queued_run, repo_call, sink):
        broken = seed.employee(with_structure=False)
        healthy = seed.employee()

        result = processor.process(queued_run.id, "worker-1")

        assert result.status == PayrollRunStatus.COMPLETED
        failed = _outcome(result, broken)
        assert failed.kind == OutcomeKind.COMPUTATION_FAILED
        assert failed.error_code == "MISSING_SALARY_STRUCTURE"
        assert _outcome(result, healthy).kind == OutcomeKind.PAID
        assert result.payslip_count == 1
        assert repo_call("find_payslip", queued_run.id, broken) is None

        entries = sink.entries_for("Employee", str(broken))
        assert [e.action for e in entries] == [AuditAction.EMPLOYEE_FAILED]
        assert entries[0].details["error_code"] == "MISSING_SALARY_STRUCTURE"
        assert entries[0].details["payroll_run_id"] == str(queued_run.id)

    def test_unexpected_employee_error_is_captured(self, seed, processor, queued_run, monkeypatch):
        import payroll_modules.payroll.pipeline as pipeline

        broken = seed.employee(base_salary="1234")
        healthy = seed.employee(base_salary="3000")
        original = pipeline.calculate_compensation

        def _calculate(structure, *args):
            if structure.employee_id == broken:
                raise ValueError("corrupt structure")
            return original(structure, *args)

        monkeypatch.setattr(pipeline, "calculate_compensation", _calculate)

        result = processor.process(queued_run.id, "worker-1")

        assert result.status == PayrollRunStatus.COMPLETED
        assert _outcome(result, broken).error_code == "ValueError"
        assert _outcome(result, broken).message == "corrupt structure"
        assert _outcome(result, healthy).kind == OutcomeKind.PAID

    def test_payment_failure_does_not_abort_run(self, seed, processor, queued_run, repo_call, provider):
        declined = seed.employee()
        raising = seed.employee()
        paid = seed.employee()
        provider.outcomes[declined] = PaymentStatus.FAILED
        provider.raise_for.add(raising)

        result = processor.process(queued_run.id, "worker-1")

        assert result.status == PayrollRunStatus.COMPLETED
        assert result.payslip_count == 3
        assert _outcome(result, declined).kind == OutcomeKind.PAYMENT_FAILED
        assert _outcome(result, raising).kind == OutcomeKind.PAYMENT_FAILED
        assert _outcome(result, paid).kind == OutcomeKind.PAID
        assert repo_call("find_payslip", queued_run.id, declined).paid_at is None
        assert repo_call("find_payslip", queued_run.id, paid).paid_at is not None

    def test_negative_net_payslip_is_not_sent(self, seed, processor, queued_run, repo_call, provider):
        employee_id = seed.employee(base_salary="100", deductions="500")

        result = processor.process(queued_run.id, "worker-1")

        assert repo_call("find_payslip", queued_run.id, employee_id).net == Decimal("-400")
        assert _outcome(result, employee_id).kind == OutcomeKind.PAYMENT_FAILED
        assert provider.requests == []


class TestIdempotentRetry:

    def test_paid_payslip_is_not_recreated_or_repaid(
        self, seed, processor, queued_run, make_payslip, repo_call, provider, sink,
    ):
        done = seed.employee()
        todo = seed.employee()
        existing = make_payslip(done, payment_status=PaymentStatus.SUCCESS)

        result = processor.process(queued_run.id, "worker-1")

        assert _outcome(result, done).kind == OutcomeKind.ALREADY_EXISTS
        assert _outcome(result, done).payslip_id == existing.id
        assert _outcome(result, todo).kind == OutcomeKind.PAID
        assert provider.refs_for(done) == []
        assert result.payslip_count == 2
        assert repo_call("find_payslip", queued_run.id, done).transaction_ref == existing.transaction_ref
        assert [e.action for e in sink.entries_for("Payslip", str(existing.id))] == [
            AuditAction.PAYSLIP_EXISTS
        ]

    def test_unsent_payslip_is_paid_on_rerun(
        self, seed, processor, queued_run, make_payslip, repo_call, provider, sink,
    ):
        # Payslip committed, worker gone before the payment call.
        employee_id = seed.employee()
        unsent = make_payslip(employee_id)

        result = processor.process(queued_run.id, "worker-1")

        outcome = _outcome(result, employee_id)
        assert outcome.kind == OutcomeKind.PAID
        assert outcome.payslip_id == unsent.id
        assert provider.refs_for(employee_id) == [unsent.transaction_ref]
        assert repo_call("find_payslip", queued_run.id, employee_id).paid_at is not None
        assert [e.action for e in sink.entries_for("Payslip", str(unsent.id))] == [
            AuditAction.PAYSLIP_EXISTS,
            AuditAction.PAYMENT_SUCCEEDED,
        ]

    def test_pending_payslip_is_resent_with_same_ref(
        self, seed, processor, queued_run, make_payslip, repo_call, provider,
    ):
        employee_id = seed.employee()
        sent_ref = "PR202501-TEST-SENT-R0000000A"
        make_payslip(employee_id, payment_status=PaymentStatus.PENDING, payment_ref=sent_ref)

        result = processor.process(queued_run.id, "worker-1")

        assert _outcome(result, employee_id).kind == OutcomeKind.PAID
        assert provider.refs_for(employee_id) == [sent_ref]
        payslip = repo_call("find_payslip", queued_run.id, employee_id)
        assert payslip.transaction_ref == sent_ref
        assert payslip.payment_status == PaymentStatus.SUCCESS

    def test_declined_payslip_is_left_for_explicit_retry(
        self, seed, processor, queued_run, make_payslip, provider,
    ):
        employee_id = seed.employee()
        make_payslip(employee_id, payment_status=PaymentStatus.FAILED)

        result = processor.process(queued_run.id, "worker-1")

        outcome = _outcome(result, employee_id)
        assert outcome.kind == OutcomeKind.ALREADY_EXISTS
        assert outcome.payment_status == PaymentStatus.FAILED
        assert provider.requests == []

    def test_unrecorded_payment_success_is_not_paid_twice(
        self, seed, processor, queued_run, repo_call, provider, monkeypatch, sink,
    ):
        employee_id = seed.employee()

        def _locked(self, *args, **kwargs):
            raise OperationalError("UPDATE payroll_payslips", {}, Exception("database is locked"))

        with monkeypatch.context() as m:
            m.setattr(PayrollRepository, "mark_paid", _locked)
            with pytest.raises(TransientInfraError):
                processor.process(queued_run.id, "worker-1")

        stuck = repo_call("find_payslip", queued_run.id, employee_id)
        assert stuck.paid_at is None
        assert stuck.payment_status == PaymentStatus.PENDING
        assert [e.action for e in sink.entries_for("Payslip", str(stuck.id))] == [
            AuditAction.PAYSLIP_CREATED,
            AuditAction.PAYMENT_SUCCEEDED,
        ]

        result = processor.process(queued_run.id, "worker-2")

        assert result.status == PayrollRunStatus.COMPLETED
        assert _outcome(result, employee_id).kind == OutcomeKind.PAID
        assert repo_call("find_payslip", queued_run.id, employee_id).paid_at is not None
        assert processor.retry_failed_payments(queued_run.id) == ()
        # Both sends carry one reference, so the provider can deduplicate them.
        assert provider.refs_for(employee_id) == [stuck.payment_ref, stuck.payment_ref]
        assert stuck.payment_ref == stuck.transaction_ref

    def test_rerun_after_crash_creates_no_duplicates(
        self, seed, processor, queued_run, repo_call, provider, clock,
    ):
        employees = [seed.employee() for _ in range(3)]
        # First worker claims and dies without finishing.
        assert repo_call("claim_run", queued_run.id, "worker-1", 300)
        clock.advance(301)

        processor.process(queued_run.id, "worker-2")

        assert len(repo_call("list_payslips", queued_run.id)) == 3
        assert sorted(r.employee_id for r in provider.requests) == sorted(employees)


class TestRunLevelErrors:

    def test_transient_error_releases_claim_and_raises(
        self, seed, processor, queued_run, repo_call, monkeypatch, sink,
    ):
        seed.employee()

        def _boom(self, run_id):
            raise OperationalError("SELECT sum(...)", {}, Exception("database is locked"))

        with monkeypatch.context() as m:
            m.setattr(PayrollRepository, "run_totals", _boom)
            with pytest.raises(TransientInfraError):
                processor.process(queued_run.id, "worker-1")

        run = repo_call("get_run", queued_run.id)
        assert run.status == PayrollRunStatus.PROCESSING
        assert run.claimed_by is None
        actions = [r.action for r in sink.entries_for("PayrollRun", str(queued_run.id))]
        assert actions[-1] == AuditAction.RUN_ATTEMPT_FAILED

        # The released claim is taken immediately by the next attempt.
        result = processor.process(queued_run.id, "worker-2")
        assert result.status == PayrollRunStatus.COMPLETED
        assert result.count(OutcomeKind.ALREADY_EXISTS) == 1
        assert repo_call("get_run", queued_run.id).attempt_count == 2

    def test_unexpected_error_fails_run(self, processor, queued_run, repo_call, monkeypatch, sink):
        def _boom(self):
            raise RuntimeError("employee table unreadable")

        monkeypatch.setattr(PayrollRepository, "active_employees", _boom)

        result = processor.process(queued_run.id, "worker-1")

        assert result.status == PayrollRunStatus.FAILED
        assert not result.skipped
        run = repo_call("get_run", queued_run.id)
        assert run.status == PayrollRunStatus.FAILED
        assert run.error_log == "employee table unreadable"
        assert run.claimed_by is None
        actions = [r.action for r in sink.entries_for("PayrollRun", str(queued_run.id))]
        assert actions[-1] == AuditAction.RUN_FAILED

    def test_claim_lost_mid_run(self, seed, processor, queued_run, repo_call, monkeypatch):
        seed.employee()
        seed.employee()
        monkeypatch.setattr(PayrollRepository, "renew_claim", lambda self, *a: False)

        result = processor.process(queued_run.id, "worker-1")

        assert result.skipped
        assert result.reason == "claim lost to another worker"
        assert len(result.outcomes) == 1
        assert repo_call("get_run", queued_run.id).status == PayrollRunStatus.PROCESSING

    def test_exhaustion_marks_failed(self, processor, queued_run, repo_call):
        assert processor.mark_failed_after_exhaustion(queued_run.id, "attempts exhausted: boom")
        run = repo_call("get_run", queued_run.id)
        assert run.status == PayrollRunStatus.FAILED
        assert run.error_log == "attempts exhausted: boom"

    def test_exhaustion_ignores_completed_run(self, seed, processor, queued_run, repo_call):
        seed.employee()
        processor.process(queued_run.id, "worker-1")

        assert not processor.mark_failed_after_exhaustion(queued_run.id, "late callback")
        assert repo_call("get_run", queued_run.id).status == PayrollRunStatus.COMPLETED


class TestRetryFailedPayments:

    def test_unpaid_payslips_are_redispatched(self, seed, processor, queued_run, repo_call, provider):
        declined = seed.employee()
        paid = seed.employee()
        provider.outcomes[declined] = PaymentStatus.FAILED
        processor.process(queued_run.id, "worker-1")
        original_ref = repo_call("find_payslip", queued_run.id, declined).transaction_ref
        provider.outcomes.pop(declined)

        outcomes = processor.retry_failed_payments(queued_run.id)

        assert [(o.employee_id, o.kind) for o in outcomes] == [(declined, OutcomeKind.PAID)]
        payslip = repo_call("find_payslip", queued_run.id, declined)
        assert payslip.paid_at is not None
        assert payslip.transaction_ref.startswith(original_ref + "-R")
        assert provider.refs_for(paid) and len(provider.refs_for(paid)) == 1

    def test_requires_completed_run(self, processor, queued_run):
        with pytest.raises(RunNotReprocessableError):
            processor.retry_failed_payments(queued_run.id)

    def test_nothing_to_retry(self, seed, processor, queued_run):
        seed.employee()
        processor.process(queued_run.id, "worker-1")
        assert processor.retry_failed_payments(queued_run.id) == ()
