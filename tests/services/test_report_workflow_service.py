"""
Tests for ReportWorkflowService, the permission-checked workflow facade.

Covers:
- Each action requires its configured permission; the engine is never
  reached when the check fails.
- Unknown users are refused.
- Guard thresholds come from governance configuration.
- Status reads require access to the report.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.report import ReportStatus
from expense_kernel.exceptions import ApprovalDeniedError, InsufficientPermissionError
from expense_services.report_workflow import ReportWorkflowService


@pytest.fixture
def service(session, deterministic_clock, governance_config):
    return ReportWorkflowService(session, deterministic_clock, governance_config)


@pytest.fixture
def submitted(org, two_step_workflow, make_report, service):
    """An 800.00 report by ``employee``, submitted through the facade."""
    report = make_report(org.employee, amounts=(Decimal("800.00"),))
    service.submit_report(report.id, org.employee.id)
    return report


class TestPermissionGate:

    def test_employee_cannot_approve(self, org, submitted, service, approval_guard):
        with pytest.raises(InsufficientPermissionError) as exc_info:
            service.approve_report(submitted.id, org.employee.id)

        assert exc_info.value.required_permission == "report.approve"
        assert submitted.status == ReportStatus.SUBMITTED.value
        assert approval_guard.get_approval_history(submitted.id) == []

    def test_finance_cannot_submit(self, org, two_step_workflow, make_report, service):
        report = make_report(org.finance)
        with pytest.raises(InsufficientPermissionError) as exc_info:
            service.submit_report(report.id, org.finance.id)
        assert exc_info.value.required_permission == "report.submit"
        assert report.status == ReportStatus.DRAFT.value

    def test_unknown_user(self, submitted, service):
        with pytest.raises(InsufficientPermissionError) as exc_info:
            service.reject_report(submitted.id, uuid4())
        assert str(exc_info.value) == "Unknown or inactive user"

    def test_denial_logged(self, org, submitted, service, captured_logs):
        with pytest.raises(InsufficientPermissionError):
            service.return_report(submitted.id, org.employee.id)
        denied = [r for r in captured_logs() if r["message"] == "permission_denied"]
        assert denied[0]["required_permission"] == "report.return"


class TestFacadeFlow:

    def test_manager_approves(self, org, submitted, service):
        outcome = service.approve_report(submitted.id, org.manager.id, "ok")
        assert outcome.is_fully_approved
        assert outcome.status == ReportStatus.APPROVED.value

    def test_actor_email_recorded(self, org, submitted, service, approval_guard):
        service.reject_report(submitted.id, org.manager.id, "no receipts", "missing_receipt")
        (entry,) = approval_guard.get_approval_history(submitted.id)
        assert entry.actor_email == "manager@example.com"
        assert entry.rejection_category == "missing_receipt"

    def test_owner_withdraws(self, org, submitted, service):
        report = service.withdraw_report(submitted.id, org.employee.id)
        assert report.status == ReportStatus.DRAFT.value

    def test_configured_same_department_threshold(
        self, org, two_step_workflow, make_report, service
    ):
        report = make_report(org.employee, amounts=(Decimal("1500.00"),))
        service.submit_report(report.id, org.employee.id)

        with pytest.raises(ApprovalDeniedError) as exc_info:
            service.approve_report(report.id, org.manager.id)
        assert exc_info.value.check_type == "same_entity"

        outcome = service.approve_report(report.id, org.reviewer.id)
        assert outcome.is_fully_approved


class TestStatusAccess:

    def test_owner_reads_status(self, org, submitted, service):
        status = service.get_report_workflow_status(submitted.id, org.employee.id)
        assert status["status"] == ReportStatus.SUBMITTED.value
        assert status["total_steps"] == 2

    def test_finance_reads_any_report(self, org, submitted, service):
        assert service.get_report_workflow_status(submitted.id, org.finance.id)["current_step"] == 1

    def test_unrelated_approver_refused(self, org, submitted, service):
        with pytest.raises(InsufficientPermissionError) as exc_info:
            service.get_report_workflow_status(submitted.id, org.reviewer.id)
        assert exc_info.value.required_permission == "report.view"

    def test_missing_report_refused_like_a_hidden_one(self, org, submitted, service):
        with pytest.raises(InsufficientPermissionError) as hidden:
            service.get_report_workflow_status(submitted.id, org.reviewer.id)
        with pytest.raises(InsufficientPermissionError) as missing:
            service.get_report_workflow_status(uuid4(), org.reviewer.id)
        assert str(missing.value) == str(hidden.value)


class TestPendingApprovals:

    def test_manager_queue(self, org, submitted, service):
        assert [r.id for r in service.get_pending_approvals(org.manager.id)] == [submitted.id]

    def test_requires_approve_permission(self, org, submitted, service):
        with pytest.raises(InsufficientPermissionError):
            service.get_pending_approvals(org.employee.id)
