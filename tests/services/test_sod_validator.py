"""
Tests for SodValidator.

Covers:
- A role holding a whole toxic pair is reported with the rule name.
- Role assignment checks current plus proposed permissions.
- Replace-all assignment checks only the new role set.
- Role permission changes are checked per holder, with other roles included.
- Violations are logged at WARNING and never raised.
"""

import pytest

from expense_kernel.domain.access import SodValidationResult


@pytest.fixture
def payment_rule(permission_registry, session):
    rule = permission_registry.create_rule(
        "Payment Conflict",
        "Cannot approve and pay expenses",
        ["expense.approve", "expense.pay"],
        "critical",
    )
    session.commit()
    return rule


class TestValidateSod:

    def test_toxic_role_reported(self, payment_rule, make_role, make_user, permission_registry, sod_validator):
        role = make_role("finance_clerk", permissions=("expense.approve", "expense.pay"))
        user = make_user()
        permission_registry.assign_role_to_user(user.id, role.id, assigned_by=None)

        result = sod_validator.validate_user_sod(user.id)

        assert isinstance(result, SodValidationResult)
        assert not result.valid
        assert [v.rule_name for v in result.violations] == ["Payment Conflict"]
        assert result.violations[0].conflicting_permissions == ("expense.approve", "expense.pay")

    def test_half_the_pair_is_fine(self, payment_rule, sod_validator):
        assert sod_validator.validate_sod({"expense.approve", "report.view.own"}).valid

    def test_deactivated_rule_ignored(self, payment_rule, permission_registry, sod_validator):
        permission_registry.deactivate_rule(payment_rule.id)
        assert sod_validator.validate_sod({"expense.approve", "expense.pay"}).valid


class TestRoleAssignment:

    def test_current_plus_proposed(self, payment_rule, make_role, make_user, permission_registry, sod_validator):
        approver = make_role("expense_approver", permissions=("expense.approve",))
        payer = make_role("expense_payer", permissions=("expense.pay",))
        user = make_user()
        permission_registry.assign_role_to_user(user.id, approver.id, assigned_by=None)

        result = sod_validator.validate_role_assignment_sod(user.id, [payer.id])

        assert not result.valid
        assert result.violations[0].rule_name == "Payment Conflict"

    def test_replacement_ignores_current_roles(
        self, payment_rule, make_role, make_user, permission_registry, sod_validator
    ):
        approver = make_role("expense_approver", permissions=("expense.approve",))
        payer = make_role("expense_payer", permissions=("expense.pay",))
        user = make_user()
        permission_registry.assign_role_to_user(user.id, approver.id, assigned_by=None)

        assert sod_validator.validate_replacement_roles(user.id, [payer.id]).valid
        assert not sod_validator.validate_replacement_roles(user.id, [payer.id, approver.id]).valid

    def test_violation_logged(self, payment_rule, make_role, make_user, sod_validator, captured_logs):
        toxic = make_role("toxic", permissions=("expense.approve", "expense.pay"))
        user = make_user()

        sod_validator.validate_role_assignment_sod(user.id, [toxic.id])

        warnings = [r for r in captured_logs() if r["message"] == "sod_violation_detected"]
        assert len(warnings) == 1
        assert warnings[0]["level"] == "WARNING"
        assert warnings[0]["check"] == "role_assignment"
        assert warnings[0]["rules"] == ["Payment Conflict"]


class TestRolePermissionChange:

    def test_new_set_on_its_own(self, payment_rule, make_role, sod_validator):
        role = make_role("clerk", permissions=("expense.approve",))
        result = sod_validator.validate_role_permission_change(role.id, {"expense.approve", "expense.pay"})
        assert [v.rule_name for v in result.violations] == ["Payment Conflict"]
        assert result.violations[0].description == "Cannot approve and pay expenses"

    def test_holder_with_other_role_is_reported(
        self, payment_rule, make_role, make_user, permission_registry, sod_validator
    ):
        clerk = make_role("clerk", permissions=("report.view.own",))
        payer = make_role("expense_payer", permissions=("expense.pay",))
        user = make_user()
        permission_registry.assign_role_to_user(user.id, clerk.id, assigned_by=None)
        permission_registry.assign_role_to_user(user.id, payer.id, assigned_by=None)

        result = sod_validator.validate_role_permission_change(clerk.id, {"expense.approve"})

        assert not result.valid
        (violation,) = result.violations
        assert violation.description.endswith(f"(affects user {user.id})")

    def test_holder_without_conflict_is_fine(self, payment_rule, make_role, make_user, permission_registry, sod_validator):
        clerk = make_role("clerk", permissions=("report.view.own",))
        user = make_user()
        permission_registry.assign_role_to_user(user.id, clerk.id, assigned_by=None)

        assert sod_validator.validate_role_permission_change(clerk.id, {"expense.approve"}).valid


class TestSeededRules:
    """The governance rules seeded at bootstrap."""

    def test_approve_and_post_conflict(self, seeded_governance, sod_validator):
        result = sod_validator.validate_sod({"report.approve", "report.post"})
        assert [v.rule_name for v in result.violations] == ["Financial Bypass - Approve + Post"]

    def test_approver_plus_finance_is_toxic(self, seeded_governance, make_user, permission_registry, sod_validator):
        approver = permission_registry.get_role_by_name("approver")
        finance = permission_registry.get_role_by_name("finance")
        user = make_user(roles=("approver",))

        result = sod_validator.validate_role_assignment_sod(user.id, [finance.id])

        assert not result.valid
        assert approver is not None
        assert "Financial Bypass - Approve + Post" in {v.rule_name for v in result.violations}

    def test_every_violation_reported(self, seeded_governance, sod_validator):
        held = {"report.approve", "report.post", "workflow.override", "report.edit.all"}
        names = [v.rule_name for v in sod_validator.validate_sod(held).violations]
        assert names == [
            "Approval Fraud - Edit All + Approve",
            "Financial Bypass - Approve + Post",
            "Workflow Bypass - Override + Approve",
        ]
