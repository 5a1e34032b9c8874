"""
Pytest fixtures for the expense kernel test suite.

Provides:
- Database sessions isolated per test (outer transaction + savepoints)
- Organization, role, report, and workflow factories
- Captured structured logs

Factories commit what they create.  Inside the per-test outer transaction
that only releases the current savepoint, so a rollback in the code under
test never discards fixture data.

Environment Variables:
- DATABASE_URL: connection URL.  Defaults to in-memory SQLite; point it at
  PostgreSQL to also run the tests marked ``postgres`` (triggers, row locks,
  concurrent audit appends).
"""

import json
import logging
import os
from datetime import UTC, datetime
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from expense_config import get_active_config
from expense_kernel.db.base import Base
from expense_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from expense_kernel.db.immutability import register_immutability_listeners
from expense_kernel.domain.clock import DeterministicClock
from expense_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from expense_kernel.models.expense_report import ExpenseLine, ExpenseReport
from expense_kernel.models.organization import Department, User
from expense_kernel.services.approval_guard import ApprovalGuard
from expense_kernel.services.audit_ledger import AuditLedger
from expense_kernel.services.permission_registry import PermissionRegistry
from expense_kernel.services.sod_validator import SodValidator
from expense_kernel.services.workflow_definitions import WorkflowDefinitionStore, WorkflowResolver
from expense_kernel.services.workflow_engine import WorkflowEngine
from expense_services.bootstrap import seed_governance

DEFAULT_DATABASE_URL = "sqlite://"

TEST_START_TIME = datetime(2025, 6, 15, 12, 0, 0, tzinfo=UTC)

MANAGER_STEP = {
    "step_number": 1,
    "name": "Manager Approval",
    "target_type": "relationship",
    "target_value": "direct_manager",
    "sla_hours": 48,
    "required": True,
}

FINANCE_STEP = {
    "step_number": 2,
    "name": "Finance Review",
    "target_type": "role",
    "target_value": "finance",
    "sla_hours": 72,
    "required_if": {"field": "totalAmount", "operator": "greater_than", "value": 2000},
}

TWO_STEP_WORKFLOW = [MANAGER_STEP, FINANCE_STEP]


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture expense_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, workflow_engine):
            workflow_engine.submit_report(...)
            logs = captured_logs()
            assert any(r["message"] == "report_submit_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("expense_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_collection_modifyitems(config, items):
    if get_database_url().startswith("postgresql"):
        return
    skip_pg = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Session-scoped DB infrastructure
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """One engine and one schema for the whole run.

    Immutability listeners are registered once and stay active; tests that
    simulate tampering disable them locally.
    """
    eng = init_engine_from_url(get_database_url(), echo=False)
    create_tables(install_triggers=True)
    register_immutability_listeners()
    yield eng
    reset_engine()


def truncate_all_tables(engine) -> None:
    """Remove committed rows.  Used by tests that need real commits."""
    names = [t.name for t in reversed(Base.metadata.sorted_tables)]
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            conn.execute(text("TRUNCATE " + ", ".join(names) + " CASCADE"))
        else:
            for name in names:
                conn.execute(text(f"DELETE FROM {name}"))
        conn.commit()


@pytest.fixture(scope="function")
def session(db_engine) -> Generator[Session, None, None]:
    """Database session rolled back at teardown.

    The session joins an outer transaction with
    ``join_transaction_mode="create_savepoint"``: a ``session.commit()``
    inside the code under test releases a savepoint instead of committing,
    and a ``session.rollback()`` returns to the last savepoint.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture(scope="function")
def pg_session_factory(db_engine):
    """Factory for independent, really-committing sessions (one per thread).

    Data is removed at teardown.
    """
    factory = get_session_factory()
    created: list[Session] = []

    def _make() -> Session:
        s = factory()
        created.append(s)
        return s

    yield _make

    for s in created:
        s.close()
    truncate_all_tables(db_engine)


# =============================================================================
# Clock and services
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(TEST_START_TIME)


@pytest.fixture
def governance_config():
    return get_active_config()


@pytest.fixture
def audit_ledger(session, deterministic_clock) -> AuditLedger:
    return AuditLedger(session, deterministic_clock)


@pytest.fixture
def permission_registry(session, deterministic_clock) -> PermissionRegistry:
    return PermissionRegistry(session, deterministic_clock)


@pytest.fixture
def sod_validator(session, permission_registry) -> SodValidator:
    return SodValidator(session, permission_registry)


@pytest.fixture
def approval_guard(session, deterministic_clock) -> ApprovalGuard:
    return ApprovalGuard(session, deterministic_clock)


@pytest.fixture
def workflow_store(session, audit_ledger, deterministic_clock) -> WorkflowDefinitionStore:
    return WorkflowDefinitionStore(session, audit_ledger, deterministic_clock)


@pytest.fixture
def workflow_resolver(session) -> WorkflowResolver:
    return WorkflowResolver(session)


@pytest.fixture
def workflow_engine(session, deterministic_clock, audit_ledger, approval_guard) -> WorkflowEngine:
    return WorkflowEngine(
        session,
        clock=deterministic_clock,
        audit_ledger=audit_ledger,
        approval_guard=approval_guard,
    )


@pytest.fixture
def seeded_governance(session, governance_config, deterministic_clock):
    """Permissions, system roles, SoD rules, and the default workflow."""
    result = seed_governance(session, governance_config, deterministic_clock)
    deterministic_clock.advance(1)
    session.commit()
    return result


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_department(session):
    def _make(name: str | None = None, code: str | None = None) -> Department:
        suffix = uuid4().hex[:6]
        department = Department(
            name=name or f"Department {suffix}",
            code=code or f"D{suffix}".upper(),
        )
        session.add(department)
        session.commit()
        return department

    return _make


@pytest.fixture
def make_user(session, permission_registry):
    """Create a user, optionally holding roles (looked up by name)."""

    def _make(
        department: Department | None = None,
        manager: User | None = None,
        roles: tuple[str, ...] | list[str] = (),
        email: str | None = None,
    ) -> User:
        suffix = uuid4().hex[:8]
        user = User(
            email=email or f"user-{suffix}@example.com",
            username=f"user_{suffix}",
            department_id=department.id if department else None,
            manager_id=manager.id if manager else None,
        )
        session.add(user)
        session.flush()
        for role_name in roles:
            role = permission_registry.get_role_by_name(role_name)
            assert role is not None, f"role {role_name!r} not seeded"
            permission_registry.assign_role_to_user(user.id, role.id, assigned_by=None)
        session.commit()
        return user

    return _make


@pytest.fixture
def make_permissions(session, permission_registry):
    """Create permissions by name; returns {name: id}."""

    def _make(*names: str) -> dict[str, UUID]:
        ids = {}
        for name in names:
            existing = permission_registry.get_permission_by_name(name)
            permission = existing or permission_registry.create_permission(
                name, f"{name} permission", name.split(".")[0], "medium"
            )
            ids[name] = permission.id
        session.commit()
        return ids

    return _make


@pytest.fixture
def make_role(session, permission_registry, make_permissions):
    """Create a role granting ``permissions`` (created on demand)."""

    def _make(name: str | None = None, permissions: tuple[str, ...] = (), is_system: bool = False):
        ids = make_permissions(*permissions)
        role = permission_registry.create_role(
            name or f"role_{uuid4().hex[:8]}",
            "test role",
            list(ids.values()),
            created_by=None,
            is_system=is_system,
        )
        session.commit()
        return role

    return _make


@pytest.fixture
def make_report(session):
    """Create a draft report with one line per amount."""

    def _make(
        owner: User,
        amounts: tuple = (Decimal("100.00"),),
        categories: tuple[str | None, ...] | None = None,
        title: str = "Test report",
    ) -> ExpenseReport:
        report = ExpenseReport(
            user_id=owner.id,
            department_id=owner.department_id,
            title=title,
            total_amount=Decimal("0"),
            status="draft",
            version=1,
        )
        session.add(report)
        session.flush()
        for index, amount in enumerate(amounts):
            category = categories[index] if categories else None
            session.add(
                ExpenseLine(report_id=report.id, amount=Decimal(str(amount)), category=category)
            )
        session.commit()
        return report

    return _make


@pytest.fixture
def make_workflow(session, workflow_store, deterministic_clock):
    """Create a workflow definition.  The clock moves on afterwards so
    creation order is strict."""

    def _make(
        steps: list[dict] | None = None,
        name: str | None = None,
        conditions: dict | None = None,
        on_return_policy: str = "hard_restart",
    ):
        workflow = workflow_store.create_workflow(
            name=name or f"Workflow {uuid4().hex[:6]}",
            steps=steps if steps is not None else TWO_STEP_WORKFLOW,
            conditions=conditions,
            on_return_policy=on_return_policy,
        )
        deterministic_clock.advance(1)
        session.commit()
        return workflow

    return _make


# =============================================================================
# Standard organization
# =============================================================================


@pytest.fixture
def org(seeded_governance, make_department, make_user):
    """
    Two departments and five people:

    - ``manager`` (approver, ENG) manages ``employee`` and ``colleague`` (ENG)
    - ``reviewer`` (approver, OPS) sits in another department
    - ``finance`` (finance, OPS)
    """
    eng = make_department("Engineering", "ENG")
    ops = make_department("Operations", "OPS")
    manager = make_user(eng, roles=("approver",), email="manager@example.com")
    employee = make_user(eng, manager=manager, roles=("employee",), email="employee@example.com")
    colleague = make_user(eng, manager=manager, roles=("approver",), email="colleague@example.com")
    reviewer = make_user(ops, roles=("approver",), email="reviewer@example.com")
    finance = make_user(ops, roles=("finance",), email="finance@example.com")

    return SimpleNamespace(
        eng=eng,
        ops=ops,
        manager=manager,
        employee=employee,
        colleague=colleague,
        reviewer=reviewer,
        finance=finance,
    )


@pytest.fixture
def two_step_workflow(session, make_workflow, workflow_store):
    """Manager, then finance above 2000.  A catch-all assignment routes every
    report here ahead of the seeded default."""
    workflow = make_workflow(TWO_STEP_WORKFLOW, name="Two Step")
    workflow_store.create_assignment(workflow.id)
    session.commit()
    return workflow
