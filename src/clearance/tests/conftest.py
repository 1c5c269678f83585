"""
Pytest configuration and shared fixtures for Clearance tests.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import pytest

from clearance.config import DEFAULT_POLICY_PATH
from clearance.models.workflow import (
    Agent,
    AuthorizationMethod,
    ComplianceFlag,
    Customer,
    DecisionAction,
    Priority,
    RiskAssessment,
    RiskLevel,
    WithdrawalRequest,
    Workflow,
    WorkflowStage,
)
from clearance.policy.loader import ApprovalPolicy, load_policy
from clearance.realtime.events import EventBus
from clearance.security.auth import User, UserRole
from clearance.workflow.sla import SLATracker, determine_priority
from clearance.workflow.state_machine import WorkflowStateMachine
from clearance.workflow.service import ApprovalService, WorkflowSubmission
from clearance.workflow.validator import DecisionRequest, DecisionValidator

# A Tuesday, inside business hours
NOW = datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)

AUTH_CODE = "739104"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def auth_code() -> str:
    return AUTH_CODE


@pytest.fixture(scope="session")
def policy() -> ApprovalPolicy:
    """The bundled approval policy."""
    return load_policy(DEFAULT_POLICY_PATH)


@pytest.fixture
def clerk() -> User:
    return User(id="clerk-1", username="clerk-1", full_name="Cara Clerk", role=UserRole.CLERK)


@pytest.fixture
def manager() -> User:
    return User(id="manager-1", username="manager-1", full_name="Max Manager", role=UserRole.MANAGER)


@pytest.fixture
def admin() -> User:
    return User(id="admin-1", username="admin-1", full_name="Ada Admin", role=UserRole.ADMIN)


@pytest.fixture
def super_admin() -> User:
    return User(
        id="super-1", username="super-1", full_name="Sam Super", role=UserRole.SUPER_ADMIN,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus(queue_size=32)


@pytest.fixture
def validator(policy) -> DecisionValidator:
    return DecisionValidator(policy)


@pytest.fixture
def sla() -> SLATracker:
    return SLATracker(at_risk_pct=75, critical_pct=90)


@pytest.fixture
def state_machine(policy, bus, sla) -> WorkflowStateMachine:
    return WorkflowStateMachine(policy, bus=bus, sla=sla)


@pytest.fixture
def service(policy, bus) -> ApprovalService:
    return ApprovalService(policy=policy, bus=bus)


@pytest.fixture
def make_workflow(sla) -> Callable[..., Workflow]:
    """Factory for workflows at a given stage, amount and risk."""
    counter = {"n": 0}

    def _make(
        amount: str = "5000",
        risk: RiskLevel = RiskLevel.LOW,
        risk_score: float = 30.0,
        stage: WorkflowStage = WorkflowStage.CLERK_REVIEW,
        flags: tuple[ComplianceFlag, ...] = (),
        fraud_indicators: tuple[str, ...] = (),
        created_at: datetime = NOW,
    ) -> Workflow:
        counter["n"] += 1
        value = Decimal(amount)
        priority = determine_priority(value, risk, risk_score)
        return Workflow(
            workflow_number=f"WD-2024-{counter['n']:06d}",
            withdrawal_request=WithdrawalRequest(
                amount=value,
                currency="USD",
                customer=Customer(id="cust-1", name="Jane Doe", account_number="ACC-1001"),
                agent=Agent(id="agent-1", name="Agent Smith"),
                requested_at=created_at,
            ),
            sla_metrics=sla.new_metrics(priority, value, risk, created_at),
            risk_assessment=RiskAssessment(
                overall_risk=risk,
                risk_score=risk_score,
                fraud_indicators=fraud_indicators,
            ),
            current_stage=stage,
            priority=priority,
            compliance_flags=list(flags),
            created_at=created_at,
            updated_at=created_at,
        )

    return _make


@pytest.fixture
def approve_request() -> Callable[..., DecisionRequest]:
    """
    Factory for a complete approve decision; override any field.

    Passing the workflow pins the decision to its current version.
    """

    def _make(workflow: Optional[Workflow] = None, **overrides) -> DecisionRequest:
        fields = dict(
            action=DecisionAction.APPROVE,
            notes="Verified customer identity and funds",
            authorization_method=AuthorizationMethod.PIN,
            authorization_code=AUTH_CODE,
            business_justification="Routine withdrawal, documents verified",
        )
        if workflow is not None:
            fields["expected_version"] = workflow.version
        fields.update(overrides)
        return DecisionRequest(**fields)

    return _make


@pytest.fixture
def reject_request() -> Callable[..., DecisionRequest]:
    def _make(workflow: Optional[Workflow] = None, **overrides) -> DecisionRequest:
        fields = dict(
            action=DecisionAction.REJECT,
            notes="Customer could not provide proof of address for the destination account",
            authorization_method=AuthorizationMethod.OTP,
            authorization_code=AUTH_CODE,
            business_justification="Documentation incomplete",
            risk_mitigation="Customer advised to resubmit with documents",
        )
        if workflow is not None:
            fields["expected_version"] = workflow.version
        fields.update(overrides)
        return DecisionRequest(**fields)

    return _make


@pytest.fixture
def submission() -> Callable[..., WorkflowSubmission]:
    def _make(
        amount: str = "5000",
        risk: RiskLevel = RiskLevel.LOW,
        risk_score: float = 30.0,
        priority: Priority = None,
        flags: tuple[ComplianceFlag, ...] = (),
    ) -> WorkflowSubmission:
        return WorkflowSubmission(
            amount=Decimal(amount),
            currency="usd",
            customer=Customer(id="cust-1", name="Jane Doe", account_number="ACC-1001"),
            agent=Agent(id="agent-1", name="Agent Smith"),
            risk_assessment=RiskAssessment(overall_risk=risk, risk_score=risk_score),
            compliance_flags=list(flags),
            priority=priority,
        )

    return _make
