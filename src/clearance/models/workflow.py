"""
Withdrawal approval workflow domain model.

The Workflow is the aggregate root. Every mutation goes through the
state machine, hierarchy coordinator or service; the history and audit
lists on it are append-only.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from clearance.security.auth import UserRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class WorkflowStatus(str, Enum):
    """Routing status of a workflow."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    ON_HOLD = "on_hold"


TERMINAL_STATUSES = frozenset({WorkflowStatus.APPROVED, WorkflowStatus.REJECTED})


class WorkflowStage(str, Enum):
    """Review stages, in order."""

    CLERK_REVIEW = "clerk_review"
    MANAGER_REVIEW = "manager_review"
    ADMIN_REVIEW = "admin_review"
    FINAL_AUTHORIZATION = "final_authorization"
    COMPLETED = "completed"


STAGE_ORDER = [
    WorkflowStage.CLERK_REVIEW,
    WorkflowStage.MANAGER_REVIEW,
    WorkflowStage.ADMIN_REVIEW,
    WorkflowStage.FINAL_AUTHORIZATION,
    WorkflowStage.COMPLETED,
]


def stage_index(stage: WorkflowStage) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: WorkflowStage) -> WorkflowStage:
    """The stage after ``stage``; completed stays completed."""
    idx = stage_index(stage)
    return STAGE_ORDER[min(idx + 1, len(STAGE_ORDER) - 1)]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_RANK = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class DecisionAction(str, Enum):
    """Actions a reviewer can take on a workflow."""

    APPROVE = "approve"
    REJECT = "reject"
    ESCALATE = "escalate"
    REQUEST_INFO = "request_info"
    CONDITIONAL_APPROVE = "conditional_approve"
    OVERRIDE = "override"


class AuthorizationMethod(str, Enum):
    PIN = "pin"
    OTP = "otp"
    BIOMETRIC = "biometric"
    DIGITAL_SIGNATURE = "digital_signature"


class FlagSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SLAStatus(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class TriggerAction(str, Enum):
    ESCALATE = "escalate"
    NOTIFY = "notify"
    REASSIGN = "reassign"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class Customer:
    id: str
    name: str
    account_number: str
    account_status: str = "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "account_number": self.account_number,
            "account_status": self.account_status,
        }


@dataclass(frozen=True)
class Agent:
    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class DocumentRef:
    """Reference to a supporting document held by the document store."""

    id: str
    type: str
    verification_status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "verification_status": self.verification_status,
        }


@dataclass(frozen=True)
class WithdrawalRequest:
    """Immutable snapshot of the submitted withdrawal."""

    amount: Decimal
    currency: str
    customer: Customer
    agent: Agent
    documents: tuple[DocumentRef, ...] = ()
    transaction_context: dict[str, Any] = field(default_factory=dict)
    requested_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency": self.currency,
            "customer": self.customer.to_dict(),
            "agent": self.agent.to_dict(),
            "documents": [d.to_dict() for d in self.documents],
            "transaction_context": dict(self.transaction_context),
            "requested_at": self.requested_at.isoformat(),
        }


@dataclass(frozen=True)
class RiskAssessment:
    """Risk inputs computed upstream. Read-only here."""

    overall_risk: RiskLevel = RiskLevel.LOW
    risk_score: float = 0.0
    fraud_indicators: tuple[str, ...] = ()
    compliance_checks: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_risk": self.overall_risk.value,
            "risk_score": self.risk_score,
            "fraud_indicators": list(self.fraud_indicators),
            "compliance_checks": list(self.compliance_checks),
            "recommendations": list(self.recommendations),
        }


@dataclass
class ComplianceFlag:
    """A compliance finding attached to the workflow."""

    id: UUID = field(default_factory=uuid4)
    type: str = ""
    severity: FlagSeverity = FlagSeverity.INFO
    title: str = ""
    resolution_required: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type,
            "severity": self.severity.value,
            "title": self.title,
            "resolution_required": self.resolution_required,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
        }


@dataclass(frozen=True)
class ApprovalDecision:
    """An accepted decision. Never modified once recorded."""

    action: DecisionAction
    stage: WorkflowStage
    approver_id: str
    approver_name: str
    approver_role: UserRole
    notes: str
    authorization_method: AuthorizationMethod
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utcnow)
    conditions: tuple[str, ...] = ()
    authorization_code: str = REDACTED
    secondary_approver_id: Optional[str] = None
    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "action": self.action.value,
            "stage": self.stage.value,
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "approver_role": self.approver_role.value,
            "timestamp": self.timestamp.isoformat(),
            "notes": self.notes,
            "conditions": list(self.conditions),
            "authorization_method": self.authorization_method.value,
            "authorization_code": self.authorization_code,
            "secondary_approver_id": self.secondary_approver_id,
            "ip_address": self.ip_address,
            "device_info": self.device_info,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class AuditEntry:
    """An entry in the workflow audit trail."""

    action: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    details: str = ""
    severity: AuditSeverity = AuditSeverity.INFO
    data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "severity": self.severity.value,
            "data": dict(self.data),
        }


@dataclass
class WorkflowComment:
    author_id: str
    author_name: str
    content: str
    is_internal: bool = False
    mentions: list[str] = field(default_factory=list)
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "author_id": self.author_id,
            "author_name": self.author_name,
            "content": self.content,
            "is_internal": self.is_internal,
            "mentions": list(self.mentions),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class EscalationTrigger:
    """A declarative SLA escalation rule. Fires at most once."""

    condition: str
    action: TriggerAction
    target_role: UserRole
    id: UUID = field(default_factory=uuid4)
    triggered_at: Optional[datetime] = None

    @property
    def fired(self) -> bool:
        return self.triggered_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "condition": self.condition,
            "action": self.action.value,
            "target_role": self.target_role.value,
            "triggered_at": _iso(self.triggered_at),
        }


@dataclass
class SLAMetrics:
    created_at: datetime
    target_completion_time: datetime
    stage_entered_at: datetime
    time_in_current_stage: float = 0.0  # seconds
    total_processing_time: float = 0.0  # seconds
    escalation_triggers: list[EscalationTrigger] = field(default_factory=list)
    sla_status: SLAStatus = SLAStatus.ON_TRACK
    actual_completion_time: Optional[datetime] = None
    escalation_delay_hours: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "target_completion_time": self.target_completion_time.isoformat(),
            "stage_entered_at": self.stage_entered_at.isoformat(),
            "time_in_current_stage": self.time_in_current_stage,
            "total_processing_time": self.total_processing_time,
            "escalation_triggers": [t.to_dict() for t in self.escalation_triggers],
            "sla_status": self.sla_status.value,
            "actual_completion_time": _iso(self.actual_completion_time),
            "escalation_delay_hours": self.escalation_delay_hours,
        }


@dataclass
class ApprovalCondition:
    """A condition attached by a conditional approval."""

    description: str
    id: UUID = field(default_factory=uuid4)
    satisfied_at: Optional[datetime] = None
    satisfied_by: Optional[str] = None

    @property
    def is_satisfied(self) -> bool:
        return self.satisfied_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "description": self.description,
            "satisfied_at": _iso(self.satisfied_at),
            "satisfied_by": self.satisfied_by,
        }


class DelegationType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    SPECIFIC_WORKFLOW = "specific_workflow"


class DelegationScope(str, Enum):
    SINGLE_WORKFLOW = "single_workflow"
    ROLE_BASED = "role_based"
    DEPARTMENT_WIDE = "department_wide"


class DelegationAuthority(str, Enum):
    FULL = "full"
    LIMITED = "limited"
    REVIEW_ONLY = "review_only"


@dataclass
class Delegation:
    delegator_id: str
    delegate_id: str
    delegate_role: UserRole
    delegation_type: DelegationType
    scope: DelegationScope
    authority_level: DelegationAuthority
    stage: WorkflowStage
    id: UUID = field(default_factory=uuid4)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        if self.starts_at and now < self.starts_at:
            return False
        if self.ends_at and now >= self.ends_at:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "delegate_role": self.delegate_role.value,
            "delegation_type": self.delegation_type.value,
            "scope": self.scope.value,
            "authority_level": self.authority_level.value,
            "stage": self.stage.value,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Routing:
    """Who currently holds the workflow, beyond the stage default."""

    assigned_to: Optional[str] = None
    assigned_role: Optional[UserRole] = None
    delegations: list[Delegation] = field(default_factory=list)

    def active_delegation(self, stage: WorkflowStage, now: datetime) -> Optional[Delegation]:
        for delegation in reversed(self.delegations):
            if delegation.stage == stage and delegation.is_active(now):
                return delegation
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "assigned_to": self.assigned_to,
            "assigned_role": self.assigned_role.value if self.assigned_role else None,
            "delegations": [d.to_dict() for d in self.delegations],
        }


@dataclass
class Workflow:
    """A withdrawal approval workflow."""

    workflow_number: str
    withdrawal_request: WithdrawalRequest
    sla_metrics: SLAMetrics
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    id: UUID = field(default_factory=uuid4)
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_stage: WorkflowStage = WorkflowStage.CLERK_REVIEW
    priority: Priority = Priority.MEDIUM

    compliance_flags: list[ComplianceFlag] = field(default_factory=list)
    approval_history: list[ApprovalDecision] = field(default_factory=list)
    audit_log: list[AuditEntry] = field(default_factory=list)
    comments: list[WorkflowComment] = field(default_factory=list)
    conditions: list[ApprovalCondition] = field(default_factory=list)
    routing: Routing = field(default_factory=Routing)
    follow_up_required: bool = False

    # Derived, recomputed on every transition
    current_approver: Optional[str] = None
    due_date: Optional[datetime] = None
    escalation_date: Optional[datetime] = None

    version: int = 1
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def amount(self) -> Decimal:
        return self.withdrawal_request.amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stage_index(self) -> int:
        return stage_index(self.current_stage)

    def open_conditions(self) -> list[ApprovalCondition]:
        return [c for c in self.conditions if not c.is_satisfied]

    def unresolved_flags(self, severity: Optional[FlagSeverity] = None) -> list[ComplianceFlag]:
        return [
            f for f in self.compliance_flags
            if f.is_open and (severity is None or f.severity == severity)
        ]

    def get_flag(self, flag_id: UUID) -> Optional[ComplianceFlag]:
        for flag in self.compliance_flags:
            if flag.id == flag_id:
                return flag
        return None

    def get_condition(self, condition_id: UUID) -> Optional[ApprovalCondition]:
        for condition in self.conditions:
            if condition.id == condition_id:
                return condition
        return None

    def snapshot(self) -> "Workflow":
        """Detached copy for readers; mutating it never touches the store."""
        return copy.deepcopy(self)

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "workflow_number": self.workflow_number,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "priority": self.priority.value,
            "amount": str(self.amount),
            "currency": self.withdrawal_request.currency,
            "customer_name": self.withdrawal_request.customer.name,
            "overall_risk": self.risk_assessment.overall_risk.value,
            "risk_score": self.risk_assessment.risk_score,
            "sla_status": self.sla_metrics.sla_status.value,
            "current_approver": self.current_approver,
            "due_date": _iso(self.due_date),
            "version": self.version,
            "created_at": self.created_at.isoformat(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "workflow_number": self.workflow_number,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "priority": self.priority.value,
            "withdrawal_request": self.withdrawal_request.to_dict(),
            "risk_assessment": self.risk_assessment.to_dict(),
            "compliance_flags": [f.to_dict() for f in self.compliance_flags],
            "approval_history": [d.to_dict() for d in self.approval_history],
            "audit_log": [e.to_dict() for e in self.audit_log],
            "comments": [c.to_dict() for c in self.comments],
            "conditions": [c.to_dict() for c in self.conditions],
            "routing": self.routing.to_dict(),
            "sla_metrics": self.sla_metrics.to_dict(),
            "follow_up_required": self.follow_up_required,
            "current_approver": self.current_approver,
            "due_date": _iso(self.due_date),
            "escalation_date": _iso(self.escalation_date),
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
