"""
Withdrawal approval workflow API routes.

Workflow errors raised by the service (validation, authority, conflict,
not found) are translated to HTTP responses by the handlers in
``clearance.main``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from clearance.api.deps import ManagerUser, Service, User, client_ip
from clearance.models.workflow import (
    Agent,
    AuthorizationMethod,
    ComplianceFlag,
    Customer,
    DecisionAction,
    DelegationAuthority,
    DelegationScope,
    DelegationType,
    DocumentRef,
    FlagSeverity,
    Priority,
    RiskAssessment,
    RiskLevel,
    WorkflowStage,
    WorkflowStatus,
)
from clearance.security.auth import UserRole
from clearance.workflow.hierarchy import (
    ChecklistItem,
    ChecklistStatus,
    DelegationRequest,
    HierarchyEscalationRequest,
    HierarchyOverrideRequest,
    OverrideType,
    ReassignRequest,
)
from clearance.workflow.service import WorkflowFilters, WorkflowSubmission
from clearance.workflow.sla import ExtensionType, PriorityAdjustment, SLAExtensionRequest
from clearance.workflow.validator import DecisionRequest

router = APIRouter()


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------


class CustomerIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    account_status: str = "active"


class AgentIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)


class DocumentIn(BaseModel):
    id: str
    type: str
    verification_status: str = "pending"


class RiskAssessmentIn(BaseModel):
    overall_risk: RiskLevel = RiskLevel.LOW
    risk_score: float = Field(0.0, ge=0, le=100)
    fraud_indicators: list[str] = Field(default_factory=list)
    compliance_checks: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ComplianceFlagIn(BaseModel):
    type: str
    severity: FlagSeverity = FlagSeverity.INFO
    title: str
    resolution_required: bool = False


class WorkflowCreate(BaseModel):
    """Request model for submitting a withdrawal for approval."""

    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    customer: CustomerIn
    agent: AgentIn
    documents: list[DocumentIn] = Field(default_factory=list)
    transaction_context: dict[str, Any] = Field(default_factory=dict)
    risk_assessment: RiskAssessmentIn = Field(default_factory=RiskAssessmentIn)
    compliance_flags: list[ComplianceFlagIn] = Field(default_factory=list)
    priority: Optional[Priority] = None

    def to_submission(self) -> WorkflowSubmission:
        risk = self.risk_assessment
        return WorkflowSubmission(
            amount=self.amount,
            currency=self.currency,
            customer=Customer(**self.customer.model_dump()),
            agent=Agent(**self.agent.model_dump()),
            documents=[DocumentRef(**d.model_dump()) for d in self.documents],
            transaction_context=self.transaction_context,
            risk_assessment=RiskAssessment(
                overall_risk=risk.overall_risk,
                risk_score=risk.risk_score,
                fraud_indicators=tuple(risk.fraud_indicators),
                compliance_checks=tuple(risk.compliance_checks),
                recommendations=tuple(risk.recommendations),
            ),
            compliance_flags=[ComplianceFlag(**f.model_dump()) for f in self.compliance_flags],
            priority=self.priority,
        )


class DecisionIn(BaseModel):
    """Request model for an approval decision."""

    action: DecisionAction
    notes: str = ""
    authorization_method: Optional[AuthorizationMethod] = None
    authorization_code: Optional[str] = Field(None, description="Externally issued credential")
    business_justification: Optional[str] = None
    risk_mitigation: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalate_to: Optional[UserRole] = None
    agent_instructions: Optional[str] = None
    conditions: list[str] = Field(default_factory=list)
    compliance_checks: list[str] = Field(default_factory=list)
    target_stage: Optional[WorkflowStage] = None
    acknowledged_warnings: list[str] = Field(default_factory=list)
    secondary_approver_id: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)
    expected_stage: Optional[WorkflowStage] = None
    device_info: Optional[str] = None
    session_id: Optional[str] = None

    def to_request(self, ip_address: Optional[str] = None) -> DecisionRequest:
        return DecisionRequest(**self.model_dump(), ip_address=ip_address)


class BulkDecisionIn(BaseModel):
    workflow_ids: list[UUID] = Field(..., min_length=1)
    decision: DecisionIn


class EscalateIn(BaseModel):
    target_role: UserRole
    justification: str
    audit_reason: str
    urgent: bool = False
    expected_version: Optional[int] = None


class DelegateIn(BaseModel):
    delegate_id: str
    delegate_role: UserRole
    justification: str
    audit_reason: str
    delegation_type: DelegationType = DelegationType.SPECIFIC_WORKFLOW
    scope: DelegationScope = DelegationScope.SINGLE_WORKFLOW
    authority_level: DelegationAuthority = DelegationAuthority.FULL
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    expected_version: Optional[int] = None


class ReassignIn(BaseModel):
    assignee_id: str
    assignee_role: UserRole
    justification: str
    audit_reason: str
    expected_version: Optional[int] = None


class ChecklistItemIn(BaseModel):
    item: str
    status: ChecklistStatus
    notes: str = ""


class OverrideIn(BaseModel):
    override_type: OverrideType
    target_stage: WorkflowStage
    justification: str
    risk_acknowledgment: str
    audit_reason: str
    compliance_checklist: list[ChecklistItemIn] = Field(default_factory=list)
    supervisor_approval_code: Optional[str] = None
    expected_version: Optional[int] = None


class CommentIn(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    is_internal: bool = False
    mentions: list[str] = Field(default_factory=list)


class SLAExtendIn(BaseModel):
    extension_type: ExtensionType
    additional_hours: int
    reason: str
    business_justification: str
    impact_assessment: str
    notify_stakeholders: bool = False
    recipients: list[str] = Field(default_factory=list)
    priority_adjustment: PriorityAdjustment = PriorityAdjustment.MAINTAIN
    expected_version: Optional[int] = None


class PriorityIn(BaseModel):
    priority: Priority
    reason: str
    expected_version: Optional[int] = None


class FlagResolveIn(BaseModel):
    resolution: str = Field(..., min_length=1)


# ----------------------------------------------------------------------
# Listing, creation and stats
# ----------------------------------------------------------------------


@router.get("")
async def list_workflows(
    service: Service,
    user: User,
    status: Optional[list[WorkflowStatus]] = Query(None, description="Filter by status"),
    stage: Optional[list[WorkflowStage]] = Query(None, description="Filter by stage"),
    priority: Optional[list[Priority]] = Query(None, description="Filter by priority"),
    risk_level: Optional[list[RiskLevel]] = Query(None, description="Filter by risk level"),
    assigned_to: Optional[str] = Query(None, description="Filter by current approver"),
    min_amount: Optional[Decimal] = Query(None, ge=0),
    max_amount: Optional[Decimal] = Query(None, ge=0),
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("created_at", pattern="^(created_at|due_date|amount|priority|risk_score)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=200, description="Items per page"),
) -> dict[str, Any]:
    """List workflows with filters, sorting, pagination and summary counts."""
    filters = WorkflowFilters(
        status=status or [],
        stage=stage or [],
        priority=priority or [],
        risk_level=risk_level or [],
        assigned_to=assigned_to,
        min_amount=min_amount,
        max_amount=max_amount,
        created_from=created_from,
        created_to=created_to,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return service.list_workflows(filters).to_dict()


@router.post("", status_code=201)
async def create_workflow(data: WorkflowCreate, service: Service, user: User) -> dict[str, Any]:
    """Submit a withdrawal for approval."""
    workflow = service.create_workflow(data.to_submission(), user)
    return workflow.to_dict()


@router.get("/stats")
async def dashboard_stats(service: Service, user: User) -> dict[str, Any]:
    """Dashboard counts by status and stage plus SLA compliance."""
    return service.dashboard_stats()


@router.post("/bulk")
async def bulk_decision(
    data: BulkDecisionIn,
    request: Request,
    service: Service,
    user: User,
) -> dict[str, Any]:
    """Apply one decision to many workflows; each item succeeds or fails on its own."""
    result = await service.bulk_decide(
        data.workflow_ids, data.decision.to_request(client_ip(request)), user,
    )
    return result.to_dict()


# ----------------------------------------------------------------------
# Single workflow
# ----------------------------------------------------------------------


@router.get("/{workflow_id}")
async def get_workflow(workflow_id: UUID, service: Service, user: User) -> dict[str, Any]:
    """Workflow detail with the caller's permissions and available actions."""
    return service.get_workflow(workflow_id, user).to_dict()


@router.post("/{workflow_id}/validate")
async def validate_decision(
    workflow_id: UUID,
    data: DecisionIn,
    request: Request,
    service: Service,
    user: User,
) -> dict[str, Any]:
    """Dry-run a decision and return the validation report."""
    report = service.validate_decision(workflow_id, data.to_request(client_ip(request)), user)
    return report.to_dict()


@router.post("/{workflow_id}/decisions")
async def submit_decision(
    workflow_id: UUID,
    data: DecisionIn,
    request: Request,
    service: Service,
    user: User,
) -> dict[str, Any]:
    """Validate and apply a decision."""
    workflow = await service.submit_decision(workflow_id, data.to_request(client_ip(request)), user)
    return {
        "workflow": workflow.to_dict(),
        "decision": workflow.approval_history[-1].to_dict(),
    }


@router.post("/{workflow_id}/escalate")
async def escalate_workflow(
    workflow_id: UUID,
    data: EscalateIn,
    service: Service,
    user: User,
) -> dict[str, Any]:
    """Escalate to a higher authority."""
    workflow = await service.escalate(
        workflow_id,
        HierarchyEscalationRequest(
            target_role=data.target_role,
            justification=data.justification,
            audit_reason=data.audit_reason,
            urgent=data.urgent,
        ),
        user,
        expected_version=data.expected_version,
    )
    return workflow.to_dict()


@router.post("/{workflow_id}/comments", status_code=201)
async def add_comment(
    workflow_id: UUID,
    data: CommentIn,
    service: Service,
    user: User,
) -> dict[str, Any]:
    comment = await service.add_comment(
        workflow_id, user, data.content, is_internal=data.is_internal, mentions=data.mentions,
    )
    return comment.to_dict()


@router.post("/{workflow_id}/sla/extend")
async def extend_sla(
    workflow_id: UUID,
    data: SLAExtendIn,
    service: Service,
    user: ManagerUser,
) -> dict[str, Any]:
    """Extend the SLA deadline, stage timeout or escalation delay."""
    fields = data.model_dump(exclude={"expected_version"})
    workflow = await service.extend_sla(
        workflow_id, SLAExtensionRequest(**fields), user, expected_version=data.expected_version,
    )
    return workflow.to_dict()


@router.post("/{workflow_id}/priority")
async def update_priority(
    workflow_id: UUID,
    data: PriorityIn,
    service: Service,
    user: ManagerUser,
) -> dict[str, Any]:
    workflow = await service.update_priority(
        workflow_id, data.priority, data.reason, user, expected_version=data.expected_version,
    )
    return workflow.to_dict()


@router.post("/{workflow_id}/conditions/{condition_id}/satisfy")
async def satisfy_condition(
    workflow_id: UUID,
    condition_id: UUID,
    service: Service,
    user: User,
) -> dict[str, Any]:
    """Mark a conditional-approval condition as satisfied."""
    workflow = await service.satisfy_condition(workflow_id, condition_id, user)
    return workflow.to_dict()


@router.post("/{workflow_id}/compliance-flags/{flag_id}/resolve")
async def resolve_compliance_flag(
    workflow_id: UUID,
    flag_id: UUID,
    data: FlagResolveIn,
    service: Service,
    user: ManagerUser,
) -> dict[str, Any]:
    workflow = await service.resolve_compliance_flag(workflow_id, flag_id, data.resolution, user)
    return workflow.to_dict()


# ----------------------------------------------------------------------
# Hierarchy
# ----------------------------------------------------------------------


@router.post("/{workflow_id}/hierarchy/delegate")
async def delegate_workflow(
    workflow_id: UUID,
    data: DelegateIn,
    service: Service,
    user: User,
) -> dict[str, Any]:
    fields = data.model_dump(exclude={"expected_version"})
    workflow = await service.delegate(
        workflow_id, DelegationRequest(**fields), user, expected_version=data.expected_version,
    )
    return workflow.to_dict()


@router.post("/{workflow_id}/hierarchy/reassign")
async def reassign_workflow(
    workflow_id: UUID,
    data: ReassignIn,
    service: Service,
    user: ManagerUser,
) -> dict[str, Any]:
    fields = data.model_dump(exclude={"expected_version"})
    workflow = await service.reassign(
        workflow_id, ReassignRequest(**fields), user, expected_version=data.expected_version,
    )
    return workflow.to_dict()


@router.post("/{workflow_id}/hierarchy/override")
async def override_hierarchy(
    workflow_id: UUID,
    data: OverrideIn,
    service: Service,
    user: ManagerUser,
) -> dict[str, Any]:
    """Emergency hierarchy override. Always audited as critical."""
    workflow = await service.override_hierarchy(
        workflow_id,
        HierarchyOverrideRequest(
            override_type=data.override_type,
            target_stage=data.target_stage,
            justification=data.justification,
            risk_acknowledgment=data.risk_acknowledgment,
            audit_reason=data.audit_reason,
            compliance_checklist=[
                ChecklistItem(item=c.item, status=c.status, notes=c.notes)
                for c in data.compliance_checklist
            ],
            supervisor_approval_code=data.supervisor_approval_code,
        ),
        user,
        expected_version=data.expected_version,
    )
    return workflow.to_dict()


# ----------------------------------------------------------------------
# Audit
# ----------------------------------------------------------------------


@router.get("/{workflow_id}/audit")
async def get_audit_log(
    workflow_id: UUID,
    service: Service,
    user: User,
    action: Optional[str] = Query(None, description="Filter by audit action"),
) -> dict[str, Any]:
    if not user.can_view_audit:
        raise HTTPException(status_code=403, detail="Audit log requires manager role or higher")
    entries = service.audit_log(workflow_id, user)
    if action:
        entries = [e for e in entries if e.action == action]
    return {
        "workflow_id": str(workflow_id),
        "entries": [e.to_dict() for e in entries],
        "total": len(entries),
    }
