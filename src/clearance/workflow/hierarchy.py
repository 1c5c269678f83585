"""
Hierarchy actions: delegation, reassignment, escalation and emergency
hierarchy override.

These change who may act next. Only escalation and override move the
stage; none of them records an approval decision. Each one is audited
and published like any other transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from clearance.exceptions import AuthorityError, ValidationError
from clearance.models.workflow import (
    AuditEntry,
    AuditSeverity,
    Delegation,
    DelegationAuthority,
    DelegationScope,
    DelegationType,
    Workflow,
    WorkflowStage,
    stage_index,
    utcnow,
)
from clearance.policy.loader import ApprovalPolicy
from clearance.realtime import events
from clearance.security.auth import User, UserRole
from clearance.workflow.state_machine import WorkflowStateMachine, audit_refusal

logger = logging.getLogger(__name__)


class OverrideType(str, Enum):
    EMERGENCY = "emergency"
    BUSINESS_CRITICAL = "business_critical"
    POLICY_EXCEPTION = "policy_exception"


class ChecklistStatus(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class ChecklistItem:
    item: str
    status: ChecklistStatus
    notes: str = ""


@dataclass
class DelegationRequest:
    delegate_id: str
    delegate_role: UserRole
    justification: str
    audit_reason: str
    delegation_type: DelegationType = DelegationType.SPECIFIC_WORKFLOW
    scope: DelegationScope = DelegationScope.SINGLE_WORKFLOW
    authority_level: DelegationAuthority = DelegationAuthority.FULL
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


@dataclass
class ReassignRequest:
    assignee_id: str
    assignee_role: UserRole
    justification: str
    audit_reason: str


@dataclass
class HierarchyEscalationRequest:
    target_role: UserRole
    justification: str
    audit_reason: str
    urgent: bool = False


@dataclass
class HierarchyOverrideRequest:
    override_type: OverrideType
    target_stage: WorkflowStage
    justification: str
    risk_acknowledgment: str
    audit_reason: str
    compliance_checklist: list[ChecklistItem] = field(default_factory=list)
    supervisor_approval_code: Optional[str] = None


class HierarchyCoordinator:
    """
    Routing side-transitions around the main stage graph.

    Callers must hold the workflow's lock, as with the state machine.
    """

    def __init__(self, policy: ApprovalPolicy, state_machine: WorkflowStateMachine):
        self.policy = policy
        self.state_machine = state_machine
        self.limits = policy.hierarchy

    def delegate(
        self,
        workflow: Workflow,
        request: DelegationRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Delegation:
        now = now or utcnow()
        with audit_refusal(workflow, actor, now, "delegation"):
            self._check_open(workflow)
            self._check_acting_authority(workflow, actor, "delegate")

            errors = self._text_errors(request.justification, request.audit_reason)
            if request.delegation_type == DelegationType.TEMPORARY:
                if request.starts_at is None or request.ends_at is None:
                    errors.append("Temporary delegation requires a start and end time")
                elif request.ends_at <= request.starts_at:
                    errors.append("Delegation end must be after its start")
            if request.delegate_id == actor.id:
                errors.append("Cannot delegate to yourself")
            if errors:
                raise ValidationError("; ".join(errors))

            authority = self.policy.authority
            if not authority.has_authority(request.delegate_role, workflow.current_stage):
                raise AuthorityError(
                    f"Delegate role {UserRole(request.delegate_role).value} is below the "
                    f"{authority.role_for_stage(workflow.current_stage).value} authority "
                    f"required at {workflow.current_stage.value}"
                )

        delegation = Delegation(
            delegator_id=actor.id,
            delegate_id=request.delegate_id,
            delegate_role=UserRole(request.delegate_role),
            delegation_type=DelegationType(request.delegation_type),
            scope=DelegationScope(request.scope),
            authority_level=DelegationAuthority(request.authority_level),
            stage=workflow.current_stage,
            starts_at=request.starts_at,
            ends_at=request.ends_at,
            created_at=now,
        )
        workflow.routing.delegations.append(delegation)
        self._audit(
            workflow, actor, now, "delegated",
            f"Delegated {workflow.current_stage.value} to {request.delegate_id}: {request.audit_reason}",
            justification=request.justification,
            delegation_id=str(delegation.id),
            delegation_type=delegation.delegation_type.value,
            scope=delegation.scope.value,
        )
        self.state_machine.commit(workflow, now, routing="delegated")
        logger.info(f"Workflow {workflow.workflow_number} delegated by {actor.id} to {request.delegate_id}")
        return delegation

    def reassign(
        self,
        workflow: Workflow,
        request: ReassignRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utcnow()
        with audit_refusal(workflow, actor, now, "reassignment"):
            self._check_open(workflow)
            if not actor.can_manage_routing:
                raise AuthorityError(f"{actor.role.value} may not reassign workflows")
            self._check_acting_authority(workflow, actor, "reassign")

            errors = self._text_errors(request.justification, request.audit_reason)
            if errors:
                raise ValidationError("; ".join(errors))

            if not self.policy.authority.has_authority(request.assignee_role, workflow.current_stage):
                raise AuthorityError(
                    f"Assignee role {UserRole(request.assignee_role).value} has no authority "
                    f"at {workflow.current_stage.value}"
                )

        previous = workflow.current_approver
        workflow.routing.assigned_to = request.assignee_id
        workflow.routing.assigned_role = None
        self._audit(
            workflow, actor, now, "reassigned",
            f"Reassigned from {previous} to {request.assignee_id}: {request.audit_reason}",
            justification=request.justification,
            previous_approver=previous,
            new_approver=request.assignee_id,
        )
        self.state_machine.commit(workflow, now, routing="reassigned")
        logger.info(f"Workflow {workflow.workflow_number} reassigned to {request.assignee_id}")

    def escalate(
        self,
        workflow: Workflow,
        request: HierarchyEscalationRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> WorkflowStage:
        now = now or utcnow()
        with audit_refusal(workflow, actor, now, "hierarchy_escalation"):
            self._check_open(workflow)
            self._check_acting_authority(workflow, actor, "escalate")

            errors = self._text_errors(request.justification, request.audit_reason)
            if errors:
                raise ValidationError("; ".join(errors))

            target = self.state_machine.escalate_to(
                workflow, UserRole(request.target_role), request.audit_reason, actor, now,
            )
        self._audit(
            workflow, actor, now, "hierarchy_escalation",
            f"Escalated to {target.value}: {request.justification}",
            urgent=request.urgent,
        )
        self.state_machine.commit(workflow, now, routing="escalated")
        self.state_machine.bus.publish(events.escalation(
            workflow, UserRole(request.target_role).value, request.audit_reason,
        ))
        return target

    def override_hierarchy(
        self,
        workflow: Workflow,
        request: HierarchyOverrideRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> WorkflowStage:
        now = now or utcnow()
        authority = self.policy.authority
        with audit_refusal(workflow, actor, now, "hierarchy_override"):
            self._check_open(workflow)
            if not authority.can_override(actor.role):
                raise AuthorityError(f"{actor.role.value} is not permitted to override the hierarchy")

            errors = self._text_errors(
                request.justification,
                request.audit_reason,
                min_justification=self.limits.min_override_justification_length,
            )
            if len((request.risk_acknowledgment or "").strip()) < self.limits.min_risk_acknowledgment_length:
                errors.append(
                    "Risk acknowledgment must be at least "
                    f"{self.limits.min_risk_acknowledgment_length} characters"
                )
            non_compliant = [
                c.item for c in request.compliance_checklist
                if c.status == ChecklistStatus.NON_COMPLIANT
            ]
            if non_compliant and not (request.supervisor_approval_code or "").strip():
                errors.append(
                    "Supervisor approval code required for non-compliant items: "
                    + ", ".join(non_compliant)
                )
            if errors:
                raise ValidationError("; ".join(errors))

            from_stage = workflow.current_stage
            target = WorkflowStage(request.target_stage)
            ceiling = authority.level_for_role(actor.role).max_amount
            if target == WorkflowStage.COMPLETED and ceiling is not None and workflow.amount > ceiling:
                raise AuthorityError(
                    f"Amount {workflow.amount} exceeds {actor.role.value} authority {ceiling}; "
                    f"completing it requires {authority.minimum_role_for_amount(workflow.amount).value}"
                )
            self.state_machine.override_to(workflow, target, actor, now)

        self._audit(
            workflow, actor, now, "hierarchy_override",
            f"{OverrideType(request.override_type).value} override "
            f"{from_stage.value} -> {workflow.current_stage.value}: {request.audit_reason}",
            severity=AuditSeverity.CRITICAL,
            justification=request.justification,
            risk_acknowledgment=request.risk_acknowledgment,
            skipped_levels=stage_index(target) - stage_index(from_stage) - 1,
            non_compliant_items=non_compliant,
            supervisor_approved=bool(non_compliant),
        )
        self.state_machine.commit(workflow, now, routing="override")
        logger.warning(
            f"Hierarchy override on {workflow.workflow_number} by {actor.id}: "
            f"{from_stage.value} -> {workflow.current_stage.value}"
        )
        return workflow.current_stage

    def _check_open(self, workflow: Workflow) -> None:
        if workflow.is_terminal or workflow.current_stage == WorkflowStage.COMPLETED:
            raise ValidationError(
                f"Workflow {workflow.workflow_number} is {workflow.status.value}; "
                "hierarchy actions are closed"
            )

    def _check_acting_authority(self, workflow: Workflow, actor: User, operation: str) -> None:
        if self.policy.authority.has_authority(actor.role, workflow.current_stage):
            return
        if workflow.routing.assigned_to == actor.id:
            return
        raise AuthorityError(
            f"{actor.role.value} may not {operation} a workflow at {workflow.current_stage.value}"
        )

    def _text_errors(
        self,
        justification: str,
        audit_reason: str,
        min_justification: Optional[int] = None,
    ) -> list[str]:
        min_justification = min_justification or self.limits.min_justification_length
        errors = []
        if len((justification or "").strip()) < min_justification:
            errors.append(f"Justification must be at least {min_justification} characters")
        if len((audit_reason or "").strip()) < self.limits.min_audit_reason_length:
            errors.append(
                f"Audit reason must be at least {self.limits.min_audit_reason_length} characters"
            )
        return errors

    def _audit(
        self,
        workflow: Workflow,
        actor: User,
        now: datetime,
        action: str,
        details: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
        **data,
    ) -> None:
        workflow.audit_log.append(AuditEntry(
            action=action,
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=details,
            severity=severity,
            data=data,
            timestamp=now,
        ))
