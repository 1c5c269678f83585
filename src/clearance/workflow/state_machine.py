"""
Workflow state machine.

Applies validated decisions to a workflow. Every accepted transition
appends a decision and an audit entry, recomputes the derived routing
fields, bumps the version and publishes a ``workflow_update`` event.
Rejected attempts leave the workflow untouched apart from an audit entry.

Callers must hold the workflow's lock (see ``WorkflowStore.acquire``).
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional
from uuid import UUID

from clearance.exceptions import (
    AuthorityError,
    ConflictError,
    ValidationError,
    WorkflowNotFoundError,
)
from clearance.models.workflow import (
    REDACTED,
    ApprovalCondition,
    ApprovalDecision,
    AuditEntry,
    AuditSeverity,
    AuthorizationMethod,
    ComplianceFlag,
    DecisionAction,
    EscalationTrigger,
    TriggerAction,
    Workflow,
    WorkflowStage,
    WorkflowStatus,
    next_stage,
    stage_index,
    utcnow,
)
from clearance.policy.loader import ApprovalPolicy
from clearance.realtime import events
from clearance.realtime.events import EventBus
from clearance.security.auth import User, UserRole
from clearance.workflow.sla import SLATracker
from clearance.workflow.validator import DecisionRequest, DecisionValidator, ValidationReport

logger = logging.getLogger(__name__)


@contextmanager
def audit_refusal(
    workflow: Workflow,
    actor: User,
    now: datetime,
    operation: str,
) -> Iterator[None]:
    """Record a refused operation as ``<operation>_rejected``, then re-raise."""
    try:
        yield
    except (ValidationError, AuthorityError) as e:
        workflow.audit_log.append(AuditEntry(
            action=f"{operation}_rejected",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=str(e),
            severity=AuditSeverity.WARNING,
            data={"error_type": type(e).__name__},
            timestamp=now,
        ))
        logger.warning(f"{operation} on {workflow.workflow_number} refused for {actor.id}: {e}")
        raise


class WorkflowStateMachine:
    """Drives workflows through the review stages."""

    def __init__(
        self,
        policy: ApprovalPolicy,
        bus: Optional[EventBus] = None,
        validator: Optional[DecisionValidator] = None,
        sla: Optional[SLATracker] = None,
    ):
        self.policy = policy
        self.bus = bus or EventBus()
        self.validator = validator or DecisionValidator(policy)
        self.sla = sla or SLATracker()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def apply(
        self,
        workflow: Workflow,
        request: DecisionRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> ApprovalDecision:
        """
        Validate and apply a decision.

        The request must carry ``expected_version`` or ``expected_stage``;
        a decision that names neither is refused.

        Raises:
            ConflictError: The request was based on a stale version or stage.
            AuthorityError: The actor lacks authority for stage, amount or action.
            ValidationError: Any other blocking check failed, or a warning
                needing acknowledgment was not acknowledged.
        """
        now = now or utcnow()
        action = DecisionAction(request.action)

        self._check_fresh(workflow, request, actor, now)

        report = self.validator.validate(workflow, request, actor, now)
        if not report.is_valid:
            self._reject(workflow, action, actor, report, now)
            message = "; ".join(c.message for c in report.failures)
            if report.authority_failure:
                raise AuthorityError(message, report)
            raise ValidationError(message, report)

        if report.unacknowledged:
            self._reject(workflow, action, actor, report, now)
            pending = ", ".join(c.check_type for c in report.unacknowledged)
            raise ValidationError(f"Warnings require acknowledgment: {pending}", report)

        from_stage = workflow.current_stage
        from_status = workflow.status

        decision = ApprovalDecision(
            action=action,
            stage=from_stage,
            approver_id=actor.id,
            approver_name=actor.display_name,
            approver_role=actor.role,
            notes=request.notes.strip(),
            authorization_method=AuthorizationMethod(request.authorization_method),
            timestamp=now,
            conditions=tuple(c.strip() for c in request.conditions if c.strip()),
            authorization_code=REDACTED,
            secondary_approver_id=request.secondary_approver_id,
            ip_address=request.ip_address,
            device_info=request.device_info,
            session_id=request.session_id,
        )

        escalated_to = None
        if action == DecisionAction.APPROVE:
            self._advance(workflow, next_stage(from_stage), actor, now)
            workflow.follow_up_required = False
        elif action == DecisionAction.CONDITIONAL_APPROVE:
            for description in decision.conditions:
                workflow.conditions.append(ApprovalCondition(description=description))
            self._advance(workflow, next_stage(from_stage), actor, now)
            workflow.follow_up_required = False
        elif action == DecisionAction.OVERRIDE:
            target = WorkflowStage(request.target_stage) if request.target_stage else next_stage(from_stage)
            self._advance(workflow, target, actor, now)
        elif action == DecisionAction.REJECT:
            workflow.status = WorkflowStatus.REJECTED
            workflow.sla_metrics.actual_completion_time = now
        elif action == DecisionAction.ESCALATE:
            escalated_to = UserRole(request.escalate_to)
            self.escalate_to(workflow, escalated_to, request.escalation_reason or "", actor, now)
        elif action == DecisionAction.REQUEST_INFO:
            workflow.follow_up_required = True

        workflow.approval_history.append(decision)

        severity = AuditSeverity.CRITICAL if action == DecisionAction.OVERRIDE else AuditSeverity.INFO
        workflow.audit_log.append(AuditEntry(
            action=f"decision_{action.value}",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=(
                f"{action.value} at {from_stage.value} by {actor.display_name}: "
                f"{from_status.value}/{from_stage.value} -> "
                f"{workflow.status.value}/{workflow.current_stage.value}"
            ),
            severity=severity,
            data={
                "decision_id": str(decision.id),
                "from_stage": from_stage.value,
                "to_stage": workflow.current_stage.value,
                "from_status": from_status.value,
                "to_status": workflow.status.value,
                "requires_secondary_approval": report.requires_secondary_approval,
                "secondary_approver_id": request.secondary_approver_id,
                "effective_risk": report.effective_risk.value,
                "policy_version": self.policy.version,
            },
            timestamp=now,
        ))

        acknowledged = [c.check_type for c in report.warnings if c.check_type in report.acknowledged]
        if acknowledged:
            workflow.audit_log.append(AuditEntry(
                action="warnings_acknowledged",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"Acknowledged: {', '.join(acknowledged)}",
                severity=AuditSeverity.WARNING,
                data={"decision_id": str(decision.id), "warnings": acknowledged},
                timestamp=now,
            ))

        self.commit(workflow, now, action=action.value, decision_id=str(decision.id))
        if escalated_to is not None:
            self.bus.publish(events.escalation(
                workflow, escalated_to.value, request.escalation_reason or "escalated by reviewer",
            ))

        logger.info(
            f"Workflow {workflow.workflow_number}: {action.value} by {actor.id} "
            f"({from_stage.value} -> {workflow.current_stage.value}, status={workflow.status.value})"
        )
        return decision

    def dry_run(
        self,
        workflow: Workflow,
        request: DecisionRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> ValidationReport:
        """Validate without applying. Never mutates the workflow."""
        return self.validator.validate(workflow, request, actor, now or utcnow())

    # ------------------------------------------------------------------
    # Transitions shared with the hierarchy coordinator
    # ------------------------------------------------------------------

    def escalate_to(
        self,
        workflow: Workflow,
        target_role: UserRole,
        reason: str,
        actor: Optional[User],
        now: datetime,
    ) -> WorkflowStage:
        """Move the workflow to the stage owned by ``target_role``."""
        target = self.policy.authority.stage_for_role(target_role)
        if stage_index(target) <= workflow.stage_index:
            raise ValidationError(
                f"Cannot escalate from {workflow.current_stage.value} to {target.value}"
            )

        workflow.current_stage = target
        workflow.status = WorkflowStatus.ESCALATED
        workflow.sla_metrics.stage_entered_at = now
        workflow.routing.assigned_to = None
        workflow.routing.assigned_role = None
        workflow.sla_metrics.escalation_triggers.append(EscalationTrigger(
            condition="manual",
            action=TriggerAction.ESCALATE,
            target_role=target_role,
            triggered_at=now,
        ))
        workflow.audit_log.append(AuditEntry(
            action="escalated",
            actor_id=actor.id if actor else None,
            actor_role=actor.role.value if actor else None,
            details=f"Escalated to {target_role.value} ({target.value}): {reason}",
            severity=AuditSeverity.WARNING,
            data={"target_role": target_role.value, "target_stage": target.value},
            timestamp=now,
        ))
        return target

    def override_to(
        self,
        workflow: Workflow,
        target: WorkflowStage,
        actor: User,
        now: datetime,
    ) -> None:
        """Jump forward to ``target``. Never backwards, never past completed."""
        if stage_index(target) <= workflow.stage_index:
            raise ValidationError(
                f"Override cannot move from {workflow.current_stage.value} to {target.value}"
            )
        self._advance(workflow, target, actor, now)

    def _advance(
        self,
        workflow: Workflow,
        target: WorkflowStage,
        actor: User,
        now: datetime,
    ) -> None:
        if target == WorkflowStage.COMPLETED and workflow.open_conditions():
            # Completion waits for the outstanding conditions.
            workflow.current_stage = WorkflowStage.FINAL_AUTHORIZATION
            workflow.status = WorkflowStatus.ON_HOLD
            workflow.sla_metrics.stage_entered_at = now
            workflow.audit_log.append(AuditEntry(
                action="completion_deferred",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"{len(workflow.open_conditions())} condition(s) outstanding",
                timestamp=now,
            ))
            return

        if target != workflow.current_stage:
            workflow.sla_metrics.stage_entered_at = now
        workflow.current_stage = target
        workflow.routing.assigned_to = None
        workflow.routing.assigned_role = None

        if target == WorkflowStage.COMPLETED:
            workflow.status = WorkflowStatus.APPROVED
            workflow.sla_metrics.actual_completion_time = now
        else:
            workflow.status = WorkflowStatus.PENDING

    # ------------------------------------------------------------------
    # Conditions and compliance flags
    # ------------------------------------------------------------------

    def satisfy_condition(
        self,
        workflow: Workflow,
        condition_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> ApprovalCondition:
        now = now or utcnow()
        condition = workflow.get_condition(condition_id)
        if condition is None:
            raise WorkflowNotFoundError(f"Condition not found: {condition_id}")
        if condition.is_satisfied:
            raise ValidationError(f"Condition {condition_id} is already satisfied")
        if workflow.is_terminal:
            raise ValidationError(f"Workflow is {workflow.status.value}")

        condition.satisfied_at = now
        condition.satisfied_by = actor.id
        workflow.audit_log.append(AuditEntry(
            action="condition_satisfied",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=condition.description,
            data={"condition_id": str(condition.id)},
            timestamp=now,
        ))

        if workflow.status == WorkflowStatus.ON_HOLD and not workflow.open_conditions():
            self._advance(workflow, WorkflowStage.COMPLETED, actor, now)
            workflow.audit_log.append(AuditEntry(
                action="workflow_completed",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details="All conditions satisfied",
                timestamp=now,
            ))

        self.commit(workflow, now, condition_id=str(condition.id))
        return condition

    def resolve_flag(
        self,
        workflow: Workflow,
        flag_id: UUID,
        actor: User,
        resolution: str,
        now: Optional[datetime] = None,
    ) -> ComplianceFlag:
        now = now or utcnow()
        flag = workflow.get_flag(flag_id)
        if flag is None:
            raise WorkflowNotFoundError(f"Compliance flag not found: {flag_id}")
        if not flag.is_open:
            raise ValidationError(f"Compliance flag {flag_id} is already resolved")

        flag.resolved_at = now
        flag.resolved_by = actor.id
        workflow.audit_log.append(AuditEntry(
            action="compliance_flag_resolved",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=f"{flag.title}: {resolution}",
            data={"flag_id": str(flag.id), "severity": flag.severity.value},
            timestamp=now,
        ))
        self.commit(workflow, now, flag_id=str(flag.id))
        return flag

    # ------------------------------------------------------------------
    # SLA triggers
    # ------------------------------------------------------------------

    def fire_triggers(self, workflow: Workflow, now: Optional[datetime] = None) -> list[EscalationTrigger]:
        """
        Fire due escalation triggers and act on them.

        Each trigger produces exactly one ``escalation`` event over the
        workflow's lifetime.
        """
        now = now or utcnow()
        fired = self.sla.check_triggers(workflow, now)
        if not fired:
            return []

        for trigger in fired:
            if trigger.action == TriggerAction.ESCALATE:
                target = self.policy.authority.stage_for_role(trigger.target_role)
                if stage_index(target) > workflow.stage_index and workflow.status != WorkflowStatus.ON_HOLD:
                    self.escalate_to(
                        workflow, trigger.target_role, f"SLA trigger {trigger.condition}", None, now,
                    )
            elif trigger.action == TriggerAction.REASSIGN:
                workflow.routing.assigned_to = None
                workflow.routing.assigned_role = trigger.target_role

            workflow.audit_log.append(AuditEntry(
                action="sla_trigger_fired",
                details=f"{trigger.condition} -> {trigger.action.value} {trigger.target_role.value}",
                severity=AuditSeverity.WARNING,
                data={"trigger_id": str(trigger.id)},
                timestamp=now,
            ))

        self.commit(workflow, now, triggers=[str(t.id) for t in fired])
        for trigger in fired:
            self.bus.publish(events.escalation(
                workflow, trigger.target_role.value, f"SLA trigger {trigger.condition}", trigger,
            ))
        return fired

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def recompute(self, workflow: Workflow, now: datetime) -> None:
        """Refresh SLA metrics and the derived approver/due/escalation fields."""
        self.sla.recompute(workflow, now)

        if workflow.is_terminal or workflow.current_stage == WorkflowStage.COMPLETED:
            workflow.current_approver = None
            workflow.due_date = None
            workflow.escalation_date = None
            return

        routing = workflow.routing
        delegation = routing.active_delegation(workflow.current_stage, now)
        if routing.assigned_to:
            workflow.current_approver = routing.assigned_to
        elif routing.assigned_role:
            workflow.current_approver = routing.assigned_role.value
        elif delegation is not None:
            workflow.current_approver = delegation.delegate_id
        else:
            workflow.current_approver = self.policy.authority.role_for_stage(workflow.current_stage).value

        stage_timeout = timedelta(
            hours=self.policy.authority.timeout_hours(workflow.current_stage)
            + workflow.sla_metrics.escalation_delay_hours
        )
        workflow.due_date = workflow.sla_metrics.target_completion_time
        workflow.escalation_date = workflow.sla_metrics.stage_entered_at + stage_timeout

    def commit(self, workflow: Workflow, now: datetime, **extra) -> None:
        """Finish a mutation: recompute, bump version, publish."""
        self.recompute(workflow, now)
        workflow.version += 1
        workflow.updated_at = now
        self.bus.publish(events.workflow_update(workflow, **extra))

    def _check_fresh(
        self,
        workflow: Workflow,
        request: DecisionRequest,
        actor: User,
        now: datetime,
    ) -> None:
        if request.expected_version is None and request.expected_stage is None:
            action = DecisionAction(request.action)
            workflow.audit_log.append(AuditEntry(
                action="decision_rejected",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"{action.value} rejected: no expected version or stage",
                severity=AuditSeverity.WARNING,
                timestamp=now,
            ))
            logger.warning(
                f"Rejected {action.value} on {workflow.workflow_number} by {actor.id}: "
                "no expected version or stage"
            )
            raise ValidationError(
                "Decisions must state the expected_version or expected_stage they were made against"
            )

        stale = None
        if request.expected_version is not None and request.expected_version != workflow.version:
            stale = f"version {request.expected_version} (current {workflow.version})"
        elif request.expected_stage is not None and WorkflowStage(request.expected_stage) != workflow.current_stage:
            stale = f"stage {request.expected_stage} (current {workflow.current_stage.value})"

        if stale is None:
            return

        workflow.audit_log.append(AuditEntry(
            action="decision_conflict",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=f"{DecisionAction(request.action).value} based on stale {stale}",
            severity=AuditSeverity.WARNING,
            timestamp=now,
        ))
        logger.warning(f"Conflict on {workflow.workflow_number}: decision based on stale {stale}")
        raise ConflictError(
            f"Workflow {workflow.workflow_number} changed since it was loaded: {stale}",
            expected_version=request.expected_version,
            actual_version=workflow.version,
        )

    def _reject(
        self,
        workflow: Workflow,
        action: DecisionAction,
        actor: User,
        report: ValidationReport,
        now: datetime,
    ) -> None:
        failed = [c.check_type for c in report.failures] or [c.check_type for c in report.unacknowledged]
        workflow.audit_log.append(AuditEntry(
            action="decision_rejected",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=f"{action.value} rejected: {', '.join(failed)}",
            severity=AuditSeverity.WARNING,
            data={"checks": [c.to_dict() for c in report.failures]},
            timestamp=now,
        ))
        logger.warning(
            f"Rejected {action.value} on {workflow.workflow_number} by {actor.id}: {', '.join(failed)}"
        )
