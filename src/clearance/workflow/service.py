"""
Approval service.

The operation surface used by the API: creating and listing workflows,
decisions, hierarchy actions, bulk actions, comments, SLA extension and
the background trigger sweep. Every mutation takes the workflow's lock
from the store; readers get detached snapshots.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from clearance.config import settings
from clearance.exceptions import AuthorityError, ValidationError
from clearance.models.workflow import (
    PRIORITY_RANK,
    STAGE_ORDER,
    Agent,
    AuditEntry,
    AuditSeverity,
    ComplianceFlag,
    Customer,
    DecisionAction,
    DocumentRef,
    Priority,
    RiskAssessment,
    RiskLevel,
    SLAStatus,
    WithdrawalRequest,
    Workflow,
    WorkflowComment,
    WorkflowStage,
    WorkflowStatus,
    utcnow,
)
from clearance.policy.loader import ApprovalPolicy, get_active_policy
from clearance.realtime import events
from clearance.realtime.events import EventBus
from clearance.security.auth import User
from clearance.workflow.bulk import BulkActionCoordinator, BulkResult
from clearance.workflow.hierarchy import (
    DelegationRequest,
    HierarchyCoordinator,
    HierarchyEscalationRequest,
    HierarchyOverrideRequest,
    ReassignRequest,
)
from clearance.workflow.sla import (
    ExtensionType,
    SLAExtensionRequest,
    SLASnapshot,
    SLATracker,
    adjust_priority,
    determine_priority,
    validate_extension,
)
from clearance.workflow.state_machine import WorkflowStateMachine, audit_refusal
from clearance.workflow.store import WorkflowStore
from clearance.workflow.validator import DecisionRequest, ValidationReport

logger = logging.getLogger(__name__)

SORT_KEYS = {
    "created_at": lambda w: w.created_at,
    "due_date": lambda w: w.sla_metrics.target_completion_time,
    "amount": lambda w: w.amount,
    "priority": lambda w: PRIORITY_RANK[w.priority],
    "risk_score": lambda w: w.risk_assessment.risk_score,
}


@dataclass
class WorkflowSubmission:
    """A new withdrawal to route for approval."""

    amount: Decimal
    currency: str
    customer: Customer
    agent: Agent
    documents: list[DocumentRef] = field(default_factory=list)
    transaction_context: dict[str, Any] = field(default_factory=dict)
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    compliance_flags: list[ComplianceFlag] = field(default_factory=list)
    priority: Optional[Priority] = None


@dataclass
class WorkflowFilters:
    status: list[WorkflowStatus] = field(default_factory=list)
    stage: list[WorkflowStage] = field(default_factory=list)
    priority: list[Priority] = field(default_factory=list)
    risk_level: list[RiskLevel] = field(default_factory=list)
    assigned_to: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    search: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20

    def matches(self, workflow: Workflow) -> bool:
        if self.status and workflow.status not in self.status:
            return False
        if self.stage and workflow.current_stage not in self.stage:
            return False
        if self.priority and workflow.priority not in self.priority:
            return False
        if self.risk_level and workflow.risk_assessment.overall_risk not in self.risk_level:
            return False
        if self.assigned_to and workflow.current_approver != self.assigned_to:
            return False
        if self.min_amount is not None and workflow.amount < self.min_amount:
            return False
        if self.max_amount is not None and workflow.amount > self.max_amount:
            return False
        if self.created_from and workflow.created_at < self.created_from:
            return False
        if self.created_to and workflow.created_at > self.created_to:
            return False
        if self.search:
            term = self.search.lower()
            request = workflow.withdrawal_request
            haystack = [
                workflow.workflow_number,
                request.customer.name,
                request.customer.account_number,
                request.agent.name,
            ]
            if not any(term in value.lower() for value in haystack):
                return False
        return True


@dataclass
class WorkflowPage:
    items: list[Workflow]
    total: int
    page: int
    limit: int
    summary: dict[str, int]

    @property
    def pages(self) -> int:
        return max((self.total + self.limit - 1) // self.limit, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflows": [w.to_summary() for w in self.items],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "pages": self.pages,
            },
            "summary": dict(self.summary),
        }


@dataclass(frozen=True)
class WorkflowPermissions:
    can_approve: bool = False
    can_reject: bool = False
    can_escalate: bool = False
    can_reassign: bool = False
    can_override: bool = False
    can_comment: bool = True
    can_view_audit: bool = False
    can_export: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "can_approve": self.can_approve,
            "can_reject": self.can_reject,
            "can_escalate": self.can_escalate,
            "can_reassign": self.can_reassign,
            "can_override": self.can_override,
            "can_comment": self.can_comment,
            "can_view_audit": self.can_view_audit,
            "can_export": self.can_export,
        }


@dataclass
class WorkflowView:
    workflow: Workflow
    permissions: WorkflowPermissions
    available_actions: list[DecisionAction]
    sla: SLASnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow.to_dict(),
            "permissions": self.permissions.to_dict(),
            "available_actions": [a.value for a in self.available_actions],
            "sla": self.sla.to_dict(),
        }


class ApprovalService:
    """Facade over the store, state machine, hierarchy and bulk coordinators."""

    def __init__(
        self,
        policy: Optional[ApprovalPolicy] = None,
        store: Optional[WorkflowStore] = None,
        bus: Optional[EventBus] = None,
        bulk: Optional[BulkActionCoordinator] = None,
    ):
        self.policy = policy or get_active_policy()
        self.store = store or WorkflowStore()
        self.bus = bus or EventBus()
        self.sla = SLATracker()
        self.state_machine = WorkflowStateMachine(self.policy, bus=self.bus, sla=self.sla)
        self.hierarchy = HierarchyCoordinator(self.policy, self.state_machine)
        self.bulk = bulk or BulkActionCoordinator()

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        submission: WorkflowSubmission,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Workflow:
        now = now or utcnow()
        if submission.amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")

        risk = submission.risk_assessment
        priority = submission.priority or determine_priority(
            submission.amount, risk.overall_risk, risk.risk_score,
        )
        workflow = Workflow(
            workflow_number=self.store.next_number(now),
            withdrawal_request=WithdrawalRequest(
                amount=submission.amount,
                currency=submission.currency.upper(),
                customer=submission.customer,
                agent=submission.agent,
                documents=tuple(submission.documents),
                transaction_context=dict(submission.transaction_context),
                requested_at=now,
            ),
            sla_metrics=self.sla.new_metrics(priority, submission.amount, risk.overall_risk, now),
            risk_assessment=risk,
            priority=priority,
            compliance_flags=list(submission.compliance_flags),
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        )
        workflow.audit_log.append(AuditEntry(
            action="workflow_created",
            actor_id=actor.id,
            actor_role=actor.role.value,
            details=(
                f"Withdrawal of {workflow.amount} {workflow.withdrawal_request.currency} "
                f"for {submission.customer.name} submitted at {priority.value} priority"
            ),
            data={"policy_version": self.policy.version},
            timestamp=now,
        ))
        self.state_machine.recompute(workflow, now)
        self.store.add(workflow)
        self.bus.publish(events.new_workflow(workflow))
        logger.info(
            f"Created workflow {workflow.workflow_number} "
            f"({workflow.amount} {workflow.withdrawal_request.currency}, {priority.value})"
        )
        return workflow.snapshot()

    def list_workflows(
        self,
        filters: Optional[WorkflowFilters] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowPage:
        filters = filters or WorkflowFilters()
        now = now or utcnow()
        key = SORT_KEYS.get(filters.sort_by)
        if key is None:
            raise ValidationError(f"Unknown sort field: {filters.sort_by}")
        if filters.page < 1 or filters.limit < 1:
            raise ValidationError("Page and limit must be positive")

        matched = [w for w in self.store.all() if filters.matches(w)]
        matched.sort(key=key, reverse=filters.sort_order == "desc")

        summary = {
            "total_pending": 0,
            "high_priority": 0,
            "sla_breached": 0,
            "requiring_attention": 0,
        }
        for workflow in matched:
            snapshot = self.sla.evaluate(workflow, now)
            if workflow.status == WorkflowStatus.PENDING:
                summary["total_pending"] += 1
            if PRIORITY_RANK[workflow.priority] >= PRIORITY_RANK[Priority.HIGH]:
                summary["high_priority"] += 1
            if snapshot.status == SLAStatus.BREACHED:
                summary["sla_breached"] += 1
            if not workflow.is_terminal and (
                snapshot.status != SLAStatus.ON_TRACK
                or workflow.follow_up_required
                or workflow.unresolved_flags()
            ):
                summary["requiring_attention"] += 1

        start = (filters.page - 1) * filters.limit
        items = [w.snapshot() for w in matched[start:start + filters.limit]]
        return WorkflowPage(
            items=items,
            total=len(matched),
            page=filters.page,
            limit=filters.limit,
            summary=summary,
        )

    def get_workflow(
        self,
        workflow_id: UUID,
        actor: User,
        now: Optional[datetime] = None,
    ) -> WorkflowView:
        now = now or utcnow()
        workflow = self.store.get(workflow_id)
        permissions = self.permissions_for(workflow, actor, now)
        return WorkflowView(
            workflow=workflow.snapshot(),
            permissions=permissions,
            available_actions=self.available_actions(workflow, permissions),
            sla=self.sla.evaluate(workflow, now),
        )

    def permissions_for(self, workflow: Workflow, actor: User, now: datetime) -> WorkflowPermissions:
        authority = self.policy.authority
        open_ = not workflow.is_terminal and workflow.current_stage != WorkflowStage.COMPLETED

        may_act = False
        if open_:
            delegation = workflow.routing.active_delegation(workflow.current_stage, now)
            may_act = (
                authority.has_authority(actor.role, workflow.current_stage)
                or workflow.routing.assigned_to == actor.id
                or (delegation is not None and delegation.delegate_id == actor.id)
            )
        on_hold = workflow.status == WorkflowStatus.ON_HOLD

        return WorkflowPermissions(
            can_approve=may_act and not on_hold,
            can_reject=may_act,
            can_escalate=may_act and workflow.current_stage != WorkflowStage.FINAL_AUTHORIZATION,
            can_reassign=open_ and actor.can_manage_routing,
            can_override=open_ and authority.can_override(actor.role),
            can_comment=True,
            can_view_audit=actor.can_view_audit,
            can_export=actor.can_export,
        )

    def available_actions(
        self,
        workflow: Workflow,
        permissions: WorkflowPermissions,
    ) -> list[DecisionAction]:
        actions = []
        if permissions.can_approve:
            risk = workflow.risk_assessment.overall_risk
            for action in (DecisionAction.APPROVE, DecisionAction.CONDITIONAL_APPROVE):
                if not self.policy.rules.rule_for(action).blocks(risk):
                    actions.append(action)
        if permissions.can_reject:
            actions.extend([DecisionAction.REJECT, DecisionAction.REQUEST_INFO])
        if permissions.can_escalate:
            actions.append(DecisionAction.ESCALATE)
        if permissions.can_override:
            actions.append(DecisionAction.OVERRIDE)
        return actions

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def validate_decision(
        self,
        workflow_id: UUID,
        request: DecisionRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> ValidationReport:
        workflow = self.store.get(workflow_id)
        return self.state_machine.dry_run(workflow, request, actor, now)

    async def submit_decision(
        self,
        workflow_id: UUID,
        request: DecisionRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> Workflow:
        async with self.store.acquire(workflow_id) as workflow:
            self.state_machine.apply(workflow, request, actor, now)
            return workflow.snapshot()

    async def bulk_decide(
        self,
        workflow_ids: list[UUID],
        request: DecisionRequest,
        actor: User,
    ) -> BulkResult:
        """
        Apply one decision to many workflows.

        Each item is validated on its own. Version and stage expectations
        in the shared request are replaced by the version each item has
        when it is picked up, so an item that changes before its lock is
        taken fails with a conflict.
        """
        if not workflow_ids:
            raise ValidationError("At least one workflow is required")
        if len(workflow_ids) > settings.bulk_max_items:
            raise ValidationError(
                f"Bulk actions are limited to {settings.bulk_max_items} workflows "
                f"({len(workflow_ids)} requested)"
            )

        shared = DecisionRequest(**{
            **request.__dict__,
            "expected_version": None,
            "expected_stage": None,
        })

        async def handle(workflow_id: UUID) -> Workflow:
            seen = self.store.get(workflow_id).version
            item = DecisionRequest(**{**shared.__dict__, "expected_version": seen})
            return await self.submit_decision(workflow_id, item, actor)

        def describe(workflow_id: UUID) -> Optional[str]:
            workflow = self.store.find(workflow_id)
            return workflow.workflow_number if workflow else None

        return await self.bulk.run(
            DecisionAction(request.action).value, workflow_ids, handle, actor.id, describe,
        )

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    async def escalate(
        self,
        workflow_id: UUID,
        request: HierarchyEscalationRequest,
        actor: User,
        expected_version: Optional[int] = None,
    ) -> Workflow:
        async with self.store.acquire(workflow_id, expected_version) as workflow:
            self.hierarchy.escalate(workflow, request, actor)
            return workflow.snapshot()

    async def delegate(
        self,
        workflow_id: UUID,
        request: DelegationRequest,
        actor: User,
        expected_version: Optional[int] = None,
    ) -> Workflow:
        async with self.store.acquire(workflow_id, expected_version) as workflow:
            self.hierarchy.delegate(workflow, request, actor)
            return workflow.snapshot()

    async def reassign(
        self,
        workflow_id: UUID,
        request: ReassignRequest,
        actor: User,
        expected_version: Optional[int] = None,
    ) -> Workflow:
        async with self.store.acquire(workflow_id, expected_version) as workflow:
            self.hierarchy.reassign(workflow, request, actor)
            return workflow.snapshot()

    async def override_hierarchy(
        self,
        workflow_id: UUID,
        request: HierarchyOverrideRequest,
        actor: User,
        expected_version: Optional[int] = None,
    ) -> Workflow:
        async with self.store.acquire(workflow_id, expected_version) as workflow:
            self.hierarchy.override_hierarchy(workflow, request, actor)
            return workflow.snapshot()

    # ------------------------------------------------------------------
    # Comments, SLA, priority, conditions, flags
    # ------------------------------------------------------------------

    async def add_comment(
        self,
        workflow_id: UUID,
        actor: User,
        content: str,
        is_internal: bool = False,
        mentions: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowComment:
        now = now or utcnow()
        if not content or not content.strip():
            raise ValidationError("Comment cannot be empty")

        async with self.store.acquire(workflow_id) as workflow:
            comment = WorkflowComment(
                author_id=actor.id,
                author_name=actor.display_name,
                content=content.strip(),
                is_internal=is_internal,
                mentions=list(mentions or []),
                created_at=now,
            )
            workflow.comments.append(comment)
            workflow.audit_log.append(AuditEntry(
                action="comment_added",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"Comment by {actor.display_name}",
                data={
                    "comment_id": str(comment.id),
                    "is_internal": is_internal,
                    "mentions": list(comment.mentions),
                },
                timestamp=now,
            ))
            # Comments leave the version alone; it tracks routing and decisions.
            workflow.updated_at = now
            self.bus.publish(events.comment_added(workflow, comment))
            return comment

    async def extend_sla(
        self,
        workflow_id: UUID,
        request: SLAExtensionRequest,
        actor: User,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Workflow:
        now = now or utcnow()

        async with self.store.acquire(workflow_id, expected_version) as workflow:
            with audit_refusal(workflow, actor, now, "sla_extension"):
                if not actor.can_manage_routing:
                    raise AuthorityError(f"{actor.role.value} may not extend SLAs")
                if workflow.is_terminal:
                    raise ValidationError(f"Workflow is {workflow.status.value}; SLA is closed")
                validate_extension(self.policy.sla_extension, request)

            sla = workflow.sla_metrics
            kind = ExtensionType(request.extension_type)
            previous_target = sla.target_completion_time
            if kind == ExtensionType.DEADLINE:
                sla.target_completion_time = sla.target_completion_time + timedelta(
                    hours=request.additional_hours
                )
            else:
                sla.escalation_delay_hours += request.additional_hours

            previous_priority = workflow.priority
            workflow.priority = adjust_priority(workflow.priority, request.priority_adjustment)

            workflow.audit_log.append(AuditEntry(
                action="sla_extended",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"{kind.value} extended by {request.additional_hours}h: {request.reason}",
                severity=AuditSeverity.WARNING,
                data={
                    "extension_type": kind.value,
                    "additional_hours": request.additional_hours,
                    "previous_target": previous_target.isoformat(),
                    "new_target": sla.target_completion_time.isoformat(),
                    "business_justification": request.business_justification,
                    "impact_assessment": request.impact_assessment,
                    "previous_priority": previous_priority.value,
                    "new_priority": workflow.priority.value,
                    "notify": list(request.recipients) if request.notify_stakeholders else [],
                },
                timestamp=now,
            ))
            self.state_machine.commit(workflow, now, sla_extended=kind.value)
            logger.info(
                f"SLA {kind.value} on {workflow.workflow_number} extended "
                f"{request.additional_hours}h by {actor.id}"
            )
            return workflow.snapshot()

    async def update_priority(
        self,
        workflow_id: UUID,
        priority: Priority,
        reason: str,
        actor: User,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Workflow:
        now = now or utcnow()

        async with self.store.acquire(workflow_id, expected_version) as workflow:
            with audit_refusal(workflow, actor, now, "priority_change"):
                if not actor.can_manage_routing:
                    raise AuthorityError(f"{actor.role.value} may not change priority")
                if not reason or not reason.strip():
                    raise ValidationError("A reason is required to change priority")
                if workflow.is_terminal:
                    raise ValidationError(f"Workflow is {workflow.status.value}")
            previous = workflow.priority
            workflow.priority = Priority(priority)
            workflow.audit_log.append(AuditEntry(
                action="priority_changed",
                actor_id=actor.id,
                actor_role=actor.role.value,
                details=f"{previous.value} -> {workflow.priority.value}: {reason.strip()}",
                data={"previous": previous.value, "new": workflow.priority.value},
                timestamp=now,
            ))
            self.state_machine.commit(workflow, now, priority=workflow.priority.value)
            return workflow.snapshot()

    async def satisfy_condition(
        self,
        workflow_id: UUID,
        condition_id: UUID,
        actor: User,
    ) -> Workflow:
        async with self.store.acquire(workflow_id) as workflow:
            self.state_machine.satisfy_condition(workflow, condition_id, actor)
            return workflow.snapshot()

    async def resolve_compliance_flag(
        self,
        workflow_id: UUID,
        flag_id: UUID,
        resolution: str,
        actor: User,
    ) -> Workflow:
        if not resolution or not resolution.strip():
            raise ValidationError("A resolution note is required")
        async with self.store.acquire(workflow_id) as workflow:
            self.state_machine.resolve_flag(workflow, flag_id, actor, resolution.strip())
            return workflow.snapshot()

    # ------------------------------------------------------------------
    # SLA sweep and reporting
    # ------------------------------------------------------------------

    async def check_sla(self, now: Optional[datetime] = None) -> int:
        """Fire due escalation triggers across open workflows. Returns the number fired."""
        now = now or utcnow()
        fired = 0
        for workflow in self.store.all():
            if workflow.is_terminal:
                continue
            async with self.store.acquire(workflow.id) as locked:
                fired += len(self.state_machine.fire_triggers(locked, now))
        if fired:
            logger.info(f"SLA sweep fired {fired} escalation trigger(s)")
        return fired

    def dashboard_stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utcnow()
        workflows = self.store.all()

        by_status = {s.value: 0 for s in WorkflowStatus}
        by_stage = {s.value: 0 for s in STAGE_ORDER}
        by_sla = {s.value: 0 for s in SLAStatus}
        high_risk_pending = 0
        overdue = 0
        completed_hours = []

        for workflow in workflows:
            by_status[workflow.status.value] += 1
            by_stage[workflow.current_stage.value] += 1
            snapshot = self.sla.evaluate(workflow, now)
            by_sla[snapshot.status.value] += 1

            if workflow.is_terminal:
                completed_hours.append(snapshot.elapsed_seconds / 3600)
                continue
            if snapshot.is_overdue:
                overdue += 1
            risk = workflow.risk_assessment.overall_risk
            if risk in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                high_risk_pending += 1

        total = len(workflows)
        compliance = (total - by_sla[SLAStatus.BREACHED.value]) / total * 100 if total else 100.0
        average = sum(completed_hours) / len(completed_hours) if completed_hours else 0.0

        return {
            "total": total,
            "by_status": by_status,
            "by_stage": by_stage,
            "sla": {
                "on_track": by_sla[SLAStatus.ON_TRACK.value],
                "at_risk": by_sla[SLAStatus.AT_RISK.value],
                "breached": by_sla[SLAStatus.BREACHED.value],
                "compliance_rate": round(compliance, 2),
            },
            "average_processing_hours": round(average, 2),
            "high_risk_pending": high_risk_pending,
            "overdue": overdue,
            "policy_version": self.policy.version,
        }

    def audit_log(self, workflow_id: UUID, actor: User) -> list[AuditEntry]:
        if not actor.can_view_audit:
            raise AuthorityError(f"{actor.role.value} may not view audit logs")
        return list(self.store.get(workflow_id).audit_log)
