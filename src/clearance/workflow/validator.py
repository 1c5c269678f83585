"""
Decision validation.

The single authoritative check run before any decision mutates a
workflow. Pure: it reads the workflow, the request and the actor and
returns a report. Raising is left to the state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from clearance.models.workflow import (
    RISK_RANK,
    AuthorizationMethod,
    DecisionAction,
    FlagSeverity,
    RiskLevel,
    Workflow,
    WorkflowStage,
    WorkflowStatus,
    next_stage,
    stage_index,
    utcnow,
)
from clearance.policy.loader import ApprovalPolicy
from clearance.security.auth import User, UserRole


class CheckStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class CheckSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# Checks whose failure means the actor lacks authority rather than the
# request being malformed.
AUTHORITY_CHECKS = frozenset({"stage_authority", "amount_authority", "override_authority"})

# Actions that move a withdrawal towards payout and so need the second
# signature when one is required.
ADVANCING_ACTIONS = frozenset({
    DecisionAction.APPROVE,
    DecisionAction.CONDITIONAL_APPROVE,
    DecisionAction.OVERRIDE,
})

ACTIONABLE_STATUSES = frozenset({WorkflowStatus.PENDING, WorkflowStatus.ESCALATED})


@dataclass(frozen=True)
class ValidationCheck:
    """Outcome of a single validation rule."""

    check_type: str
    status: CheckStatus
    severity: CheckSeverity
    message: str
    requirement: Optional[str] = None
    requires_acknowledgment: bool = False

    @property
    def blocking(self) -> bool:
        return self.status == CheckStatus.FAILED and self.severity in (
            CheckSeverity.ERROR,
            CheckSeverity.CRITICAL,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_type": self.check_type,
            "status": self.status.value,
            "severity": self.severity.value,
            "message": self.message,
            "requirement": self.requirement,
            "requires_acknowledgment": self.requires_acknowledgment,
        }


@dataclass
class DecisionRequest:
    """A reviewer's proposed decision and its supporting payload."""

    action: DecisionAction
    notes: str = ""
    authorization_method: Optional[AuthorizationMethod] = None
    authorization_code: Optional[str] = None

    business_justification: Optional[str] = None
    risk_mitigation: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalate_to: Optional[UserRole] = None
    agent_instructions: Optional[str] = None
    conditions: list[str] = field(default_factory=list)
    compliance_checks: list[str] = field(default_factory=list)
    target_stage: Optional[WorkflowStage] = None

    acknowledged_warnings: list[str] = field(default_factory=list)
    secondary_approver_id: Optional[str] = None
    expected_version: Optional[int] = None
    expected_stage: Optional[WorkflowStage] = None

    ip_address: Optional[str] = None
    device_info: Optional[str] = None
    session_id: Optional[str] = None

    def has_field(self, name: str) -> bool:
        value = getattr(self, name, None)
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        if isinstance(value, (list, tuple)):
            return any(str(v).strip() for v in value)
        return True


@dataclass
class ValidationReport:
    """Everything the validator concluded about a proposed decision."""

    action: DecisionAction
    checks: list[ValidationCheck] = field(default_factory=list)
    requires_secondary_approval: bool = False
    secondary_approval_reasons: list[str] = field(default_factory=list)
    effective_risk: RiskLevel = RiskLevel.LOW
    escalation_required: bool = False
    acknowledged: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(c.blocking for c in self.checks)

    @property
    def failures(self) -> list[ValidationCheck]:
        return [c for c in self.checks if c.blocking]

    @property
    def warnings(self) -> list[ValidationCheck]:
        return [c for c in self.checks if c.status == CheckStatus.WARNING]

    @property
    def unacknowledged(self) -> list[ValidationCheck]:
        return [
            c for c in self.checks
            if c.requires_acknowledgment and c.check_type not in self.acknowledged
        ]

    @property
    def ready(self) -> bool:
        """Valid and every warning that needs acknowledgment was acknowledged."""
        return self.is_valid and not self.unacknowledged

    @property
    def confirmation_required(self) -> bool:
        return RISK_RANK[self.effective_risk] >= RISK_RANK[RiskLevel.HIGH]

    @property
    def authority_failure(self) -> bool:
        return any(c.check_type in AUTHORITY_CHECKS for c in self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "is_valid": self.is_valid,
            "ready": self.ready,
            "checks": [c.to_dict() for c in self.checks],
            "requires_secondary_approval": self.requires_secondary_approval,
            "secondary_approval_reasons": list(self.secondary_approval_reasons),
            "effective_risk": self.effective_risk.value,
            "confirmation_required": self.confirmation_required,
            "escalation_required": self.escalation_required,
            "unacknowledged_warnings": [c.check_type for c in self.unacknowledged],
        }


def _passed(check_type: str, message: str, requirement: Optional[str] = None) -> ValidationCheck:
    return ValidationCheck(check_type, CheckStatus.PASSED, CheckSeverity.INFO, message, requirement)


def _failed(
    check_type: str,
    message: str,
    requirement: Optional[str] = None,
    severity: CheckSeverity = CheckSeverity.ERROR,
) -> ValidationCheck:
    return ValidationCheck(check_type, CheckStatus.FAILED, severity, message, requirement)


def _warning(
    check_type: str,
    message: str,
    requirement: Optional[str] = None,
    severity: CheckSeverity = CheckSeverity.WARNING,
    requires_acknowledgment: bool = False,
) -> ValidationCheck:
    return ValidationCheck(
        check_type,
        CheckStatus.WARNING,
        severity,
        message,
        requirement,
        requires_acknowledgment,
    )


class DecisionValidator:
    """
    Validates proposed decisions against the approval policy.

    Usage:
        validator = DecisionValidator(get_active_policy())
        report = validator.validate(workflow, request, actor)
        if not report.is_valid:
            ...
    """

    def __init__(self, policy: ApprovalPolicy):
        self.policy = policy

    def effective_risk(self, workflow: Workflow, action: DecisionAction) -> RiskLevel:
        """Risk level of this particular decision, not just the transaction."""
        limits = self.policy.validation
        amount = workflow.amount
        base = workflow.risk_assessment.overall_risk

        if action == DecisionAction.OVERRIDE or amount > limits.critical_risk_amount:
            return RiskLevel.CRITICAL
        if action == DecisionAction.APPROVE and amount > limits.elevated_risk_amount:
            if base == RiskLevel.LOW:
                return RiskLevel.MEDIUM
            if RISK_RANK[base] < RISK_RANK[RiskLevel.HIGH]:
                return RiskLevel.HIGH
        return base

    def secondary_approval(
        self,
        workflow: Workflow,
        action: DecisionAction,
    ) -> tuple[bool, list[str]]:
        """Whether a second approver is mandatory, and why."""
        rule = self.policy.rules.rule_for(action)
        reasons = []

        if rule.exceeds_threshold(workflow.amount):
            reasons.append(
                f"Amount {workflow.amount} exceeds {rule.secondary_approval_threshold} "
                f"threshold for {action.value}"
            )
        if workflow.risk_assessment.overall_risk == RiskLevel.CRITICAL:
            reasons.append("Critical risk level")
        if action == DecisionAction.OVERRIDE:
            reasons.append("Override decisions always need a second approver")
        if workflow.unresolved_flags(FlagSeverity.CRITICAL):
            reasons.append("Unresolved critical compliance flags")

        return bool(reasons), reasons

    def validate(
        self,
        workflow: Workflow,
        request: DecisionRequest,
        actor: User,
        now: Optional[datetime] = None,
    ) -> ValidationReport:
        now = now or utcnow()
        action = DecisionAction(request.action)
        rule = self.policy.rules.rule_for(action)
        risk = workflow.risk_assessment.overall_risk

        report = ValidationReport(
            action=action,
            effective_risk=self.effective_risk(workflow, action),
            acknowledged=list(request.acknowledged_warnings),
        )
        checks = report.checks

        checks.append(self._check_status(workflow))

        if rule.blocks(risk):
            checks.append(_failed(
                "risk_level_block",
                f"Action blocked due to {risk.value} risk level",
                f"{action.value} not allowed for {risk.value} risk transactions",
                severity=CheckSeverity.CRITICAL,
            ))

        notes_len = len(request.notes.strip())
        if notes_len >= rule.min_notes_length:
            checks.append(_passed("notes_length", f"Notes length adequate ({notes_len} characters)"))
        else:
            checks.append(_failed(
                "notes_length",
                f"Notes must be at least {rule.min_notes_length} characters (currently {notes_len})",
                f"Minimum {rule.min_notes_length} characters required",
            ))

        for name in rule.required_fields:
            if not request.has_field(name):
                checks.append(_failed(
                    "required_field",
                    f"Missing required field: {name}",
                    f"{name} is required for {action.value}",
                ))

        checks.extend(self._check_authorization(request))
        checks.extend(self._check_authority(workflow, request, actor, report, now))
        checks.extend(self._check_routing_target(workflow, request))

        if rule.requires_compliance_check:
            checks.append(self._check_compliance(workflow))

        if rule.requires_risk_assessment:
            if workflow.risk_assessment.risk_score > 0:
                checks.append(_passed(
                    "risk_assessment",
                    f"Risk assessment completed (score: {workflow.risk_assessment.risk_score})",
                ))
            else:
                checks.append(_warning(
                    "risk_assessment",
                    "Risk assessment not completed or outdated",
                    "Current risk assessment required",
                ))

        checks.extend(self._advisories(workflow, now))

        required, reasons = self.secondary_approval(workflow, action)
        report.requires_secondary_approval = required
        report.secondary_approval_reasons = reasons
        if required and action in ADVANCING_ACTIONS:
            checks.append(self._check_secondary_approver(request, actor))

        return report

    def _check_status(self, workflow: Workflow) -> ValidationCheck:
        if workflow.current_stage == WorkflowStage.COMPLETED or workflow.is_terminal:
            return _failed(
                "workflow_status",
                f"Workflow is {workflow.status.value} and accepts no further decisions",
                "Workflow must be pending",
                severity=CheckSeverity.CRITICAL,
            )
        if workflow.status not in ACTIONABLE_STATUSES:
            return _failed(
                "workflow_status",
                f"Workflow is {workflow.status.value}",
                "Workflow must be pending",
                severity=CheckSeverity.CRITICAL,
            )
        return _passed("workflow_status", f"Workflow is {workflow.status.value}")

    def _check_authorization(self, request: DecisionRequest) -> list[ValidationCheck]:
        allowed = self.policy.validation.allowed_authorization_methods
        checks = []

        method = request.authorization_method
        if method is None:
            checks.append(_failed(
                "authorization_method",
                "Authorization method required",
                "Valid authorization method required",
            ))
        elif AuthorizationMethod(method) not in allowed:
            checks.append(_failed(
                "authorization_method",
                f"Authorization method {AuthorizationMethod(method).value} is not permitted",
                f"One of: {sorted(m.value for m in allowed)}",
            ))
        else:
            checks.append(_passed(
                "authorization_method",
                f"Authorization method: {AuthorizationMethod(method).value}",
            ))

        if not (request.authorization_code or "").strip():
            checks.append(_failed(
                "authorization_code",
                "An externally issued authorization code is required",
                "Authorization code must be supplied with every decision",
            ))
        return checks

    def _check_authority(
        self,
        workflow: Workflow,
        request: DecisionRequest,
        actor: User,
        report: ValidationReport,
        now: datetime,
    ) -> list[ValidationCheck]:
        authority = self.policy.authority
        action = DecisionAction(request.action)
        rule = self.policy.rules.rule_for(action)
        stage = workflow.current_stage
        checks = []

        if stage == WorkflowStage.COMPLETED:
            return checks

        delegation = workflow.routing.active_delegation(stage, now)
        delegated = delegation is not None and delegation.delegate_id == actor.id

        if authority.has_authority(actor.role, stage):
            ceiling = authority.level_for_role(actor.role).max_amount
            checks.append(_passed(
                "stage_authority",
                f"{actor.role.value} may act at {stage.value}",
            ))
        elif delegated and (
            delegation.authority_level.value != "review_only"
            or action == DecisionAction.REQUEST_INFO
        ):
            ceiling = authority.level_for_stage(stage).max_amount
            checks.append(_passed(
                "stage_authority",
                f"Acting at {stage.value} under delegation from {delegation.delegator_id}",
            ))
        else:
            checks.append(_failed(
                "stage_authority",
                f"{actor.role.value} has no authority at {stage.value}",
                f"Requires {authority.role_for_stage(stage).value} or higher",
            ))
            return checks

        report.escalation_required = authority.requires_escalation(
            stage, workflow.amount, actor.role
        )

        if rule.checks_amount_authority:
            destination = next_stage(stage)
            if action == DecisionAction.OVERRIDE and request.target_stage is not None:
                destination = WorkflowStage(request.target_stage)
            within = ceiling is None or workflow.amount <= ceiling
            if within:
                checks.append(_passed("amount_authority", "Amount within approval authority"))
            elif destination == WorkflowStage.COMPLETED:
                required = authority.minimum_role_for_amount(workflow.amount)
                checks.append(_failed(
                    "amount_authority",
                    f"Amount {workflow.amount} exceeds approval authority {ceiling}",
                    f"Completing this amount requires {required.value} authority",
                ))
            else:
                checks.append(_passed(
                    "amount_authority",
                    f"Amount exceeds {actor.role.value} authority; "
                    f"routed to {destination.value} for further review",
                ))

        if action == DecisionAction.OVERRIDE:
            if authority.can_override(actor.role):
                checks.append(_passed("override_authority", f"{actor.role.value} may override"))
            else:
                checks.append(_failed(
                    "override_authority",
                    f"{actor.role.value} is not permitted to override",
                    "Override requires an authority level with can_override",
                    severity=CheckSeverity.CRITICAL,
                ))
        return checks

    def _check_routing_target(
        self,
        workflow: Workflow,
        request: DecisionRequest,
    ) -> list[ValidationCheck]:
        action = DecisionAction(request.action)
        current = workflow.current_stage
        if current == WorkflowStage.COMPLETED:
            return []

        if action == DecisionAction.ESCALATE and request.escalate_to is not None:
            target = self.policy.authority.stage_for_role(request.escalate_to)
            if stage_index(target) <= stage_index(current):
                return [_failed(
                    "escalation_target",
                    f"Cannot escalate from {current.value} to {target.value}",
                    "Escalation target must be a higher review stage",
                )]
            return [_passed("escalation_target", f"Escalating to {target.value}")]

        if action == DecisionAction.OVERRIDE and request.target_stage is not None:
            target = WorkflowStage(request.target_stage)
            if stage_index(target) <= stage_index(current):
                return [_failed(
                    "override_target",
                    f"Override cannot move from {current.value} to {target.value}",
                    "Override target must be a later stage",
                )]
            return [_passed("override_target", f"Override to {target.value}")]

        return []

    def _check_compliance(self, workflow: Workflow) -> ValidationCheck:
        critical = workflow.unresolved_flags(FlagSeverity.CRITICAL)
        if critical:
            return _failed(
                "compliance_check",
                f"{len(critical)} critical compliance issue(s) require resolution",
                "Compliance requirements must be met",
            )
        warnings = workflow.unresolved_flags(FlagSeverity.WARNING)
        if warnings:
            return _warning(
                "compliance_check",
                f"{len(warnings)} compliance warning(s) require attention",
                "Compliance requirements must be met",
            )
        return _passed("compliance_check", "All compliance requirements met")

    def _advisories(self, workflow: Workflow, now: datetime) -> list[ValidationCheck]:
        limits = self.policy.validation
        advisories = []

        if workflow.amount > limits.high_value_amount:
            advisories.append(_warning(
                "high_value",
                f"High-value transaction: {workflow.amount} {workflow.withdrawal_request.currency}",
                "Acknowledge the additional scrutiny required",
                requires_acknowledgment=True,
            ))

        indicators = workflow.risk_assessment.fraud_indicators
        if indicators:
            advisories.append(_warning(
                "fraud_indicators",
                f"{len(indicators)} fraud indicator(s) detected",
                "Review and acknowledge the fraud indicators",
                requires_acknowledgment=True,
            ))

        queued_hours = (now - workflow.sla_metrics.created_at).total_seconds() / 3600
        if queued_hours > limits.queue_time_warning_hours:
            advisories.append(_warning(
                "time_in_queue",
                f"Workflow has been in queue for {queued_hours:.0f} hours",
                severity=CheckSeverity.INFO,
            ))

        in_hours = (
            now.weekday() in limits.business_days
            and limits.business_hours_start <= now.hour < limits.business_hours_end
        )
        if in_hours:
            advisories.append(_passed("business_hours", "Within business hours"))
        else:
            advisories.append(_warning(
                "business_hours",
                "Outside business hours",
                "Decisions outside business hours are flagged for review",
                severity=CheckSeverity.INFO,
            ))
        return advisories

    def _check_secondary_approver(self, request: DecisionRequest, actor: User) -> ValidationCheck:
        approver = (request.secondary_approver_id or "").strip()
        if not approver:
            return _failed(
                "secondary_approval",
                "A secondary approver is required for this decision",
                "Supply secondary_approver_id",
            )
        if approver == actor.id:
            return _failed(
                "secondary_approval",
                "Secondary approver must be a different person",
                "Secondary approver must differ from the primary approver",
            )
        return _passed("secondary_approval", f"Secondary approval by {approver}")
