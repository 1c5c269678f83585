"""
SLA tracking and escalation triggers.

Evaluation is pure: ``evaluate`` reads the workflow and a timestamp and
returns a snapshot. ``check_triggers`` and ``recompute`` are the only
calls that write to the workflow's SLA metrics.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from clearance.config import settings
from clearance.exceptions import ConfigurationError, ValidationError
from clearance.models.workflow import (
    PRIORITY_RANK,
    RISK_RANK,
    EscalationTrigger,
    Priority,
    RiskLevel,
    SLAMetrics,
    SLAStatus,
    TriggerAction,
    Workflow,
)
from clearance.policy.loader import SLAExtensionLimits
from clearance.security.auth import UserRole

logger = logging.getLogger(__name__)

_CONDITION = re.compile(r"^\s*(progress|stage_hours|amount|risk)\s*>=\s*(\w+(?:\.\d+)?)\s*$")


@dataclass(frozen=True)
class SLASnapshot:
    """Point-in-time view of a workflow's SLA."""

    elapsed_seconds: float
    remaining_seconds: float
    progress_pct: float
    is_overdue: bool
    status: SLAStatus
    alert_level: Optional[str] = None

    @property
    def hours_remaining(self) -> float:
        return self.remaining_seconds / 3600

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_seconds": self.elapsed_seconds,
            "remaining_seconds": self.remaining_seconds,
            "hours_remaining": round(self.hours_remaining, 2),
            "progress_pct": round(self.progress_pct, 2),
            "is_overdue": self.is_overdue,
            "status": self.status.value,
            "alert_level": self.alert_level,
        }


def determine_priority(amount: Decimal, risk_level: RiskLevel, risk_score: float) -> Priority:
    """Initial priority of a new withdrawal."""
    if risk_level == RiskLevel.CRITICAL:
        return Priority.URGENT
    if amount >= 5000 or risk_score >= 80:
        return Priority.HIGH
    if amount >= 2000 or risk_score >= 60:
        return Priority.MEDIUM
    return Priority.LOW


class SLATracker:
    """
    Computes SLA progress and fires escalation triggers.

    Trigger conditions are small declarative expressions:
        progress>=75      SLA window consumed, in percent
        overdue           past the target completion time
        stage_hours>=4    hours spent in the current stage
        amount>=50000     withdrawal amount
        risk>=high        assessed risk level
    """

    def __init__(
        self,
        at_risk_pct: Optional[float] = None,
        critical_pct: Optional[float] = None,
    ):
        self.at_risk_pct = at_risk_pct if at_risk_pct is not None else settings.sla_at_risk_pct
        self.critical_pct = critical_pct if critical_pct is not None else settings.sla_critical_pct

    def target_for(self, priority: Priority, amount: Decimal, created_at: datetime) -> datetime:
        hours = settings.sla_hours_for(Priority(priority).value)
        if amount >= Decimal(str(settings.sla_high_value_amount)):
            hours = min(hours, settings.sla_hours_high)
        return created_at + timedelta(hours=hours)

    def default_triggers(self, amount: Decimal, risk: RiskLevel) -> list[EscalationTrigger]:
        triggers = [
            EscalationTrigger(
                condition=f"progress>={self.at_risk_pct:g}",
                action=TriggerAction.NOTIFY,
                target_role=UserRole.MANAGER,
            ),
            EscalationTrigger(
                condition=f"progress>={self.critical_pct:g}",
                action=TriggerAction.ESCALATE,
                target_role=UserRole.ADMIN,
            ),
            EscalationTrigger(
                condition="overdue",
                action=TriggerAction.ESCALATE,
                target_role=UserRole.SUPER_ADMIN,
            ),
        ]
        if RISK_RANK[risk] >= RISK_RANK[RiskLevel.HIGH]:
            triggers.append(EscalationTrigger(
                condition="stage_hours>=2",
                action=TriggerAction.REASSIGN,
                target_role=UserRole.ADMIN,
            ))
        return triggers

    def new_metrics(
        self,
        priority: Priority,
        amount: Decimal,
        risk: RiskLevel,
        now: datetime,
    ) -> SLAMetrics:
        return SLAMetrics(
            created_at=now,
            target_completion_time=self.target_for(priority, amount, now),
            stage_entered_at=now,
            escalation_triggers=self.default_triggers(amount, risk),
        )

    def evaluate(self, workflow: Workflow, now: datetime) -> SLASnapshot:
        sla = workflow.sla_metrics
        end = sla.actual_completion_time or now
        total = (sla.target_completion_time - sla.created_at).total_seconds()
        elapsed = max((end - sla.created_at).total_seconds(), 0.0)
        remaining = (sla.target_completion_time - end).total_seconds()

        if total <= 0:
            progress = 100.0
        else:
            progress = min(max(elapsed / total * 100, 0.0), 100.0)

        is_overdue = remaining < 0
        if is_overdue:
            status = SLAStatus.BREACHED
        elif progress >= self.at_risk_pct:
            status = SLAStatus.AT_RISK
        else:
            status = SLAStatus.ON_TRACK

        alert = None
        if is_overdue or progress > self.critical_pct:
            alert = "critical"
        elif progress > self.at_risk_pct:
            alert = "warning"

        snapshot = SLASnapshot(
            elapsed_seconds=elapsed,
            remaining_seconds=remaining,
            progress_pct=progress,
            is_overdue=is_overdue,
            status=status,
            alert_level=alert,
        )

        if status == SLAStatus.ON_TRACK and sla.actual_completion_time is None:
            pending = [t for t in sla.escalation_triggers if not t.fired]
            if any(self.condition_met(t.condition, workflow, snapshot, now) for t in pending):
                snapshot = SLASnapshot(
                    elapsed_seconds=elapsed,
                    remaining_seconds=remaining,
                    progress_pct=progress,
                    is_overdue=False,
                    status=SLAStatus.AT_RISK,
                    alert_level=alert or "warning",
                )
        return snapshot

    def condition_met(
        self,
        condition: str,
        workflow: Workflow,
        snapshot: SLASnapshot,
        now: datetime,
    ) -> bool:
        if condition.strip() == "overdue":
            return snapshot.is_overdue

        match = _CONDITION.match(condition)
        if not match:
            raise ConfigurationError(f"Unknown escalation trigger condition: {condition!r}")

        subject, raw = match.groups()
        if subject == "risk":
            try:
                threshold = RiskLevel(raw)
            except ValueError:
                raise ConfigurationError(f"Unknown risk level in trigger: {raw!r}") from None
            return RISK_RANK[workflow.risk_assessment.overall_risk] >= RISK_RANK[threshold]

        value = Decimal(raw)
        if subject == "progress":
            return Decimal(str(snapshot.progress_pct)) >= value
        if subject == "amount":
            return workflow.amount >= value
        stage_hours = (now - workflow.sla_metrics.stage_entered_at).total_seconds() / 3600
        return Decimal(str(stage_hours)) >= value

    def check_triggers(self, workflow: Workflow, now: datetime) -> list[EscalationTrigger]:
        """
        Fire every unfired trigger whose condition now holds.

        Returns only the triggers fired by this call; already-fired
        triggers are never returned again.
        """
        if workflow.is_terminal:
            return []

        snapshot = self.evaluate(workflow, now)
        fired = []
        for trigger in workflow.sla_metrics.escalation_triggers:
            if trigger.fired:
                continue
            if self.condition_met(trigger.condition, workflow, snapshot, now):
                trigger.triggered_at = now
                fired.append(trigger)
                logger.info(
                    f"Escalation trigger fired on {workflow.workflow_number}: "
                    f"{trigger.condition} -> {trigger.action.value} {trigger.target_role.value}"
                )
        return fired

    def recompute(self, workflow: Workflow, now: datetime) -> SLASnapshot:
        """Refresh stored SLA metrics from the current time."""
        sla = workflow.sla_metrics
        end = sla.actual_completion_time or now
        sla.time_in_current_stage = max((end - sla.stage_entered_at).total_seconds(), 0.0)
        sla.total_processing_time = max((end - sla.created_at).total_seconds(), 0.0)
        snapshot = self.evaluate(workflow, now)
        sla.sla_status = snapshot.status
        return snapshot


class ExtensionType(str, Enum):
    DEADLINE = "deadline"
    STAGE_TIMEOUT = "stage_timeout"
    ESCALATION_DELAY = "escalation_delay"


class PriorityAdjustment(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    MAINTAIN = "maintain"


@dataclass
class SLAExtensionRequest:
    extension_type: ExtensionType
    additional_hours: int
    reason: str
    business_justification: str
    impact_assessment: str
    notify_stakeholders: bool = False
    recipients: list[str] = field(default_factory=list)
    priority_adjustment: PriorityAdjustment = PriorityAdjustment.MAINTAIN


def validate_extension(limits: SLAExtensionLimits, request: SLAExtensionRequest) -> None:
    """Raise ValidationError listing every problem with an SLA extension request."""
    errors = []
    if not limits.min_hours <= request.additional_hours <= limits.max_hours:
        errors.append(
            f"Additional hours must be between {limits.min_hours} and {limits.max_hours}"
        )
    if len((request.reason or "").strip()) < limits.min_reason_length:
        errors.append(f"Extension reason must be at least {limits.min_reason_length} characters")
    if len((request.business_justification or "").strip()) < limits.min_business_justification_length:
        errors.append(
            "Business justification must be at least "
            f"{limits.min_business_justification_length} characters"
        )
    if len((request.impact_assessment or "").strip()) < limits.min_impact_assessment_length:
        errors.append(
            f"Impact assessment must be at least {limits.min_impact_assessment_length} characters"
        )
    if request.notify_stakeholders and not request.recipients:
        errors.append("At least one notification recipient is required")

    if errors:
        raise ValidationError("; ".join(errors))


def adjust_priority(priority: Priority, adjustment: PriorityAdjustment) -> Priority:
    ranked = sorted(PRIORITY_RANK, key=PRIORITY_RANK.get)
    idx = ranked.index(priority)
    if adjustment == PriorityAdjustment.INCREASE:
        idx = min(idx + 1, len(ranked) - 1)
    elif adjustment == PriorityAdjustment.DECREASE:
        idx = max(idx - 1, 0)
    return ranked[idx]
