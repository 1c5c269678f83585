"""
Tests for SLA tracking, escalation triggers and extension rules.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from clearance.exceptions import ConfigurationError, ValidationError
from clearance.models.workflow import (
    EscalationTrigger,
    Priority,
    RiskLevel,
    SLAStatus,
    TriggerAction,
    WorkflowStatus,
)
from clearance.security.auth import UserRole
from clearance.workflow.sla import (
    ExtensionType,
    PriorityAdjustment,
    SLAExtensionRequest,
    adjust_priority,
    determine_priority,
    validate_extension,
)


class TestPriority:
    """Initial priority and manual adjustment."""

    def test_determine_priority(self):
        assert determine_priority(Decimal("100"), RiskLevel.CRITICAL, 10) == Priority.URGENT
        assert determine_priority(Decimal("5000"), RiskLevel.LOW, 10) == Priority.HIGH
        assert determine_priority(Decimal("100"), RiskLevel.LOW, 85) == Priority.HIGH
        assert determine_priority(Decimal("2500"), RiskLevel.LOW, 10) == Priority.MEDIUM
        assert determine_priority(Decimal("100"), RiskLevel.MEDIUM, 65) == Priority.MEDIUM
        assert determine_priority(Decimal("100"), RiskLevel.LOW, 10) == Priority.LOW

    def test_adjust_priority_clamps(self):
        assert adjust_priority(Priority.LOW, PriorityAdjustment.INCREASE) == Priority.MEDIUM
        assert adjust_priority(Priority.URGENT, PriorityAdjustment.INCREASE) == Priority.URGENT
        assert adjust_priority(Priority.LOW, PriorityAdjustment.DECREASE) == Priority.LOW
        assert adjust_priority(Priority.HIGH, PriorityAdjustment.MAINTAIN) == Priority.HIGH


class TestTargets:
    """SLA windows."""

    def test_window_by_priority(self, sla, now):
        assert sla.target_for(Priority.URGENT, Decimal("100"), now) == now + timedelta(hours=1)
        assert sla.target_for(Priority.LOW, Decimal("100"), now) == now + timedelta(hours=24)
        assert sla.target_for(Priority.MEDIUM, Decimal("100"), now) == now + timedelta(hours=8)

    def test_high_value_capped(self, sla, now):
        """Large amounts never get more than the high-priority window."""
        assert sla.target_for(Priority.LOW, Decimal("20000"), now) == now + timedelta(hours=4)
        assert sla.target_for(Priority.URGENT, Decimal("20000"), now) == now + timedelta(hours=1)

    def test_default_triggers(self, sla):
        low = sla.default_triggers(Decimal("100"), RiskLevel.LOW)
        assert [t.condition for t in low] == ["progress>=75", "progress>=90", "overdue"]

        high = sla.default_triggers(Decimal("100"), RiskLevel.HIGH)
        assert high[-1].condition == "stage_hours>=2"
        assert high[-1].action == TriggerAction.REASSIGN


class TestEvaluate:
    """Progress and status."""

    def test_status_bands(self, sla, make_workflow, now):
        """A 4-hour window: on track, at risk, breached."""
        workflow = make_workflow()
        assert workflow.priority == Priority.HIGH

        assert sla.evaluate(workflow, now + timedelta(hours=1)).status == SLAStatus.ON_TRACK
        assert sla.evaluate(workflow, now + timedelta(hours=3, minutes=30)).status == SLAStatus.AT_RISK
        breached = sla.evaluate(workflow, now + timedelta(hours=5))
        assert breached.status == SLAStatus.BREACHED
        assert breached.is_overdue
        assert breached.alert_level == "critical"

    def test_progress_is_monotonic_and_clamped(self, sla, make_workflow, now):
        workflow = make_workflow()
        readings = [
            sla.evaluate(workflow, now + timedelta(minutes=m)).progress_pct
            for m in (-30, 0, 60, 120, 240, 600)
        ]
        assert readings == sorted(readings)
        assert readings[0] == 0.0
        assert readings[-1] == 100.0

    def test_completed_workflow_stops_clock(self, sla, make_workflow, now):
        workflow = make_workflow()
        workflow.sla_metrics.actual_completion_time = now + timedelta(hours=1)
        later = sla.evaluate(workflow, now + timedelta(hours=10))
        assert later.status == SLAStatus.ON_TRACK
        assert later.progress_pct == pytest.approx(25.0)

    def test_pending_trigger_marks_at_risk(self, sla, make_workflow, now):
        """An on-track workflow with a due trigger reports at risk."""
        workflow = make_workflow(risk=RiskLevel.HIGH, risk_score=70)
        snapshot = sla.evaluate(workflow, now + timedelta(hours=2, minutes=10))
        assert snapshot.status == SLAStatus.AT_RISK

    def test_recompute_stores_metrics(self, sla, make_workflow, now):
        workflow = make_workflow()
        sla.recompute(workflow, now + timedelta(hours=5))
        assert workflow.sla_metrics.sla_status == SLAStatus.BREACHED
        assert workflow.sla_metrics.total_processing_time == 5 * 3600


class TestTriggers:
    """Escalation trigger firing."""

    def test_fires_once(self, sla, make_workflow, now):
        workflow = make_workflow()
        at = now + timedelta(hours=3, minutes=10)

        first = sla.check_triggers(workflow, at)
        assert [t.condition for t in first] == ["progress>=75"]
        assert first[0].triggered_at == at

        assert sla.check_triggers(workflow, at) == []
        assert sla.check_triggers(workflow, at + timedelta(minutes=1)) == []

    def test_overdue_fires_remaining(self, sla, make_workflow, now):
        workflow = make_workflow()
        fired = sla.check_triggers(workflow, now + timedelta(hours=6))
        assert {t.condition for t in fired} == {"progress>=75", "progress>=90", "overdue"}

    def test_terminal_workflow_fires_nothing(self, sla, make_workflow, now):
        workflow = make_workflow()
        workflow.status = WorkflowStatus.REJECTED
        assert sla.check_triggers(workflow, now + timedelta(days=3)) == []

    def test_high_risk_stage_hours(self, sla, make_workflow, now):
        workflow = make_workflow(risk=RiskLevel.HIGH, risk_score=70)
        fired = sla.check_triggers(workflow, now + timedelta(hours=2))
        assert [t.condition for t in fired] == ["stage_hours>=2"]

    @pytest.mark.parametrize("condition,expected", [
        ("amount>=5000", True),
        ("amount>=5001", False),
        ("risk>=medium", False),
        ("risk>=low", True),
    ])
    def test_condition_subjects(self, sla, make_workflow, now, condition, expected):
        workflow = make_workflow()
        snapshot = sla.evaluate(workflow, now)
        assert sla.condition_met(condition, workflow, snapshot, now) is expected

    def test_unknown_condition(self, sla, make_workflow, now):
        """A malformed trigger condition is a configuration error."""
        workflow = make_workflow()
        workflow.sla_metrics.escalation_triggers.append(EscalationTrigger(
            condition="weather>=stormy",
            action=TriggerAction.NOTIFY,
            target_role=UserRole.MANAGER,
        ))
        with pytest.raises(ConfigurationError):
            sla.check_triggers(workflow, now)

    def test_unknown_risk_level(self, sla, make_workflow, now):
        workflow = make_workflow()
        snapshot = sla.evaluate(workflow, now)
        with pytest.raises(ConfigurationError):
            sla.condition_met("risk>=severe", workflow, snapshot, now)


class TestExtension:
    """SLA extension request validation."""

    @staticmethod
    def _request(**overrides) -> SLAExtensionRequest:
        fields = dict(
            extension_type=ExtensionType.DEADLINE,
            additional_hours=4,
            reason="Customer is travelling and will confirm the beneficiary tomorrow",
            business_justification=(
                "Long standing customer with a clean history; the payout is expected and "
                "documented in the account notes"
            ),
            impact_assessment="No impact on other queues; reviewer capacity is available",
        )
        fields.update(overrides)
        return SLAExtensionRequest(**fields)

    def test_valid_request(self, policy):
        validate_extension(policy.sla_extension, self._request())

    def test_hours_out_of_range(self, policy):
        with pytest.raises(ValidationError, match="between 1 and 168"):
            validate_extension(policy.sla_extension, self._request(additional_hours=200))

    def test_collects_every_problem(self, policy):
        """All problems are reported together."""
        with pytest.raises(ValidationError) as exc_info:
            validate_extension(policy.sla_extension, self._request(
                additional_hours=0, reason="later", impact_assessment="none",
            ))
        message = str(exc_info.value)
        assert "Additional hours" in message
        assert "reason" in message
        assert "Impact assessment" in message

    def test_notification_needs_recipients(self, policy):
        with pytest.raises(ValidationError, match="recipient"):
            validate_extension(
                policy.sla_extension, self._request(notify_stakeholders=True),
            )
