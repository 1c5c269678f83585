"""
Tests for the approval service.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest

from clearance.exceptions import (
    AuthorityError,
    ConflictError,
    ValidationError,
    WorkflowNotFoundError,
)
from clearance.models.workflow import (
    ComplianceFlag,
    DecisionAction,
    FlagSeverity,
    Priority,
    RiskLevel,
    WorkflowStage,
    WorkflowStatus,
)
from clearance.realtime.events import EventType
from clearance.security.auth import UserRole
from clearance.workflow.hierarchy import HierarchyEscalationRequest
from clearance.workflow.service import WorkflowFilters
from clearance.workflow.sla import ExtensionType, PriorityAdjustment, SLAExtensionRequest


def extension(**overrides) -> SLAExtensionRequest:
    fields = dict(
        extension_type=ExtensionType.DEADLINE,
        additional_hours=6,
        reason="Customer is travelling and will confirm the beneficiary tomorrow",
        business_justification=(
            "Long standing customer with a clean history; the payout is expected and "
            "documented in the account notes"
        ),
        impact_assessment="No impact on other queues; reviewer capacity is available",
    )
    fields.update(overrides)
    return SLAExtensionRequest(**fields)


class TestCreateAndList:
    """Submission, listing and filtering."""

    def test_create(self, service, bus, submission, clerk, now):
        subscription = bus.subscribe()
        workflow = service.create_workflow(submission(), clerk, now)

        assert workflow.workflow_number == "WD-2024-000001"
        assert workflow.withdrawal_request.currency == "USD"
        assert workflow.priority == Priority.HIGH
        assert workflow.current_stage == WorkflowStage.CLERK_REVIEW
        assert workflow.status == WorkflowStatus.PENDING
        assert workflow.current_approver == "clerk"
        assert workflow.audit_log[0].action == "workflow_created"

        event = subscription.queue.get_nowait()
        assert event.type == EventType.NEW_WORKFLOW
        assert event.data["workflow_id"] == str(workflow.id)

    def test_create_returns_snapshot(self, service, submission, clerk, now):
        """Mutating the returned copy never touches the stored workflow."""
        workflow = service.create_workflow(submission(), clerk, now)
        workflow.status = WorkflowStatus.REJECTED
        assert service.store.get(workflow.id).status == WorkflowStatus.PENDING

    def test_explicit_priority_wins(self, service, submission, clerk, now):
        workflow = service.create_workflow(submission(priority=Priority.LOW), clerk, now)
        assert workflow.priority == Priority.LOW

    def test_non_positive_amount(self, service, submission, clerk, now):
        with pytest.raises(ValidationError):
            service.create_workflow(submission(amount="0"), clerk, now)

    def test_list_filters_sort_and_page(self, service, submission, clerk, now):
        for amount in ("500", "2500", "7000", "60000"):
            service.create_workflow(submission(amount=amount), clerk, now)

        page = service.list_workflows(
            WorkflowFilters(min_amount=Decimal("1000"), sort_by="amount", sort_order="asc", limit=2),
            now,
        )
        assert page.total == 3
        assert [w.amount for w in page.items] == [Decimal("2500"), Decimal("7000")]
        assert page.to_dict()["pagination"]["pages"] == 2

        second = service.list_workflows(
            WorkflowFilters(min_amount=Decimal("1000"), sort_by="amount", sort_order="asc", limit=2, page=2),
            now,
        )
        assert [w.amount for w in second.items] == [Decimal("60000")]

    def test_list_summary(self, service, submission, clerk, now):
        flag = ComplianceFlag(type="pep", severity=FlagSeverity.WARNING, title="PEP match")
        service.create_workflow(submission(amount="500"), clerk, now)
        service.create_workflow(submission(amount="9000", flags=(flag,)), clerk, now)

        summary = service.list_workflows(now=now).summary
        assert summary["total_pending"] == 2
        assert summary["high_priority"] == 1
        assert summary["sla_breached"] == 0
        assert summary["requiring_attention"] == 1

        later = service.list_workflows(now=now + timedelta(hours=30)).summary
        assert later["sla_breached"] == 2

    def test_search(self, service, submission, clerk, now):
        service.create_workflow(submission(), clerk, now)
        assert service.list_workflows(WorkflowFilters(search="jane"), now).total == 1
        assert service.list_workflows(WorkflowFilters(search="nobody"), now).total == 0

    def test_unknown_sort(self, service):
        with pytest.raises(ValidationError, match="sort"):
            service.list_workflows(WorkflowFilters(sort_by="colour"))

    def test_get_unknown(self, service, clerk):
        with pytest.raises(WorkflowNotFoundError):
            service.get_workflow(uuid4(), clerk)


class TestWorkflowView:
    """Permissions and available actions."""

    def test_clerk_view(self, service, submission, clerk, now):
        workflow = service.create_workflow(submission(), clerk, now)
        view = service.get_workflow(workflow.id, clerk, now)

        assert view.permissions.can_approve
        assert not view.permissions.can_override
        assert not view.permissions.can_view_audit
        assert DecisionAction.APPROVE in view.available_actions
        assert DecisionAction.OVERRIDE not in view.available_actions
        assert view.to_dict()["sla"]["status"] == "on_track"

    def test_critical_risk_hides_approve(self, service, submission, manager, now):
        workflow = service.create_workflow(
            submission(risk=RiskLevel.CRITICAL, risk_score=95), manager, now,
        )
        view = service.get_workflow(workflow.id, manager, now)
        assert DecisionAction.APPROVE not in view.available_actions
        assert DecisionAction.REJECT in view.available_actions

    def test_clerk_cannot_act_at_manager_stage(
        self, service, submission, approve_request, clerk, now
    ):
        workflow = service.create_workflow(submission(), clerk, now)
        asyncio.run(service.submit_decision(workflow.id, approve_request(workflow), clerk, now))
        view = service.get_workflow(workflow.id, clerk, now)
        assert not view.permissions.can_approve
        assert view.available_actions == []


class TestDecisions:
    """Decisions through the service."""

    @pytest.mark.asyncio
    async def test_clerk_approval_routes_to_manager(
        self, service, submission, approve_request, clerk, now
    ):
        """A clerk approving 5,000 sends the workflow to manager review."""
        created = service.create_workflow(submission(amount="5000"), clerk, now)

        report = service.validate_decision(created.id, approve_request(), clerk, now)
        assert report.is_valid
        assert report.escalation_required

        workflow = await service.submit_decision(created.id, approve_request(created), clerk, now)

        assert workflow.current_stage == WorkflowStage.MANAGER_REVIEW
        assert workflow.status == WorkflowStatus.PENDING
        assert len(workflow.approval_history) == 1
        assert workflow.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_approvals_conflict(
        self, service, submission, approve_request, clerk, manager, now
    ):
        """Two reviewers acting on the same version: exactly one wins."""
        created = service.create_workflow(submission(amount="500"), clerk, now)
        request = approve_request(expected_version=1)

        results = await asyncio.gather(
            service.submit_decision(created.id, request, clerk, now),
            service.submit_decision(created.id, request, manager, now),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        stored = service.store.get(created.id)
        assert len(stored.approval_history) == 1
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_unpinned_concurrent_approvals_are_refused(
        self, service, submission, approve_request, admin, now
    ):
        """Double-submitted approvals without a version never advance the workflow."""
        created = service.create_workflow(submission(amount="500"), admin, now)
        request = approve_request()

        results = await asyncio.gather(
            service.submit_decision(created.id, request, admin, now),
            service.submit_decision(created.id, request, admin, now),
            return_exceptions=True,
        )

        assert all(isinstance(r, ValidationError) for r in results)
        stored = service.store.get(created.id)
        assert stored.approval_history == []
        assert stored.current_stage == WorkflowStage.CLERK_REVIEW

    @pytest.mark.asyncio
    async def test_concurrent_approvals_pinned_to_stage(
        self, service, submission, approve_request, admin, now
    ):
        created = service.create_workflow(submission(amount="500"), admin, now)
        request = approve_request(expected_stage=WorkflowStage.CLERK_REVIEW)

        results = await asyncio.gather(
            service.submit_decision(created.id, request, admin, now),
            service.submit_decision(created.id, request, admin, now),
            return_exceptions=True,
        )

        assert len([r for r in results if isinstance(r, ConflictError)]) == 1
        stored = service.store.get(created.id)
        assert len(stored.approval_history) == 1
        assert stored.current_stage == WorkflowStage.MANAGER_REVIEW

    @pytest.mark.asyncio
    async def test_bulk_pins_each_item_version(self, service, submission, reject_request, manager, now):
        created = service.create_workflow(submission(), manager, now)
        await service.update_priority(
            created.id, Priority.LOW, "Verified long-term customer", manager, now=now,
        )

        with patch.object(service, "submit_decision", wraps=service.submit_decision) as spy:
            result = await service.bulk_decide([created.id], reject_request(), manager)

        assert result.success_count == 1
        assert spy.call_args.args[1].expected_version == 2

    @pytest.mark.asyncio
    async def test_bulk_decide(self, service, submission, reject_request, manager, now):
        ids = [service.create_workflow(submission(), manager, now).id for _ in range(3)]
        missing = uuid4()

        result = await service.bulk_decide(
            ids + [missing], reject_request(expected_version=99), manager,
        )

        assert result.total == 4
        assert result.success_count == 3
        assert result.results[-1].error_type == "WorkflowNotFoundError"
        for workflow_id in ids:
            assert service.store.get(workflow_id).status == WorkflowStatus.REJECTED

    @pytest.mark.asyncio
    async def test_bulk_limits(self, service, reject_request, manager):
        with pytest.raises(ValidationError):
            await service.bulk_decide([], reject_request(), manager)
        with pytest.raises(ValidationError, match="limited"):
            await service.bulk_decide([uuid4() for _ in range(101)], reject_request(), manager)

    @pytest.mark.asyncio
    async def test_escalate_with_stale_version(self, service, submission, clerk, now):
        created = service.create_workflow(submission(), clerk, now)
        request = HierarchyEscalationRequest(
            target_role=UserRole.MANAGER,
            justification="Customer disputes the fee and wants a manager to review the case",
            audit_reason="Customer complaint logged at the branch",
        )
        with pytest.raises(ConflictError):
            await service.escalate(created.id, request, clerk, expected_version=7)

        workflow = await service.escalate(created.id, request, clerk, expected_version=1)
        assert workflow.current_stage == WorkflowStage.MANAGER_REVIEW


class TestAncillary:
    """Comments, SLA extension, priority, flags and the sweep."""

    @pytest.mark.asyncio
    async def test_add_comment(self, service, bus, submission, clerk, now):
        created = service.create_workflow(submission(), clerk, now)
        subscription = bus.subscribe()

        comment = await service.add_comment(
            created.id, clerk, "  Called the customer  ", mentions=["manager-1"], now=now,
        )

        assert comment.content == "Called the customer"
        event = subscription.queue.get_nowait()
        assert event.type == EventType.COMMENT_ADDED
        assert event.data["comment_id"] == str(comment.id)

        stored = service.store.get(created.id)
        assert stored.audit_log[-1].action == "comment_added"
        assert stored.audit_log[-1].data["comment_id"] == str(comment.id)
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_comment_does_not_stale_a_pending_decision(
        self, service, submission, approve_request, clerk, manager, now
    ):
        """A reviewer's decision survives a colleague commenting meanwhile."""
        created = service.create_workflow(submission(), clerk, now)
        await service.add_comment(created.id, manager, "Customer called to confirm", now=now)

        workflow = await service.submit_decision(created.id, approve_request(created), clerk, now)
        assert workflow.current_stage == WorkflowStage.MANAGER_REVIEW

    @pytest.mark.asyncio
    async def test_empty_comment(self, service, submission, clerk, now):
        created = service.create_workflow(submission(), clerk, now)
        with pytest.raises(ValidationError):
            await service.add_comment(created.id, clerk, "   ")

    @pytest.mark.asyncio
    async def test_extend_deadline(self, service, submission, clerk, manager, now):
        created = service.create_workflow(submission(), clerk, now)
        target = created.sla_metrics.target_completion_time

        workflow = await service.extend_sla(
            created.id,
            extension(priority_adjustment=PriorityAdjustment.INCREASE),
            manager,
            expected_version=1,
            now=now,
        )

        assert workflow.sla_metrics.target_completion_time == target + timedelta(hours=6)
        assert workflow.priority == Priority.URGENT
        assert workflow.audit_log[-1].action == "sla_extended"

    @pytest.mark.asyncio
    async def test_extend_stage_timeout(self, service, submission, clerk, manager, now):
        created = service.create_workflow(submission(), clerk, now)
        workflow = await service.extend_sla(
            created.id,
            extension(extension_type=ExtensionType.STAGE_TIMEOUT, additional_hours=3),
            manager,
            now=now,
        )
        assert workflow.escalation_date == now + timedelta(hours=5)

    @pytest.mark.asyncio
    async def test_clerk_cannot_extend(self, service, submission, clerk, now):
        created = service.create_workflow(submission(), clerk, now)
        with pytest.raises(AuthorityError):
            await service.extend_sla(created.id, extension(), clerk, now=now)

    @pytest.mark.asyncio
    async def test_refused_extension_is_audited(self, service, submission, clerk, manager, now):
        created = service.create_workflow(submission(), clerk, now)
        with pytest.raises(ValidationError, match="Extension reason"):
            await service.extend_sla(created.id, extension(reason="later"), manager, now=now)

        stored = service.store.get(created.id)
        entry = stored.audit_log[-1]
        assert entry.action == "sla_extension_rejected"
        assert entry.actor_id == manager.id
        assert stored.sla_metrics.target_completion_time == created.sla_metrics.target_completion_time
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_update_priority(self, service, submission, clerk, manager, now):
        created = service.create_workflow(submission(), clerk, now)
        with pytest.raises(ValidationError):
            await service.update_priority(created.id, Priority.LOW, "", manager)
        with pytest.raises(AuthorityError):
            await service.update_priority(created.id, Priority.LOW, "Verified customer", clerk)
        refused = [e.action for e in service.store.get(created.id).audit_log]
        assert refused[-2:] == ["priority_change_rejected", "priority_change_rejected"]

        workflow = await service.update_priority(
            created.id, Priority.LOW, "Verified long-term customer", manager, now=now,
        )
        assert workflow.priority == Priority.LOW
        assert workflow.audit_log[-1].data == {"previous": "high", "new": "low"}

    @pytest.mark.asyncio
    async def test_resolve_flag_unblocks_approval(
        self, service, submission, approve_request, clerk, manager, now
    ):
        flag = ComplianceFlag(type="sanctions", severity=FlagSeverity.CRITICAL, title="Name match")
        created = service.create_workflow(submission(amount="500", flags=(flag,)), clerk, now)

        with pytest.raises(ValidationError):
            await service.submit_decision(
                created.id, approve_request(created, secondary_approver_id="clerk-2"), clerk, now,
            )

        await service.resolve_compliance_flag(
            created.id, flag.id, "False positive, different date of birth", manager,
        )
        workflow = await service.submit_decision(
            created.id,
            approve_request(expected_stage=WorkflowStage.CLERK_REVIEW, secondary_approver_id="clerk-2"),
            clerk,
            now,
        )
        assert workflow.current_stage == WorkflowStage.MANAGER_REVIEW

    @pytest.mark.asyncio
    async def test_check_sla(self, service, submission, clerk, now):
        service.create_workflow(submission(), clerk, now)
        service.create_workflow(submission(), clerk, now)

        assert await service.check_sla(now + timedelta(hours=1)) == 0
        assert await service.check_sla(now + timedelta(hours=6)) == 6
        assert await service.check_sla(now + timedelta(hours=7)) == 0

    def test_dashboard_stats(self, service, submission, clerk, now):
        service.create_workflow(submission(amount="500"), clerk, now)
        service.create_workflow(submission(amount="7000", risk=RiskLevel.HIGH, risk_score=70), clerk, now)

        stats = service.dashboard_stats(now + timedelta(hours=5))

        assert stats["total"] == 2
        assert stats["by_status"]["pending"] == 2
        assert stats["by_stage"]["clerk_review"] == 2
        assert stats["sla"]["breached"] == 1
        assert stats["sla"]["compliance_rate"] == 50.0
        assert stats["high_risk_pending"] == 1
        assert stats["overdue"] == 1
        assert stats["policy_version"] == "2024.1"

    def test_audit_log_requires_permission(self, service, submission, clerk, manager, now):
        created = service.create_workflow(submission(), clerk, now)
        with pytest.raises(AuthorityError):
            service.audit_log(created.id, clerk)
        assert [e.action for e in service.audit_log(created.id, manager)] == ["workflow_created"]
