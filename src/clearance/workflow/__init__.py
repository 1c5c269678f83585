"""
Approval workflow engine.

Provides:
- Decision validation against the approval policy
- The stage/status state machine
- SLA tracking and escalation triggers
- Delegation, reassignment and hierarchy override
- Bulk decisions with bounded concurrency
"""

from clearance.workflow.validator import (
    CheckSeverity,
    CheckStatus,
    DecisionRequest,
    DecisionValidator,
    ValidationCheck,
    ValidationReport,
)
from clearance.workflow.sla import (
    ExtensionType,
    PriorityAdjustment,
    SLAExtensionRequest,
    SLASnapshot,
    SLATracker,
)
from clearance.workflow.state_machine import WorkflowStateMachine
from clearance.workflow.store import WorkflowStore
from clearance.workflow.hierarchy import (
    ChecklistItem,
    ChecklistStatus,
    DelegationRequest,
    HierarchyCoordinator,
    HierarchyEscalationRequest,
    HierarchyOverrideRequest,
    OverrideType,
    ReassignRequest,
)
from clearance.workflow.bulk import BulkActionCoordinator, BulkItemResult, BulkResult
from clearance.workflow.service import (
    ApprovalService,
    WorkflowFilters,
    WorkflowPage,
    WorkflowPermissions,
    WorkflowSubmission,
    WorkflowView,
)

__all__ = [
    "ApprovalService",
    "BulkActionCoordinator",
    "BulkItemResult",
    "BulkResult",
    "CheckSeverity",
    "CheckStatus",
    "ChecklistItem",
    "ChecklistStatus",
    "DecisionRequest",
    "DecisionValidator",
    "DelegationRequest",
    "ExtensionType",
    "HierarchyCoordinator",
    "HierarchyEscalationRequest",
    "HierarchyOverrideRequest",
    "OverrideType",
    "PriorityAdjustment",
    "ReassignRequest",
    "SLAExtensionRequest",
    "SLASnapshot",
    "SLATracker",
    "ValidationCheck",
    "ValidationReport",
    "WorkflowFilters",
    "WorkflowPage",
    "WorkflowPermissions",
    "WorkflowStateMachine",
    "WorkflowStore",
    "WorkflowSubmission",
    "WorkflowView",
]
