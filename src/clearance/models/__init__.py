"""
Domain model for withdrawal approval workflows.
"""

from clearance.models.workflow import (
    ApprovalCondition,
    ApprovalDecision,
    AuditEntry,
    AuditSeverity,
    AuthorizationMethod,
    ComplianceFlag,
    DecisionAction,
    Delegation,
    EscalationTrigger,
    FlagSeverity,
    Priority,
    RiskAssessment,
    RiskLevel,
    SLAMetrics,
    SLAStatus,
    TriggerAction,
    WithdrawalRequest,
    Workflow,
    WorkflowComment,
    WorkflowStage,
    WorkflowStatus,
)

__all__ = [
    "ApprovalCondition",
    "ApprovalDecision",
    "AuditEntry",
    "AuditSeverity",
    "AuthorizationMethod",
    "ComplianceFlag",
    "DecisionAction",
    "Delegation",
    "EscalationTrigger",
    "FlagSeverity",
    "Priority",
    "RiskAssessment",
    "RiskLevel",
    "SLAMetrics",
    "SLAStatus",
    "TriggerAction",
    "WithdrawalRequest",
    "Workflow",
    "WorkflowComment",
    "WorkflowStage",
    "WorkflowStatus",
]
