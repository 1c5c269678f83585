"""
Approval policy: authority levels, per-action rules and limits.

Loaded from versioned YAML configuration at start-up.
"""

from clearance.policy.authority import AuthorityLevel, AuthorityPolicy
from clearance.policy.loader import (
    ApprovalPolicy,
    compute_checksum,
    get_active_policy,
    load_policy,
    parse_policy,
)
from clearance.policy.rules import ActionRule, ActionRuleTable

__all__ = [
    "ActionRule",
    "ActionRuleTable",
    "ApprovalPolicy",
    "AuthorityLevel",
    "AuthorityPolicy",
    "compute_checksum",
    "get_active_policy",
    "load_policy",
    "parse_policy",
]
