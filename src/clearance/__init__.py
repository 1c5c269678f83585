"""
Clearance - Withdrawal Approval Workflow Engine

A service that moves withdrawal requests through staged review:
- Enforces role authority and risk gating on every decision
- Tracks SLA deadlines and fires escalation triggers
- Keeps concurrent reviewers in sync through realtime events
- Records every decision in an append-only audit trail
"""

__version__ = "0.1.0"
