"""
API module for Clearance.

Provides REST API routes for:
- Workflow listing, creation and detail views
- Approval decisions, bulk decisions and hierarchy actions
- SLA extension, comments and audit logs
- The realtime WebSocket channel
"""
