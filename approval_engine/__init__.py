"""
Approval Workflow Engine

Multi-tenant approval chains for school administration requests: template
resolution, frozen approval paths, level-by-level decisions, delegation,
escalation and SLA tracking, all backed by an append-only decision ledger.
"""

__version__ = "1.0.0"
