"""
Expense Workflow Approval Engine

Routes expense reports through configurable multi-step approval workflows with
conditional step routing, per-step SLA deadlines, escalation and automatic approval.
"""

__version__ = "1.0.0"
