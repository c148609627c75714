"""
ChangeFlow Engine

Change-record workflow for Request -> Order -> Notice:
- Status state machines with role and precondition gates
- Context-aware permissions scoped by organization
- Field-level audit trail
- Notice distribution with deadlines, reminders and escalation
- Number-based traceability across the whole chain
"""

__version__ = "0.1.0"
