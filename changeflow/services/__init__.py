"""
ChangeFlow Services

Workflow engine for Request -> Order -> Notice change records.
"""

from .transitions import TransitionRules, TransitionContext, TransitionRule, TransitionResult
from .permissions import PermissionEngine, PermissionDecision, CapabilityMatrix, can_act_for_role
from .field_filter import FieldFilter, FilterResult
from .audit import AuditTrail, FieldDiff
from .notifications import Notifier, LoggingNotifier, RecordingNotifier
from .numbering import NumberAllocator, format_number
from .workflow import WorkflowService
from .distribution import (
    DistributionTracker,
    EscalationSweeper,
    AcknowledgeOutcome,
    derive_status,
    progress,
)
from .traceability import TraceabilityResolver, build_timeline
from .rate_limit import RateLimiter, MemoryCounterStore, RedisCounterStore, counter_store_from_url

__all__ = [
    # State machine
    "TransitionRules", "TransitionContext", "TransitionRule", "TransitionResult",

    # Authorization (organization scope first, then capabilities)
    "PermissionEngine", "PermissionDecision", "CapabilityMatrix", "can_act_for_role",
    "FieldFilter", "FilterResult",

    # Audit
    "AuditTrail", "FieldDiff",

    # Orchestration
    "WorkflowService", "NumberAllocator", "format_number",
    "Notifier", "LoggingNotifier", "RecordingNotifier",

    # Notice distribution
    "DistributionTracker", "EscalationSweeper", "AcknowledgeOutcome", "derive_status", "progress",

    # Traceability
    "TraceabilityResolver", "build_timeline",

    # Rate limiting
    "RateLimiter", "MemoryCounterStore", "RedisCounterStore", "counter_store_from_url",
]
