"""
ChangeFlow Models

Request → Order → Notice change records, revisions, recipients.
"""

from .change import (
    # Enums
    EntityKind,
    RequestStatus,
    OrderStatus,
    NoticeStatus,
    Role,
    Action,
    Priority,
    DeadlineBucket,
    RecipientKind,
    RecipientStatus,
    EscalationAction,

    # Core models
    ChangeEntity,
    Revision,
    Recipient,
    EscalationEvent,

    # Supporting models
    Actor,
    EntityView,
    TransitionOption,

    # Helpers
    NUMBER_PREFIXES,
    STATUS_ENUMS,
    ENTITY_ATTRIBUTES,
    utcnow,
)

__all__ = [
    "EntityKind", "RequestStatus", "OrderStatus", "NoticeStatus", "Role", "Action",
    "Priority", "DeadlineBucket", "RecipientKind", "RecipientStatus", "EscalationAction",
    "ChangeEntity", "Revision", "Recipient", "EscalationEvent",
    "Actor", "EntityView", "TransitionOption",
    "NUMBER_PREFIXES", "STATUS_ENUMS", "ENTITY_ATTRIBUTES", "utcnow",
]
