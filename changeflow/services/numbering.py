"""
Public record numbers: ECR-0001, ECO-0042, ECN-12345.

Sequences are per organization and per kind, drawn from the store's atomic
counter rather than a max+1 scan.
"""

from ..models.change import NUMBER_PREFIXES, EntityKind


def format_number(kind: EntityKind, sequence: int) -> str:
    if sequence < 1:
        raise ValueError("sequence starts at 1")
    return f"{NUMBER_PREFIXES[kind]}-{sequence:04d}"


class NumberAllocator:

    def __init__(self, store):
        self.store = store

    async def allocate(self, organization_id: str, kind: EntityKind) -> str:
        sequence = await self.store.next_sequence(organization_id, kind)
        return format_number(kind, sequence)
