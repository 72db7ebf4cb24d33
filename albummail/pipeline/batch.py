"""
Attachment model and size-bounded batch packing.
Splits converted images into mails that stay under provider size limits.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: Optional[str]="image/jpeg"

    @property
    def byte_size(self) -> int:
        return len(self.content)

Batch = List[Attachment]

def pack_batches(items: Sequence[Attachment], max_total_bytes: int, max_count: int) -> List[Batch]:
    """
    Greedily pack items into batches, left to right, without reordering.

    A batch is closed as soon as the next item would push it over either
    max_total_bytes or max_count. An item that is larger than max_total_bytes
    on its own is emitted as a singleton batch instead of being dropped.
    """
    if max_total_bytes <= 0:
        raise ValueError(f"max_total_bytes must be positive, got {max_total_bytes}")
    if max_count <= 0:
        raise ValueError(f"max_count must be positive, got {max_count}")

    batches: List[Batch] = []
    current: Batch = []
    total = 0

    for item in items:
        size = item.byte_size
        would_exceed = total + size > max_total_bytes or len(current) + 1 > max_count

        if would_exceed and current:
            batches.append(current)
            current = []
            total = 0

        if size > max_total_bytes:
            # oversized: sent alone
            batches.append([item])
            continue

        current.append(item)
        total += size

    if current:
        batches.append(current)
    return batches

def batch_size_bytes(batch: Sequence[Attachment]) -> int:
    return sum(item.byte_size for item in batch)
