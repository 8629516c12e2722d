"""
Shelf-row neighbor geometry.

A peer shares the target's row when its vertical centre lies within
``tolerance_ratio × target height`` of the target's centre. Left neighbors
end at or before the target's left edge, right neighbors start at or after
its right edge; both sides keep only peers within ``max_gap`` units and are
ordered closest first.
"""
from typing import Sequence

from shelfmatch.config import MAX_NEIGHBORS_PER_SIDE, NEIGHBOR_MAX_GAP, NEIGHBOR_Y_TOLERANCE_RATIO
from shelfmatch.models.domain import BoundingBox, Detection, NeighborContext


def find_neighbors(
    target: Detection,
    detections: Sequence[Detection],
    tolerance_ratio: float = NEIGHBOR_Y_TOLERANCE_RATIO,
    max_gap: float = NEIGHBOR_MAX_GAP,
    max_per_side: int = MAX_NEIGHBORS_PER_SIDE,
) -> NeighborContext:
    box = target.box
    tolerance = tolerance_ratio * box.height

    same_row = [
        d for d in detections
        if d.id != target.id and abs(d.box.center_y - box.center_y) <= tolerance
    ]

    left = sorted(
        (d for d in same_row if d.box.x1 <= box.x0 and box.x0 - d.box.x1 <= max_gap),
        key=lambda d: d.box.x1,
        reverse=True,
    )
    right = sorted(
        (d for d in same_row if d.box.x0 >= box.x1 and d.box.x0 - box.x1 <= max_gap),
        key=lambda d: d.box.x0,
    )
    return NeighborContext(left=tuple(left[:max_per_side]), right=tuple(right[:max_per_side]))


def expanded_box(target: Detection, context: NeighborContext) -> BoundingBox:
    """Union of the target box and every neighbor box."""
    return BoundingBox.union(target.box, *(d.box for d in context.all))
