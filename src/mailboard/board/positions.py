"""Gap-based ordering keys for cards within a column.

Positions are integers spaced ``GAP`` apart so a card can be dropped between
two neighbours by taking the midpoint. Only when two neighbours are adjacent
integers does the whole column need renumbering.
"""

from __future__ import annotations

from collections.abc import Sequence

from mailboard.exceptions import RenumberRequired
from mailboard.models import BoardItem

GAP = 1000


def allocate(neighbors: Sequence[int], target_index: int, gap: int = GAP) -> int:
    """Return a position that sorts at ``target_index`` among ``neighbors``.

    Args:
        neighbors: Positions already in the destination column, in display order,
            excluding the card being placed.
        target_index: Index the card should occupy once inserted. Values past the
            end append.
        gap: Spacing used when inserting at either edge.

    Returns:
        A position strictly between the previous and next neighbour.

    Raises:
        RenumberRequired: If the two neighbours are adjacent integers.
    """

    if target_index < 0:
        raise ValueError("target_index must be >= 0")

    if not neighbors:
        return 0

    index = min(target_index, len(neighbors))
    if index == 0:
        return neighbors[0] - gap
    if index == len(neighbors):
        return neighbors[-1] + gap

    previous, following = neighbors[index - 1], neighbors[index]
    if following - previous < 2:
        raise RenumberRequired(previous, following)
    return (previous + following) // 2


def renumber(items: Sequence[BoardItem], gap: int = GAP) -> list[BoardItem]:
    """Assign ``index * gap`` to each item in its current order.

    Running it again on its own output returns the same positions.
    """

    return [
        item if item.position == index * gap else item.model_copy(update={"position": index * gap})
        for index, item in enumerate(items)
    ]


def needs_renumber(positions: Sequence[int | None]) -> bool:
    """True if positions are missing or not strictly increasing."""

    previous: int | None = None
    for position in positions:
        if position is None:
            return True
        if previous is not None and position <= previous:
            return True
        previous = position
    return False
