"""
Embedded-parts index

Tracks, per nested part, the other parts sitting inside its outside loop
(in practice: inside one of its holes). Parts are referred to by their
handle, the position in the pass's part arena.
"""

from typing import Dict, Iterator, List, Sequence, Tuple

import shapely
from shapely.strtree import STRtree

from .models import Part
from .parts import part_nesting_bounds
from .utils import get_logger

logger = get_logger("embedding")


class EmbeddedPartsIndex:
    """Adjacency from an embedding part's handle to the handles embedded in it"""

    def __init__(self):
        self._embedded: Dict[int, List[int]] = {}

    @classmethod
    def build(cls, parts: Sequence[Part], gap: float) -> "EmbeddedPartsIndex":
        """
        Bulk-load every part's nesting bounds and record, for each part, the
        parts whose nesting bounds fall inside its own

        Identical boxes are not considered embedded in each other.
        """
        index = cls()
        handles: List[int] = []
        boxes = []
        for handle, part in enumerate(parts):
            bounds = part_nesting_bounds(part, gap)
            if bounds is None:
                continue
            handles.append(handle)
            boxes.append(shapely.box(bounds[0][0], bounds[0][1], bounds[1][0], bounds[1][1]))

        if not boxes:
            return index

        tree = STRtree(boxes)
        for position, handle in enumerate(handles):
            hits = tree.query(boxes[position], predicate="contains")
            index._embedded[handle] = [
                handles[i]
                for i in sorted(int(h) for h in hits)
                if i != position and not boxes[i].equals(boxes[position])
            ]

        logger.debug(
            f"Embedded-parts index built over {len(boxes)} parts, "
            f"{sum(1 for v in index._embedded.values() if v)} with embedded parts"
        )
        return index

    def add(self, embedding_handle: int, handle: int) -> None:
        """Record *handle* as embedded in *embedding_handle*"""
        self._embedded.setdefault(embedding_handle, []).append(handle)

    def embedded_handles(self, handle: int) -> List[int]:
        return list(self._embedded.get(handle, []))

    def __contains__(self, handle: int) -> bool:
        return handle in self._embedded

    def __len__(self) -> int:
        return len(self._embedded)

    def items(self) -> Iterator[Tuple[int, List[int]]]:
        for handle, embedded in self._embedded.items():
            yield handle, list(embedded)

    def as_nesting_ids(self, parts: Sequence[Part]) -> Dict[str, List[str]]:
        """The index keyed by outside-loop nesting id"""
        return {
            parts[handle].nesting_id: [parts[h].nesting_id for h in embedded]
            for handle, embedded in self._embedded.items()
        }
