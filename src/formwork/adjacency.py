"""Spatial lookup of elements near the one being formed.

The index is a snapshot of the model's structural elements taken when it is
built. Elements created afterwards (the formwork output itself) are never
returned as neighbours.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np

from formwork.contracts import AdjacentElement, ElementCategory
from formwork.model import ModelQuery
from geometry_primitives import BoundingBox

logger = logging.getLogger(__name__)


class AdjacencyIndex:
    """Bounding-box index over a snapshot of structural elements."""

    def __init__(self, model: ModelQuery, margin: float = 0.1):
        self.margin = float(margin)
        self._entries: List[AdjacentElement] = []
        for element in model.structural_elements():
            if element.category == ElementCategory.OTHER:
                continue
            bbox = model.bounding_box_of(element.solid)
            if bbox is None:
                logger.warning("Element %s has no geometry; not indexed", element.element_id)
                continue
            self._entries.append(
                AdjacentElement(
                    element_id=element.element_id,
                    category=element.category,
                    solid=element.solid,
                    bounding_box=bbox,
                )
            )
        self._by_id: Dict[str, AdjacentElement] = {e.element_id: e for e in self._entries}
        if self._entries:
            self._mins = np.array([e.bounding_box.min for e in self._entries], dtype=float)
            self._maxs = np.array([e.bounding_box.max for e in self._entries], dtype=float)
        else:
            self._mins = np.zeros((0, 3))
            self._maxs = np.zeros((0, 3))
        logger.debug("Adjacency index built over %d elements", len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, element_id: str) -> bool:
        return element_id in self._by_id

    def get(self, element_id: str) -> Optional[AdjacentElement]:
        return self._by_id.get(element_id)

    def find_nearby(self, element_id: str) -> List[AdjacentElement]:
        """Elements whose box touches *element_id*'s box grown by the margin.

        The element itself is excluded. Unknown ids yield an empty list.
        """
        entry = self._by_id.get(element_id)
        if entry is None:
            return []
        return [
            e for e in self.find_nearby_box(entry.bounding_box)
            if e.element_id != element_id
        ]

    def find_nearby_box(self, bbox: BoundingBox) -> List[AdjacentElement]:
        """Elements whose box touches *bbox* grown by the margin."""
        if not self._entries:
            return []
        query = bbox.expanded(self.margin)
        hit = np.all(self._mins <= query.max, axis=1) & np.all(self._maxs >= query.min, axis=1)
        return [self._entries[i] for i in np.flatnonzero(hit)]
