"""
ARTrack Layers - One Render/Light Mask Bit per Marker

Each marker binding receives an exclusive bit. Every renderable and light
in its subtree is stamped with that bit, so a light placed under marker A
never illuminates marker B's content when both are tracked at once.

    binding #1 -> 0b0001
    binding #2 -> 0b0010
    binding #3 -> 0b0100
    ...

The allocator is an owned object (one per scene), not module state.
"""

import logging

from .errors import LayerCapacityError
from .scene_graph import SceneGraph


class LayerAllocator:
    """Hands out single-bit masks in increasing order."""

    # Masks are stored in 32-bit signed ints by most engines
    DEFAULT_CAPACITY_BITS = 31

    def __init__(self, capacity_bits: int = DEFAULT_CAPACITY_BITS):
        if capacity_bits < 1:
            raise ValueError(f"capacity_bits must be >= 1, got {capacity_bits}")
        self.capacity_bits = capacity_bits
        self._next = 1
        self._allocated = 0
        self.logger = logging.getLogger("LayerAllocator")

    def allocate(self) -> int:
        """
        Take the next free bit.

        Raises:
            LayerCapacityError: if all ``capacity_bits`` bits are in use
        """
        if self._allocated >= self.capacity_bits:
            raise LayerCapacityError(
                f"All {self.capacity_bits} render layer bits are allocated"
            )
        mask = self._next
        self._next <<= 1
        self._allocated += 1
        self.logger.debug(f"Allocated layer mask {mask:#x}")
        return mask

    @staticmethod
    def apply(mask: int, graph: SceneGraph, root: int) -> int:
        """
        Stamp ``mask`` onto every renderable and light under ``root``.

        Returns:
            Number of nodes whose mask was set
        """
        touched = 0
        for index in graph.walk(root):
            node = graph.node(index)
            if node.render is None and node.light is None:
                continue
            if node.render is not None:
                node.render.mask = mask
            if node.light is not None:
                node.light.mask = mask
            touched += 1
        return touched

    @property
    def allocated(self) -> int:
        return self._allocated

    @property
    def remaining(self) -> int:
        return self.capacity_bits - self._allocated
