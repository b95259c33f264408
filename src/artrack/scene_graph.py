"""
ARTrack Scene Graph - Index Arena for Marker Content

Every entity lives in one flat list and refers to its parent and children
by index. Walks are iterative (explicit stack), so arbitrarily deep
hierarchies never hit the interpreter's recursion limit.

Layout:
┌──────────────────────────────────────────────────────────┐
│  nodes[0] Root                                           │
│    ├── nodes[1] Marker A          (pose written here)    │
│    │     ├── nodes[2] Model       (render, mask = 1)     │
│    │     └── nodes[3] Light       (light,  mask = 1)     │
│    └── nodes[4] Marker B                                 │
│          └── nodes[5] Model       (render, mask = 2)     │
└──────────────────────────────────────────────────────────┘

Visibility is hierarchical: a node is visible only when it and every
ancestor are enabled.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Iterator, Any, Tuple

import numpy as np


DEFAULT_MASK = 1


@dataclass
class RenderComponent:
    """Renderable capability of a node."""
    mask: int = DEFAULT_MASK
    material: Any = None
    primitive: str = "mesh"  # "mesh", "plane", ...
    cast_shadows: bool = False


@dataclass
class LightComponent:
    """Light-emitting capability of a node."""
    mask: int = DEFAULT_MASK
    intensity: float = 1.0


@dataclass
class CameraComponent:
    """Projection parameters of the render camera."""
    fov: float = 45.0  # Vertical field of view in degrees
    near_clip: float = 0.1
    far_clip: float = 1000.0


@dataclass
class Node:
    """One entity of the scene graph."""
    name: str
    index: int
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    enabled: bool = True
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    euler_angles: np.ndarray = field(default_factory=lambda: np.zeros(3))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))
    render: Optional[RenderComponent] = None
    light: Optional[LightComponent] = None
    camera: Optional[CameraComponent] = None
    alive: bool = True


class SceneGraph:
    """
    Arena of scene nodes addressed by integer index.

    Removed nodes keep their slot (``alive=False``) so indices held by
    other components never shift.
    """

    def __init__(self, root_name: str = "Root"):
        self._nodes: List[Node] = []
        self.root = self.create_node(root_name)

    def create_node(
        self,
        name: str,
        parent: Optional[int] = None,
        render: Optional[RenderComponent] = None,
        light: Optional[LightComponent] = None,
        camera: Optional[CameraComponent] = None,
        enabled: bool = True
    ) -> int:
        """
        Create a node and attach it under ``parent``.

        Returns:
            Index of the new node
        """
        index = len(self._nodes)
        node = Node(
            name=name,
            index=index,
            render=render,
            light=light,
            camera=camera,
            enabled=enabled
        )
        self._nodes.append(node)
        if parent is not None:
            self.add_child(parent, index)
        return index

    def node(self, index: int) -> Node:
        node = self._nodes[index]
        if not node.alive:
            raise KeyError(f"Node {index} ({node.name}) has been removed")
        return node

    def add_child(self, parent: int, child: int):
        """Attach ``child`` under ``parent``, detaching it from any previous parent."""
        child_node = self.node(child)
        parent_node = self.node(parent)
        if child_node.parent is not None:
            self._nodes[child_node.parent].children.remove(child)
        child_node.parent = parent
        parent_node.children.append(child)

    def remove_subtree(self, index: int) -> int:
        """
        Detach and destroy a node together with all of its descendants.

        Returns:
            Number of nodes removed
        """
        node = self.node(index)
        if node.parent is not None:
            self._nodes[node.parent].children.remove(index)
            node.parent = None

        removed = 0
        for descendant in list(self.walk(index)):
            self._nodes[descendant].alive = False
            removed += 1
        node.children.clear()
        return removed

    def walk(self, root: int) -> Iterator[int]:
        """Depth-first pre-order walk of ``root`` and its descendants."""
        stack = [root]
        while stack:
            index = stack.pop()
            yield index
            # Reverse so children come out in insertion order
            stack.extend(reversed(self._nodes[index].children))

    def children(self, index: int) -> List[int]:
        return list(self.node(index).children)

    def set_children_enabled(self, index: int, enabled: bool):
        """Enable or disable every immediate child; descendants follow hierarchically."""
        for child in self.node(index).children:
            self._nodes[child].enabled = enabled

    def is_visible(self, index: int) -> bool:
        """True when the node and all of its ancestors are enabled."""
        current: Optional[int] = index
        while current is not None:
            node = self.node(current)
            if not node.enabled:
                return False
            current = node.parent
        return True

    def set_position(self, index: int, position):
        self.node(index).position = np.asarray(position, dtype=np.float64).copy()

    def set_euler_angles(self, index: int, euler_angles):
        self.node(index).euler_angles = np.asarray(euler_angles, dtype=np.float64).copy()

    def set_local_scale(self, index: int, scale: Tuple[float, float, float]):
        self.node(index).scale = np.asarray(scale, dtype=np.float64).copy()

    def find_by_name(self, name: str) -> List[int]:
        return [n.index for n in self._nodes if n.alive and n.name == name]

    def __len__(self) -> int:
        return sum(1 for n in self._nodes if n.alive)
