# client/render.py
"""
Rendering adapter.

The client's state layer never touches a UI toolkit directly. It drives a
`RenderSurface`: a grid of containers holding render slots, each slot bound to
a stable semantic id (`local`, `user-<id>`, `presentation-<producerId>`) and
showing a label (`scrN`, `prN`). `InMemorySurface` is the headless
implementation used by tests and by embedders that draw the tree themselves.
"""
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

PEERS = "peers"
PRESENTATIONS = "presentations"
LOCAL_SLOT = "local"

SWAP_SOURCE_CLASS = "swap-source"
SWAP_TARGET_CLASS = "swap-target"


def user_slot_id(conn_id: str) -> str:
    return f"user-{conn_id}"


def presentation_slot_id(producer_id: str) -> str:
    return f"presentation-{producer_id}"


def user_label(slot: int) -> str:
    return f"scr{slot}"


def presentation_label(slot: int) -> str:
    return f"pr{slot}"


class RenderSurface(ABC):
    """Operations the client state layer performs on rendered output."""

    @abstractmethod
    def create_slot(self, slot_id: str, label: str, parent: str, title: str = None) -> None:
        """Append a new render slot to container `parent`."""

    @abstractmethod
    def locate(self, slot_id: str):
        """Return the slot bound to `slot_id`, or None."""

    @abstractmethod
    def find_by_label(self, label: str) -> Optional[str]:
        """Return the id of the slot currently showing `label`, or None."""

    @abstractmethod
    def parent_of(self, slot_id: str) -> Optional[str]:
        ...

    @abstractmethod
    def relocate(self, slot_id: str, new_parent: str, before: str = None) -> None:
        """Move a slot into `new_parent`, before sibling `before` or at the end."""

    @abstractmethod
    def set_label(self, slot_id: str, label: str) -> None:
        ...

    @abstractmethod
    def set_title(self, slot_id: str, title: str) -> None:
        ...

    @abstractmethod
    def remove(self, slot_id: str) -> None:
        ...

    @abstractmethod
    def create_marker(self, parent: str, before: str) -> str:
        """Insert an empty placeholder before `before` and return its id."""

    @abstractmethod
    def attach(self, slot_id: str, kind: str, track) -> None:
        ...

    @abstractmethod
    def detach(self, slot_id: str, kind: str) -> None:
        ...

    @abstractmethod
    def add_class(self, slot_id: str, name: str) -> None:
        ...

    @abstractmethod
    def set_swap_mode(self, active: bool, banner: str = None) -> None:
        """Show or hide the pointer styling and instruction banner of swap mode."""

    @abstractmethod
    def clear_affordances(self) -> None:
        """Remove every swap highlight, pointer style and the banner."""


@dataclass
class RenderNode:
    id: str
    label: Optional[str] = None
    title: Optional[str] = None
    parent: Optional[str] = None
    is_marker: bool = False
    classes: set = field(default_factory=set)
    style: dict = field(default_factory=dict)
    media: dict = field(default_factory=dict)


class InMemorySurface(RenderSurface):
    """
    Headless render tree with two containers: `peers` (holding the local slot)
    and `presentations`.
    """

    def __init__(self, containers=(PEERS, PRESENTATIONS)):
        self._containers = tuple(containers)
        self._markers = itertools.count()
        self.reset()

    def reset(self) -> None:
        self._nodes: Dict[str, RenderNode] = {}
        self._children: Dict[str, List[str]] = {name: [] for name in self._containers}
        self.swap_mode = False
        self.banner = None
        self.create_slot(LOCAL_SLOT, user_label(0), PEERS, title="You")

    # ----- Queries -----

    def locate(self, slot_id):
        return self._nodes.get(slot_id)

    def find_by_label(self, label):
        for node in self._nodes.values():
            if not node.is_marker and node.label == label:
                return node.id
        return None

    def parent_of(self, slot_id):
        node = self._nodes.get(slot_id)
        return node.parent if node else None

    def children(self, parent) -> List[str]:
        return list(self._children[parent])

    def labels(self, parent) -> List[str]:
        return [self._nodes[i].label for i in self._children[parent]]

    def slot_ids(self) -> List[str]:
        return [i for i, node in self._nodes.items() if not node.is_marker]

    # ----- Mutations -----

    def create_slot(self, slot_id, label, parent, title=None):
        if slot_id in self._nodes:
            raise ValueError(f"Render slot {slot_id} already exists")
        self._nodes[slot_id] = RenderNode(id=slot_id, label=label, title=title, parent=parent)
        self._children[parent].append(slot_id)

    def _insert(self, node, parent, before):
        siblings = self._children[parent]
        if before is not None and before in siblings:
            siblings.insert(siblings.index(before), node.id)
        else:
            siblings.append(node.id)
        node.parent = parent

    def _unlink(self, node):
        if node.parent is not None:
            self._children[node.parent].remove(node.id)
            node.parent = None

    def relocate(self, slot_id, new_parent, before=None):
        node = self._nodes[slot_id]
        self._unlink(node)
        self._insert(node, new_parent, before)

    def set_label(self, slot_id, label):
        self._nodes[slot_id].label = label

    def set_title(self, slot_id, title):
        self._nodes[slot_id].title = title

    def remove(self, slot_id):
        node = self._nodes.pop(slot_id, None)
        if node is not None:
            self._unlink(node)

    def create_marker(self, parent, before):
        node = RenderNode(id=f"marker-{next(self._markers)}", is_marker=True)
        self._nodes[node.id] = node
        self._insert(node, parent, before)
        return node.id

    def attach(self, slot_id, kind, track):
        self._nodes[slot_id].media[kind] = track

    def detach(self, slot_id, kind):
        node = self._nodes.get(slot_id)
        if node is not None:
            node.media.pop(kind, None)

    def add_class(self, slot_id, name):
        node = self._nodes.get(slot_id)
        if node is not None:
            node.classes.add(name)

    def set_swap_mode(self, active, banner=None):
        self.swap_mode = active
        self.banner = banner if active else None
        for node in self._nodes.values():
            if active and SWAP_SOURCE_CLASS not in node.classes:
                node.style["cursor"] = "pointer"
            else:
                node.style.pop("cursor", None)

    def clear_affordances(self):
        for node in self._nodes.values():
            node.classes.discard(SWAP_SOURCE_CLASS)
            node.classes.discard(SWAP_TARGET_CLASS)
            node.style.pop("cursor", None)
        self.swap_mode = False
        self.banner = None
