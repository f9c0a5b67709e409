# client/arrangement.py
"""
User-driven rearrangement of render slots.

Selecting a first slot enters swap mode; selecting a second one exchanges
their positions. Slots are found by their current label, so the positions
move while each slot keeps its semantic id. Every completion or cancellation
clears all swap affordances.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from client.render import SWAP_SOURCE_CLASS, SWAP_TARGET_CLASS

logger = logging.getLogger(__name__)


class SwapState(Enum):
    IDLE = "idle"
    SOURCE_SELECTED = "source-selected"


class SwapOutcome(Enum):
    SELECTED = "selected"
    REJECTED = "rejected"
    SWAPPED = "swapped"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass
class SwapSelection:
    slot_id: str
    label: str


class ArrangementEngine:
    def __init__(self, surface):
        self.surface = surface
        self.state = SwapState.IDLE
        self.source: Optional[SwapSelection] = None

    def select_for_swap(self, slot_id: str, label: str) -> SwapOutcome:
        """
        Advance the swap state machine with one selection.

        Returns:
            SwapOutcome: SELECTED when a source was chosen, REJECTED when the
            source was selected again, SWAPPED or ABORTED after a target.
        """
        if self.state is SwapState.IDLE:
            if self.surface.find_by_label(label) is None:
                logger.warning(f"Cannot select {label}: no such slot")
                return SwapOutcome.ABORTED
            self.source = SwapSelection(slot_id, label)
            self.state = SwapState.SOURCE_SELECTED
            self.surface.add_class(self.surface.find_by_label(label), SWAP_SOURCE_CLASS)
            self.surface.set_swap_mode(True, banner=f"Source selected: {label}. Pick a slot to swap with.")
            return SwapOutcome.SELECTED

        if slot_id == self.source.slot_id:
            return SwapOutcome.REJECTED

        target = SwapSelection(slot_id, label)
        target_node = self.surface.find_by_label(label)
        if target_node is not None:
            self.surface.add_class(target_node, SWAP_TARGET_CLASS)
        try:
            return self._swap(self.source, target)
        finally:
            self._finish()

    def cancel(self) -> Optional[SwapOutcome]:
        was_selecting = self.state is SwapState.SOURCE_SELECTED
        self._finish()
        return SwapOutcome.CANCELLED if was_selecting else None

    def slot_removed(self, slot_id: str) -> None:
        """Cancel swap mode if the selected source disappeared."""
        if self.state is SwapState.SOURCE_SELECTED and self.source.slot_id == slot_id:
            logger.info(f"Swap source {slot_id} was removed, cancelling swap")
            self.cancel()

    def _swap(self, source: SwapSelection, target: SwapSelection) -> SwapOutcome:
        first = self.surface.find_by_label(source.label)
        second = self.surface.find_by_label(target.label)
        if first is None or second is None:
            logger.warning(f"Swap {source.label} <-> {target.label} aborted: slot not found")
            return SwapOutcome.ABORTED

        first_parent = self.surface.parent_of(first)
        second_parent = self.surface.parent_of(second)
        if first_parent == second_parent:
            marker = self.surface.create_marker(second_parent, before=second)
            self.surface.relocate(second, first_parent, before=first)
            self.surface.relocate(first, second_parent, before=marker)
            self.surface.remove(marker)
        else:
            self.surface.relocate(first, second_parent)
            self.surface.relocate(second, first_parent)
        logger.info(f"Swapped {source.label} and {target.label}")
        return SwapOutcome.SWAPPED

    def _finish(self):
        self.state = SwapState.IDLE
        self.source = None
        self.surface.clear_affordances()
