"""Production items flowing through the line."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class HistoryEntry:
    """One visit of an item to a machine. Open while exit_time_ms is None."""

    machine_id: str
    entry_time_ms: float
    exit_time_ms: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.exit_time_ms is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "entry_time_ms": self.entry_time_ms,
            "exit_time_ms": self.exit_time_ms,
        }


@dataclass(eq=False)
class Item:
    """A production unit.

    The identity fields never change once the item is created; the history
    only grows. An item is owned by exactly one slot at a time (a buffer, a
    machine's current or blocked slot, or the finished goods list).
    """

    id: str
    created_at_ms: float
    item_type: str = "Widget"
    processing_history: List[HistoryEntry] = field(default_factory=list)
    current_step_start_ms: Optional[float] = None

    @staticmethod
    def make_id(sequence: int) -> str:
        """Format the n-th item id, e.g. 7 -> 'P0007'."""
        return f"P{sequence:04d}"

    def open_entries(self) -> List[HistoryEntry]:
        return [h for h in self.processing_history if h.is_open]

    def _find_open(self, machine_id: str) -> Optional[HistoryEntry]:
        for entry in self.processing_history:
            if entry.machine_id == machine_id and entry.is_open:
                return entry
        return None

    def open_entry(self, machine_id: str, time_ms: float) -> HistoryEntry:
        """Mark the item as entering a machine.

        An entry already open for the same machine is re-stamped rather than
        duplicated.
        """
        self.current_step_start_ms = time_ms
        entry = self._find_open(machine_id)
        if entry is None:
            entry = HistoryEntry(machine_id=machine_id, entry_time_ms=time_ms)
            self.processing_history.append(entry)
        else:
            entry.entry_time_ms = time_ms
        return entry

    def close_entry(self, machine_id: str, time_ms: float) -> Optional[HistoryEntry]:
        """Close the open entry for a machine; no-op if there is none."""
        entry = self._find_open(machine_id)
        if entry is not None:
            entry.exit_time_ms = time_ms
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "created_at_ms": self.created_at_ms,
            "current_step_start_ms": self.current_step_start_ms,
            "processing_history": [h.to_dict() for h in self.processing_history],
        }
