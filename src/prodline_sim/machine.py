"""Machine state machine, buffer admission and OEE metrics."""

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from .config import MachineConfig
from .items import Item

logger = logging.getLogger(__name__)


class MachineState(Enum):
    """Lifecycle states of a machine. There is no terminal state."""

    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    DOWN = "DOWN"
    BLOCKED_OUTPUT = "BLOCKED_OUTPUT"


@dataclass
class MachineMetrics:
    """Cumulative time per state plus the last OEE recompute."""

    processed_items: int = 0
    time_processing_ms: float = 0.0
    time_idle_ms: float = 0.0
    time_down_ms: float = 0.0
    time_blocked_ms: float = 0.0
    current_oee: float = 0.0

    # Components of current_oee
    availability: float = 0.0
    performance: float = 0.0
    quality: float = 1.0

    @property
    def total_time_ms(self) -> float:
        return (
            self.time_processing_ms
            + self.time_idle_ms
            + self.time_down_ms
            + self.time_blocked_ms
        )

    def utilization(self) -> Dict[str, float]:
        """Fraction of elapsed time spent in each state."""
        total = self.total_time_ms
        if total == 0:
            return {
                MachineState.PROCESSING.value: 0.0,
                MachineState.IDLE.value: 1.0,
                MachineState.DOWN.value: 0.0,
                MachineState.BLOCKED_OUTPUT.value: 0.0,
            }
        return {
            MachineState.PROCESSING.value: self.time_processing_ms / total,
            MachineState.IDLE.value: self.time_idle_ms / total,
            MachineState.DOWN.value: self.time_down_ms / total,
            MachineState.BLOCKED_OUTPUT.value: self.time_blocked_ms / total,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed_items": self.processed_items,
            "time_processing_ms": self.time_processing_ms,
            "time_idle_ms": self.time_idle_ms,
            "time_down_ms": self.time_down_ms,
            "time_blocked_ms": self.time_blocked_ms,
            "current_oee": self.current_oee,
        }


@dataclass
class MachineSnapshot:
    """Read-only view of a machine for presentation layers."""

    id: str
    name: str
    state: MachineState
    buffer_length: int
    buffer_capacity: int
    buffer_item_ids: List[str] = field(default_factory=list)
    current_item_id: Optional[str] = None
    blocked_item_id: Optional[str] = None
    metrics: MachineMetrics = field(default_factory=MachineMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "buffer_length": self.buffer_length,
            "buffer_capacity": self.buffer_capacity,
            "buffer_item_ids": list(self.buffer_item_ids),
            "current_item_id": self.current_item_id,
            "blocked_item_id": self.blocked_item_id,
            "metrics": self.metrics.to_dict(),
        }


class Machine:
    """One station of the line.

    Owns a bounded FIFO input buffer and advances by one tick per
    ``update`` call. Finished items are returned to the caller; the machine
    never decides where they go.
    """

    def __init__(
        self,
        config: MachineConfig,
        tick_interval_ms: float,
        rng: Optional[random.Random] = None,
    ):
        config.validate()

        self.id = config.id
        self.name = config.name
        self.process_time_base_ms = config.process_time_base_ms
        self.process_time_variance_ms = config.process_time_variance_ms
        self.repair_time_base_ms = config.repair_time_base_ms
        self.repair_time_variance_ms = config.repair_time_variance_ms
        self.buffer_capacity = config.buffer_capacity
        self.failure_rate_per_tick = (
            config.failure_rate_per_second * tick_interval_ms / 1000
        )

        self._rng = rng or random.Random()

        self._state = MachineState.IDLE
        self._buffer: Deque[Item] = deque()
        self._current_item: Optional[Item] = None
        self._blocked_item: Optional[Item] = None

        self.time_in_state_ms = 0.0
        self.process_target_ms = 0.0
        self.repair_target_ms = 0.0

        self._metrics = MachineMetrics()

    # =========================================================================
    # Read accessors
    # =========================================================================

    @property
    def state(self) -> MachineState:
        return self._state

    @property
    def input_buffer(self) -> Tuple[Item, ...]:
        return tuple(self._buffer)

    @property
    def buffer_length(self) -> int:
        return len(self._buffer)

    @property
    def current_item(self) -> Optional[Item]:
        return self._current_item

    @property
    def blocked_item(self) -> Optional[Item]:
        return self._blocked_item

    @property
    def metrics(self) -> MachineMetrics:
        """Copy of the metrics; mutating it does not affect the machine."""
        m = self._metrics
        return MachineMetrics(
            processed_items=m.processed_items,
            time_processing_ms=m.time_processing_ms,
            time_idle_ms=m.time_idle_ms,
            time_down_ms=m.time_down_ms,
            time_blocked_ms=m.time_blocked_ms,
            current_oee=m.current_oee,
            availability=m.availability,
            performance=m.performance,
            quality=m.quality,
        )

    def has_buffer_space(self) -> bool:
        return len(self._buffer) < self.buffer_capacity

    def snapshot(self) -> MachineSnapshot:
        return MachineSnapshot(
            id=self.id,
            name=self.name,
            state=self._state,
            buffer_length=len(self._buffer),
            buffer_capacity=self.buffer_capacity,
            buffer_item_ids=[item.id for item in self._buffer],
            current_item_id=self._current_item.id if self._current_item else None,
            blocked_item_id=self._blocked_item.id if self._blocked_item else None,
            metrics=self.metrics,
        )

    # =========================================================================
    # Tick
    # =========================================================================

    def update(self, delta_time_ms: float, global_time_ms: float) -> Optional[Item]:
        """Advance this machine by one tick.

        Returns the item that finished processing during this tick, if any.
        """
        self.time_in_state_ms += delta_time_ms
        finished: Optional[Item] = None

        if self._state == MachineState.IDLE:
            self._metrics.time_idle_ms += delta_time_ms
            if self._buffer and self._current_item is None:
                self.start_processing(global_time_ms)

        elif self._state == MachineState.PROCESSING:
            self._metrics.time_processing_ms += delta_time_ms
            if self.time_in_state_ms >= self.process_target_ms:
                finished = self._finish_processing(global_time_ms)
            elif self._rng.random() < self.failure_rate_per_tick:
                self._breakdown(global_time_ms)

        elif self._state == MachineState.DOWN:
            self._metrics.time_down_ms += delta_time_ms
            if self.time_in_state_ms >= self.repair_target_ms:
                self._repair(global_time_ms)

        elif self._state == MachineState.BLOCKED_OUTPUT:
            self._metrics.time_blocked_ms += delta_time_ms

        self._calculate_oee()
        return finished

    def _draw_duration(self, base_ms: float, variance_ms: float) -> float:
        return base_ms + self._rng.uniform(-variance_ms, variance_ms)

    def start_processing(self, global_time_ms: float) -> None:
        """Take the head of the buffer into processing.

        No-op when the buffer is empty or an item is already held.
        """
        if not self._buffer or self._current_item is not None:
            return

        item = self._buffer.popleft()
        item.open_entry(self.id, global_time_ms)
        self._current_item = item

        self._state = MachineState.PROCESSING
        self.time_in_state_ms = 0.0
        self.process_target_ms = self._draw_duration(
            self.process_time_base_ms, self.process_time_variance_ms
        )

    def _finish_processing(self, global_time_ms: float) -> Optional[Item]:
        item = self._current_item
        if item is not None:
            item.close_entry(self.id, global_time_ms)
        self._current_item = None
        self._state = MachineState.IDLE
        self.time_in_state_ms = 0.0
        return item

    def _breakdown(self, global_time_ms: float) -> None:
        self._state = MachineState.DOWN
        self.time_in_state_ms = 0.0
        self.repair_target_ms = self._draw_duration(
            self.repair_time_base_ms, self.repair_time_variance_ms
        )
        logger.debug(
            f"{self.id} broke down at {global_time_ms:.0f}ms "
            f"(repair {self.repair_target_ms:.0f}ms)"
        )

    def _repair(self, global_time_ms: float) -> None:
        self.time_in_state_ms = 0.0
        if self._blocked_item is not None:
            self._state = MachineState.BLOCKED_OUTPUT
        elif self._current_item is not None:
            # Resume the same item; the failure roll is skipped this tick
            self._state = MachineState.PROCESSING
        elif self._buffer:
            self.start_processing(global_time_ms)
        else:
            self._state = MachineState.IDLE
        logger.debug(f"{self.id} repaired at {global_time_ms:.0f}ms -> {self._state.value}")

    # =========================================================================
    # Hand-off protocol (driven by the line)
    # =========================================================================

    def try_add_item_to_buffer(self, item: Item) -> bool:
        """Admit an item if the buffer has room. The only backpressure signal."""
        if len(self._buffer) < self.buffer_capacity:
            self._buffer.append(item)
            return True
        return False

    def record_item_processed(self) -> None:
        self._metrics.processed_items += 1

    def set_output_blocked(self, item: Item) -> None:
        """Hold a finished item that could not be handed downstream."""
        self._blocked_item = item
        self._state = MachineState.BLOCKED_OUTPUT
        self.time_in_state_ms = 0.0
        logger.debug(f"{self.id} blocked holding {item.id}")

    def clear_blocked_output(self) -> Optional[Item]:
        """Release the blocked item and return to IDLE.

        Output is credited only when an item was actually held.
        """
        item = self._blocked_item
        self._blocked_item = None
        self._state = MachineState.IDLE
        self.time_in_state_ms = 0.0
        if item is not None:
            self.record_item_processed()
        return item

    # =========================================================================
    # OEE
    # =========================================================================

    def _calculate_oee(self) -> None:
        m = self._metrics
        total = m.total_time_ms

        if total == 0:
            m.availability = 0.0
            m.performance = 0.0
            m.current_oee = 0.0
            return

        up_time = m.time_processing_ms + m.time_idle_ms + m.time_blocked_ms
        availability = up_time / total

        ideal_cycle_time = self.process_time_base_ms
        if m.time_processing_ms > 0 and m.processed_items > 0:
            performance = ideal_cycle_time * m.processed_items / m.time_processing_ms
        elif m.time_processing_ms == 0 and m.processed_items == 0:
            # 0/0 is treated as nominal performance
            performance = 1.0
        else:
            performance = 0.0
        performance = min(1.0, max(0.0, performance))

        m.availability = availability
        m.performance = performance
        m.quality = 1.0
        m.current_oee = availability * performance * m.quality

    def __repr__(self) -> str:
        return (
            f"Machine(id={self.id!r}, state={self._state.value}, "
            f"buffer={len(self._buffer)}/{self.buffer_capacity})"
        )
