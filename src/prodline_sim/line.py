"""Line coordinator: orders the per-tick flow between adjacent machines.

Each tick the line advances the simulated clock, possibly injects a new item
at the head, then visits the machines from the tail to the head. Resolving
hand-offs at the output end first means a slot freed at machine ``i`` can be
filled by machine ``i - 1`` within the same tick.
"""

import logging
import math
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .config import MachineConfig, SimulationConfig, validate_line
from .items import Item
from .machine import Machine, MachineSnapshot, MachineState

logger = logging.getLogger(__name__)


@dataclass
class HistorySample:
    """Cumulative finished-goods count at a point in simulated time."""

    time_s: float
    cumulative_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"time_s": self.time_s, "cumulative_count": self.cumulative_count}


@dataclass
class LineSnapshot:
    """Read-only view of the whole line."""

    global_time_ms: float
    tick_count: int
    items_created: int
    finished_count: int
    work_in_progress: int
    machines: List[MachineSnapshot] = field(default_factory=list)
    production_history: List[HistorySample] = field(default_factory=list)
    state_distribution: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global_time_ms": self.global_time_ms,
            "tick_count": self.tick_count,
            "items_created": self.items_created,
            "finished_count": self.finished_count,
            "work_in_progress": self.work_in_progress,
            "machines": [m.to_dict() for m in self.machines],
            "production_history": [s.to_dict() for s in self.production_history],
            "state_distribution": dict(self.state_distribution),
        }


class ProductionLine:
    """Owns an ordered chain of machines and the finished goods."""

    def __init__(
        self,
        machine_configs: List[MachineConfig],
        tick_interval_ms: float = 100,
        rng: Optional[random.Random] = None,
        injection_probability: float = 0.3,
        history_sample_every_ticks: int = 10,
        history_max_samples: int = 100,
    ):
        SimulationConfig(
            tick_interval_ms=tick_interval_ms,
            injection_probability=injection_probability,
            history_sample_every_ticks=history_sample_every_ticks,
            history_max_samples=history_max_samples,
        ).validate()
        validate_line(machine_configs)

        self.tick_interval_ms = tick_interval_ms
        self.injection_probability = injection_probability
        self.history_sample_every_ticks = history_sample_every_ticks

        self._rng = rng or random.Random()
        self.machines: List[Machine] = [
            Machine(cfg, tick_interval_ms, rng=self._rng) for cfg in machine_configs
        ]
        self._by_id: Dict[str, Machine] = {m.id: m for m in self.machines}

        self.finished_goods: List[Item] = []
        self.production_history: Deque[HistorySample] = deque(maxlen=history_max_samples)
        self.global_time_ms = 0.0
        self.tick_count = 0
        self.items_created = 0

        logger.debug(
            f"Line initialized with {len(self.machines)} machines: "
            f"{[m.id for m in self.machines]}"
        )

    @classmethod
    def from_config(cls, machines: List[MachineConfig], sim: SimulationConfig,
                    rng: Optional[random.Random] = None) -> "ProductionLine":
        """Build a line from loaded configuration, seeding if requested."""
        if rng is None:
            rng = random.Random(sim.random_seed)
        return cls(
            machines,
            tick_interval_ms=sim.tick_interval_ms,
            rng=rng,
            injection_probability=sim.injection_probability,
            history_sample_every_ticks=sim.history_sample_every_ticks,
            history_max_samples=sim.history_max_samples,
        )

    def get_machine(self, machine_id: str) -> Machine:
        return self._by_id[machine_id]

    # =========================================================================
    # Tick
    # =========================================================================

    def step(self, delta_time_ms: float) -> None:
        """Advance the whole line by one tick of the given duration.

        Raises ValueError for a negative or non-finite delta; simulated time
        only moves forward.
        """
        if not math.isfinite(delta_time_ms) or delta_time_ms < 0:
            raise ValueError(f"delta_time_ms must be a finite value >= 0, got {delta_time_ms!r}")

        self.global_time_ms += delta_time_ms
        self.tick_count += 1

        if not self.machines:
            return

        self._maybe_inject()

        last = len(self.machines) - 1
        for i in range(last, -1, -1):
            machine = self.machines[i]
            downstream = self.machines[i + 1] if i < last else None

            if machine.state == MachineState.BLOCKED_OUTPUT:
                self._resolve_blocked(machine, downstream)

            finished = machine.update(delta_time_ms, self.global_time_ms)
            if finished is not None:
                self._hand_off(machine, downstream, finished)

        if self.tick_count % self.history_sample_every_ticks == 0:
            self.production_history.append(
                HistorySample(
                    time_s=self.global_time_ms / 1000,
                    cumulative_count=len(self.finished_goods),
                )
            )

    simulation_step = step

    def _maybe_inject(self) -> None:
        head = self.machines[0]
        if (
            head.state == MachineState.IDLE
            and head.current_item is None
            and head.has_buffer_space()
            and self._rng.random() < self.injection_probability
        ):
            self.inject_item()

    def inject_item(self) -> Optional[Item]:
        """Create a new item and admit it to the head machine.

        Returns None, without creating anything, when the head buffer is full
        or the line is empty.
        """
        if not self.machines:
            return None

        item = Item(id=Item.make_id(self.items_created + 1), created_at_ms=self.global_time_ms)
        if not self.machines[0].try_add_item_to_buffer(item):
            return None
        self.items_created += 1
        return item

    def _resolve_blocked(self, machine: Machine, downstream: Optional[Machine]) -> None:
        if machine.blocked_item is None:
            # Stale blocked state with nothing held; clear without credit
            machine.clear_blocked_output()
            return

        if downstream is not None and not downstream.has_buffer_space():
            return

        item = machine.clear_blocked_output()
        self._deliver(downstream, item)
        logger.debug(f"{machine.id} unblocked, handed off {item.id}")

    def _hand_off(self, machine: Machine, downstream: Optional[Machine], item: Item) -> None:
        if downstream is None or downstream.has_buffer_space():
            self._deliver(downstream, item)
            machine.record_item_processed()
        else:
            machine.set_output_blocked(item)

    def _deliver(self, downstream: Optional[Machine], item: Item) -> None:
        if downstream is None:
            self.finished_goods.append(item)
        else:
            downstream.try_add_item_to_buffer(item)

    # =========================================================================
    # Aggregates
    # =========================================================================

    @property
    def finished_count(self) -> int:
        return len(self.finished_goods)

    def work_in_progress(self) -> int:
        """Number of items held anywhere on the line."""
        count = 0
        for m in self.machines:
            count += m.buffer_length
            if m.current_item is not None:
                count += 1
            if m.blocked_item is not None:
                count += 1
        return count

    def state_distribution(self) -> Dict[str, int]:
        """Number of machines currently in each state."""
        counts = {state.value: 0 for state in MachineState}
        for m in self.machines:
            counts[m.state.value] += 1
        return counts

    def utilization(self) -> Dict[str, Dict[str, float]]:
        """Per-machine fraction of elapsed time spent in each state."""
        return {m.id: m.metrics.utilization() for m in self.machines}

    def snapshot(self) -> LineSnapshot:
        return LineSnapshot(
            global_time_ms=self.global_time_ms,
            tick_count=self.tick_count,
            items_created=self.items_created,
            finished_count=len(self.finished_goods),
            work_in_progress=self.work_in_progress(),
            machines=[m.snapshot() for m in self.machines],
            production_history=list(self.production_history),
            state_distribution=self.state_distribution(),
        )
