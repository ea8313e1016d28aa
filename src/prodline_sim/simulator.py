"""Real-time driver that paces the line and publishes its snapshots.

The line itself only knows simulated time. This module maps wall-clock time
to ticks, runs them on a background thread and pushes snapshots over MQTT:

- ``{machine}/_state``: machine state every tick
- ``_mes/oee/{machine}``: OEE breakdown every ``publish_every_ticks``
- ``_dashboard/line``: line totals every ``publish_every_ticks``
- ``_dashboard/production_history``: bounded output series (retained)
"""

import logging
import threading
import time
from typing import Optional

from .config import Config
from .line import LineSnapshot, ProductionLine
from .mqtt_client import MQTTClient

logger = logging.getLogger(__name__)


class Simulator:
    """Drives a ProductionLine from a wall clock."""

    def __init__(
        self,
        config: Config,
        mqtt_client: Optional[MQTTClient] = None,
        line: Optional[ProductionLine] = None,
    ):
        config.validate()
        self.config = config
        self._running = False
        self._paused = False
        self._tick_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

        if mqtt_client:
            self._mqtt = mqtt_client
        else:
            self._mqtt = MQTTClient(
                config.mqtt,
                config.uns,
                on_run_toggle=self._on_run_toggle,
            )

        self.line = line or ProductionLine.from_config(config.machines, config.simulation)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    @paused.setter
    def paused(self, value: bool) -> None:
        self._paused = value
        logger.info(f"Simulation {'paused' if value else 'resumed'}")
        self._publish_status()

    def _on_run_toggle(self, running: bool) -> None:
        """Handle run/pause commands from MQTT."""
        self.paused = not running

    def start(self, dry_run: bool = False) -> bool:
        """Connect the transport and start the tick thread."""
        if not self._mqtt.connect(dry_run=dry_run):
            logger.error("Failed to connect to MQTT broker")
            return False

        self._running = True
        self._publish_status()
        self._tick_thread = threading.Thread(target=self._tick_loop, daemon=True)
        self._tick_thread.start()

        logger.info(
            f"Simulator started: {len(self.line.machines)} machines, "
            f"tick {self.config.simulation.tick_interval_ms}ms "
            f"x{self.config.simulation.time_acceleration}"
        )
        return True

    def stop(self) -> None:
        """Stop the tick thread and disconnect."""
        self._running = False
        if self._tick_thread:
            self._tick_thread.join(timeout=5)
        self._publish_status()
        self._mqtt.disconnect()
        logger.info("Simulator stopped")

    def _tick_loop(self) -> None:
        """Run one tick whenever a tick's worth of scaled wall time has passed.

        Leftover time is carried into the next interval so the simulated clock
        does not drift behind the wall clock.
        """
        tick_ms = self.config.simulation.tick_interval_ms
        acceleration = self.config.simulation.time_acceleration
        last_tick = time.monotonic()

        while self._running:
            now = time.monotonic()
            elapsed_ms = (now - last_tick) * 1000.0 * acceleration

            if self._paused:
                last_tick = now
            elif elapsed_ms >= tick_ms:
                try:
                    self._tick()
                except Exception as e:
                    logger.error(f"Error in tick loop: {e}")
                remainder_ms = elapsed_ms % tick_ms
                last_tick = now - remainder_ms / 1000.0 / acceleration

            time.sleep(min(0.01, tick_ms / 1000.0 / acceleration / 4))

    def _tick(self) -> None:
        """Execute one simulation tick and publish its results."""
        with self._lock:
            self.line.step(self.config.simulation.tick_interval_ms)
            snapshot = self.line.snapshot()

        self._publish_machine_states(snapshot)
        if snapshot.tick_count % self.config.simulation.publish_every_ticks == 0:
            self._publish_oee(snapshot)
            self._publish_dashboard(snapshot)
            self._publish_production_history(snapshot)

    def run_ticks(self, ticks: int) -> LineSnapshot:
        """Run ticks back to back without pacing or publishing."""
        with self._lock:
            for _ in range(ticks):
                self.line.step(self.config.simulation.tick_interval_ms)
            return self.line.snapshot()

    # =========================================================================
    # Publishing methods
    # =========================================================================

    def _publish_status(self) -> None:
        self._mqtt.publish_simulator_status(
            self._running and not self._paused,
            self.line.global_time_ms,
            self.line.tick_count,
        )

    def _publish_machine_states(self, snapshot: LineSnapshot) -> None:
        for machine in snapshot.machines:
            payload = machine.to_dict()
            payload["timestamp_ms"] = int(time.time() * 1000)
            payload["sim_time_ms"] = snapshot.global_time_ms
            self._mqtt.publish(f"{machine.id}/_state", payload, retain=True)

    def _publish_oee(self, snapshot: LineSnapshot) -> None:
        for machine in snapshot.machines:
            m = machine.metrics
            self._mqtt.publish(
                f"_mes/oee/{machine.id}",
                {
                    "machine_id": machine.id,
                    "oee_pct": round(m.current_oee * 100, 1),
                    "availability_pct": round(m.availability * 100, 1),
                    "performance_pct": round(m.performance * 100, 1),
                    "quality_pct": round(m.quality * 100, 1),
                    "processed_items": m.processed_items,
                    "utilization": m.utilization(),
                    "sim_time_ms": snapshot.global_time_ms,
                },
            )

    def _publish_dashboard(self, snapshot: LineSnapshot) -> None:
        self._mqtt.publish(
            "_dashboard/line",
            {
                "sim_time_ms": snapshot.global_time_ms,
                "tick_count": snapshot.tick_count,
                "items_created": snapshot.items_created,
                "finished_count": snapshot.finished_count,
                "work_in_progress": snapshot.work_in_progress,
                "state_distribution": snapshot.state_distribution,
            },
        )

    def _publish_production_history(self, snapshot: LineSnapshot) -> None:
        self._mqtt.publish(
            "_dashboard/production_history",
            {"samples": [s.to_dict() for s in snapshot.production_history]},
            retain=True,
        )
