"""Integration tests for message flow across the simulator.

Tests the complete flow from simulator tick to MQTT publish,
verifying that:
- Correct topics are used
- Messages are retained appropriately
- Published payloads agree with the line's own bookkeeping
"""

import json
from typing import Any, Dict, List

import pytest

from prodline_sim.config import Config
from prodline_sim.simulator import Simulator


class MockMQTTCapture:
    """Mock MQTT client that captures all publish calls."""

    def __init__(self):
        self.connected = True
        self.published_messages: List[Dict[str, Any]] = []
        self.status_updates: List[Dict[str, Any]] = []
        self.base_topic = "umh/v1/test_enterprise/test_site/line_01"

    def connect(self, dry_run=False):
        return True

    def disconnect(self):
        pass

    def publish(self, topic, payload, retain=False):
        """Capture publish call."""
        self.published_messages.append({
            "topic": f"{self.base_topic}/{topic}",
            "payload": payload,
            "retain": retain,
        })
        return True

    def publish_simulator_status(self, running, global_time_ms, tick_count):
        self.status_updates.append({
            "running": running,
            "global_time_ms": global_time_ms,
            "tick_count": tick_count,
        })

    def clear(self):
        """Clear captured messages."""
        self.published_messages.clear()

    def get_messages_by_namespace(self, namespace: str) -> List[Dict]:
        """Get all messages for a given namespace."""
        return [
            m for m in self.published_messages
            if f"/{namespace}/" in m["topic"] or m["topic"].endswith(f"/{namespace}")
        ]

    def get_messages_by_topic_pattern(self, pattern: str) -> List[Dict]:
        """Get all messages matching a topic pattern."""
        return [m for m in self.published_messages if pattern in m["topic"]]


@pytest.fixture
def simulator():
    config = Config.default()
    config.simulation.random_seed = 3
    mqtt = MockMQTTCapture()
    sim = Simulator(config, mqtt_client=mqtt)
    return sim, mqtt


class TestStateMessages:
    """Per-tick machine state messages."""

    def test_one_state_message_per_machine(self, simulator):
        sim, mqtt = simulator
        sim._tick()

        state_msgs = mqtt.get_messages_by_namespace("_state")
        assert len(state_msgs) == 5
        assert state_msgs[0]["topic"] == "umh/v1/test_enterprise/test_site/line_01/M1/_state"

    def test_state_messages_retained(self, simulator):
        sim, mqtt = simulator
        sim._tick()

        for msg in mqtt.get_messages_by_namespace("_state"):
            assert msg["retain"] is True, f"State message not retained: {msg['topic']}"

    def test_state_payload_fields(self, simulator):
        sim, mqtt = simulator
        sim._tick()

        payload = mqtt.get_messages_by_namespace("_state")[0]["payload"]
        assert payload["id"] == "M1"
        assert payload["state"] in {"IDLE", "PROCESSING", "DOWN", "BLOCKED_OUTPUT"}
        assert payload["sim_time_ms"] == 100
        assert "metrics" in payload

    def test_payloads_are_json_serializable(self, simulator):
        sim, mqtt = simulator
        for _ in range(20):
            sim._tick()

        for msg in mqtt.published_messages:
            json.dumps(msg["payload"])


class TestPeriodicMessages:
    """OEE and dashboard messages published every N ticks."""

    def _run(self, sim, ticks):
        for _ in range(ticks):
            sim._tick()

    def test_oee_published_per_machine(self, simulator):
        sim, mqtt = simulator
        self._run(sim, 10)

        oee_msgs = mqtt.get_messages_by_topic_pattern("_mes/oee/")
        assert {m["payload"]["machine_id"] for m in oee_msgs} == {"M1", "M2", "M3", "M4", "M5"}

    def test_oee_within_bounds(self, simulator):
        sim, mqtt = simulator
        self._run(sim, 600)

        for msg in mqtt.get_messages_by_topic_pattern("_mes/oee/"):
            payload = msg["payload"]
            assert 0.0 <= payload["oee_pct"] <= 100.0
            assert 0.0 <= payload["availability_pct"] <= 100.0
            assert 0.0 <= payload["performance_pct"] <= 100.0
            assert msg["retain"] is False

    def test_dashboard_conserves_items(self, simulator):
        sim, mqtt = simulator
        self._run(sim, 600)

        dashboards = mqtt.get_messages_by_namespace("_dashboard/line")
        assert len(dashboards) == 60
        for msg in dashboards:
            p = msg["payload"]
            assert p["items_created"] == p["finished_count"] + p["work_in_progress"]
            assert sum(p["state_distribution"].values()) == 5

    def test_production_history_retained_and_bounded(self, simulator):
        sim, mqtt = simulator
        self._run(sim, 1200)

        history_msgs = mqtt.get_messages_by_namespace("_dashboard/production_history")
        latest = history_msgs[-1]
        assert latest["retain"] is True
        samples = latest["payload"]["samples"]
        assert len(samples) == 100
        counts = [s["cumulative_count"] for s in samples]
        assert counts == sorted(counts)


class TestStatus:
    """Driver status updates."""

    def test_pause_publishes_status(self, simulator):
        sim, mqtt = simulator
        sim.paused = True

        assert mqtt.status_updates[-1]["running"] is False
