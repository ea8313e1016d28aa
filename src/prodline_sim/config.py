"""Configuration management for the production line simulator."""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class ConfigurationError(ValueError):
    """Raised when a machine or simulation parameter is out of bounds."""


def _require_number(owner: str, attr: str, value: Any) -> None:
    """Reject anything that is not a finite int or float (bools included)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{owner}: {attr} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ConfigurationError(f"{owner}: {attr} must be finite, got {value!r}")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Return a YAML section as a mapping; an empty key counts as ``{}``."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""

    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "prodline-simulator"
    qos: int = 1


@dataclass
class UNSConfig:
    """Unified Namespace configuration for published snapshots."""

    enterprise: str = "acme_manufacturing"
    site: str = "plant_01"
    line: str = "line_01"
    topic_prefix: str = "umh/v1"


@dataclass
class SimulationConfig:
    """Simulation parameters."""

    tick_interval_ms: int = 100
    time_acceleration: float = 1.0
    random_seed: Optional[int] = None
    injection_probability: float = 0.3  # Chance per tick of a new item at the head
    history_sample_every_ticks: int = 10
    history_max_samples: int = 100
    publish_every_ticks: int = 10

    def validate(self) -> None:
        """Reject parameters the engine cannot run with."""
        for attr in (
            "tick_interval_ms",
            "time_acceleration",
            "injection_probability",
            "history_sample_every_ticks",
            "history_max_samples",
            "publish_every_ticks",
        ):
            _require_number("simulation", attr, getattr(self, attr))
        for attr in ("history_sample_every_ticks", "history_max_samples", "publish_every_ticks"):
            if not isinstance(getattr(self, attr), int):
                raise ConfigurationError(f"simulation: {attr} must be an integer")
        if self.random_seed is not None and (
            isinstance(self.random_seed, bool) or not isinstance(self.random_seed, int)
        ):
            raise ConfigurationError(
                f"simulation: random_seed must be an integer, got {self.random_seed!r}"
            )

        if self.tick_interval_ms <= 0:
            raise ConfigurationError(
                f"tick_interval_ms must be positive, got {self.tick_interval_ms}"
            )
        if self.time_acceleration <= 0:
            raise ConfigurationError(
                f"time_acceleration must be positive, got {self.time_acceleration}"
            )
        if not 0.0 <= self.injection_probability <= 1.0:
            raise ConfigurationError(
                f"injection_probability must be within [0, 1], got {self.injection_probability}"
            )
        if self.history_sample_every_ticks <= 0:
            raise ConfigurationError("history_sample_every_ticks must be positive")
        if self.history_max_samples <= 0:
            raise ConfigurationError("history_max_samples must be positive")
        if self.publish_every_ticks <= 0:
            raise ConfigurationError("publish_every_ticks must be positive")


@dataclass
class MachineConfig:
    """Static parameters of one machine on the line.

    All durations are simulated milliseconds. A drawn duration is
    ``base + uniform(-variance, +variance)``, so the variance may not exceed
    the base or the machine could draw a negative duration.
    """

    id: str
    name: str
    process_time_base_ms: float = 1000.0
    process_time_variance_ms: float = 0.0
    failure_rate_per_second: float = 0.0
    repair_time_base_ms: float = 1000.0
    repair_time_variance_ms: float = 0.0
    buffer_capacity: int = 1

    def validate(self) -> None:
        """Fail fast on a configuration that would simulate nonsense."""
        if not self.id or not isinstance(self.id, str):
            raise ConfigurationError("Machine id must be a non-empty string")

        for attr in (
            "process_time_base_ms",
            "process_time_variance_ms",
            "repair_time_base_ms",
            "repair_time_variance_ms",
            "failure_rate_per_second",
        ):
            value = getattr(self, attr)
            _require_number(self.id, attr, value)
            if value < 0:
                raise ConfigurationError(f"{self.id}: {attr} must be >= 0, got {value}")

        if self.process_time_variance_ms > self.process_time_base_ms:
            raise ConfigurationError(
                f"{self.id}: process_time_variance_ms ({self.process_time_variance_ms}) "
                f"exceeds process_time_base_ms ({self.process_time_base_ms})"
            )
        if self.repair_time_variance_ms > self.repair_time_base_ms:
            raise ConfigurationError(
                f"{self.id}: repair_time_variance_ms ({self.repair_time_variance_ms}) "
                f"exceeds repair_time_base_ms ({self.repair_time_base_ms})"
            )

        if isinstance(self.buffer_capacity, bool) or not isinstance(self.buffer_capacity, int):
            raise ConfigurationError(
                f"{self.id}: buffer_capacity must be an integer, got {self.buffer_capacity!r}"
            )
        if self.buffer_capacity < 0:
            raise ConfigurationError(
                f"{self.id}: buffer_capacity must be >= 0, got {self.buffer_capacity}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MachineConfig":
        """Create a machine config from a YAML mapping."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"Machine entry must be a mapping, got {data!r}")
        try:
            return cls(
                id=str(data["id"]),
                name=str(data.get("name", data["id"])),
                process_time_base_ms=data.get("process_time_base_ms", 1000.0),
                process_time_variance_ms=data.get("process_time_variance_ms", 0.0),
                failure_rate_per_second=data.get("failure_rate_per_second", 0.0),
                repair_time_base_ms=data.get("repair_time_base_ms", 1000.0),
                repair_time_variance_ms=data.get("repair_time_variance_ms", 0.0),
                buffer_capacity=data.get("buffer_capacity", 1),
            )
        except KeyError as e:
            raise ConfigurationError(f"Machine entry is missing required key {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "process_time_base_ms": self.process_time_base_ms,
            "process_time_variance_ms": self.process_time_variance_ms,
            "failure_rate_per_second": self.failure_rate_per_second,
            "repair_time_base_ms": self.repair_time_base_ms,
            "repair_time_variance_ms": self.repair_time_variance_ms,
            "buffer_capacity": self.buffer_capacity,
        }


def validate_line(machines: List[MachineConfig]) -> None:
    """Validate every machine and reject duplicate ids."""
    seen = set()
    for machine in machines:
        machine.validate()
        if machine.id in seen:
            raise ConfigurationError(f"Duplicate machine id: {machine.id}")
        seen.add(machine.id)


def default_machines() -> List[MachineConfig]:
    """The five-station reference line."""
    return [
        MachineConfig(
            id="M1",
            name="Cutter",
            process_time_base_ms=3000,
            process_time_variance_ms=500,
            failure_rate_per_second=0.02,
            repair_time_base_ms=5000,
            repair_time_variance_ms=1000,
            buffer_capacity=3,
        ),
        MachineConfig(
            id="M2",
            name="Welder",
            process_time_base_ms=4000,
            process_time_variance_ms=700,
            failure_rate_per_second=0.03,
            repair_time_base_ms=6000,
            repair_time_variance_ms=1500,
            buffer_capacity=3,
        ),
        MachineConfig(
            id="M3",
            name="Painter",
            process_time_base_ms=2500,
            process_time_variance_ms=400,
            failure_rate_per_second=0.015,
            repair_time_base_ms=4000,
            repair_time_variance_ms=800,
            buffer_capacity=3,
        ),
        MachineConfig(
            id="M4",
            name="Assembler",
            process_time_base_ms=5000,
            process_time_variance_ms=1000,
            failure_rate_per_second=0.025,
            repair_time_base_ms=7000,
            repair_time_variance_ms=2000,
            buffer_capacity=3,
        ),
        MachineConfig(
            id="M5",
            name="QA Check",
            process_time_base_ms=2000,
            process_time_variance_ms=300,
            failure_rate_per_second=0.01,
            repair_time_base_ms=3000,
            repair_time_variance_ms=500,
            buffer_capacity=2,
        ),
    ]


@dataclass
class Config:
    """Main configuration container."""

    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    uns: UNSConfig = field(default_factory=UNSConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    machines: List[MachineConfig] = field(default_factory=list)

    def validate(self) -> None:
        self.simulation.validate()
        validate_line(self.machines)

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            return cls.default()

        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

        return cls._from_dict(data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        config = cls.default()

        # Override MQTT settings from env
        config.mqtt.broker = os.getenv("MQTT_BROKER", config.mqtt.broker)
        config.mqtt.username = os.getenv("MQTT_USERNAME", config.mqtt.username)
        config.mqtt.password = os.getenv("MQTT_PASSWORD", config.mqtt.password)

        try:
            config.mqtt.port = int(os.getenv("MQTT_PORT", config.mqtt.port))

            # Override simulation settings
            tick = os.getenv("SIM_TICK_INTERVAL_MS")
            if tick:
                config.simulation.tick_interval_ms = int(tick)
            seed = os.getenv("SIM_RANDOM_SEED")
            if seed:
                config.simulation.random_seed = int(seed)
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric environment override: {e}") from e

        config.validate()
        return config

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration with the reference line."""
        config = cls()
        config.machines = default_machines()
        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        # MQTT config
        if "mqtt" in data:
            mqtt_data = _section(data, "mqtt")
            config.mqtt = MQTTConfig(
                broker=mqtt_data.get("broker", config.mqtt.broker),
                port=mqtt_data.get("port", config.mqtt.port),
                username=mqtt_data.get("username", config.mqtt.username),
                password=mqtt_data.get("password", config.mqtt.password),
                client_id=mqtt_data.get("client_id", config.mqtt.client_id),
                qos=mqtt_data.get("qos", config.mqtt.qos),
            )

        # UNS config
        if "uns" in data:
            uns_data = _section(data, "uns")
            config.uns = UNSConfig(
                enterprise=uns_data.get("enterprise", config.uns.enterprise),
                site=uns_data.get("site", config.uns.site),
                line=uns_data.get("line", config.uns.line),
                topic_prefix=uns_data.get("topic_prefix", config.uns.topic_prefix),
            )

        # Simulation config
        if "simulation" in data:
            sim_data = _section(data, "simulation")
            defaults = config.simulation
            config.simulation = SimulationConfig(
                tick_interval_ms=sim_data.get("tick_interval_ms", defaults.tick_interval_ms),
                time_acceleration=sim_data.get("time_acceleration", defaults.time_acceleration),
                random_seed=sim_data.get("random_seed"),
                injection_probability=sim_data.get(
                    "injection_probability", defaults.injection_probability
                ),
                history_sample_every_ticks=sim_data.get(
                    "history_sample_every_ticks", defaults.history_sample_every_ticks
                ),
                history_max_samples=sim_data.get(
                    "history_max_samples", defaults.history_max_samples
                ),
                publish_every_ticks=sim_data.get(
                    "publish_every_ticks", defaults.publish_every_ticks
                ),
            )

        # An explicit machine list replaces the reference line
        if "machines" in data:
            machines = data["machines"] or []
            if not isinstance(machines, list):
                raise ConfigurationError("'machines' must be a list of machine entries")
            config.machines = [MachineConfig.from_dict(m) for m in machines]

        config.validate()
        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "mqtt": {
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
            },
            "uns": {
                "enterprise": self.uns.enterprise,
                "site": self.uns.site,
                "line": self.uns.line,
                "topic_prefix": self.uns.topic_prefix,
            },
            "simulation": {
                "tick_interval_ms": self.simulation.tick_interval_ms,
                "time_acceleration": self.simulation.time_acceleration,
                "random_seed": self.simulation.random_seed,
                "injection_probability": self.simulation.injection_probability,
                "history_sample_every_ticks": self.simulation.history_sample_every_ticks,
                "history_max_samples": self.simulation.history_max_samples,
                "publish_every_ticks": self.simulation.publish_every_ticks,
            },
            "machines": [m.to_dict() for m in self.machines],
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
