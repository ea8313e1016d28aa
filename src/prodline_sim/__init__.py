"""Production line simulator - discrete-time machines, buffers and OEE."""

__version__ = "0.1.0"

from .config import Config, ConfigurationError, MachineConfig, SimulationConfig
from .items import HistoryEntry, Item
from .machine import Machine, MachineMetrics, MachineSnapshot, MachineState
from .line import HistorySample, LineSnapshot, ProductionLine
from .simulator import Simulator

__all__ = [
    "Config",
    "ConfigurationError",
    "HistoryEntry",
    "HistorySample",
    "Item",
    "LineSnapshot",
    "Machine",
    "MachineConfig",
    "MachineMetrics",
    "MachineSnapshot",
    "MachineState",
    "ProductionLine",
    "SimulationConfig",
    "Simulator",
    "__version__",
]
