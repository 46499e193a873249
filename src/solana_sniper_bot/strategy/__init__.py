"""Strategy package exports."""

from .admission import AdmissionController
from .entry_gate import EntryGate
from .exit_monitor import ExitDecision, ExitMonitor, ExitOutcome, StopLossBook
from .indicators import MacdResult, macd, rsi
from .price_sampler import PriceSampler, PriceSeries

__all__ = [
    "AdmissionController",
    "EntryGate",
    "ExitDecision",
    "ExitMonitor",
    "ExitOutcome",
    "MacdResult",
    "PriceSampler",
    "PriceSeries",
    "StopLossBook",
    "macd",
    "rsi",
]
