"""Metering services: ledger, reconciliation, gating, alerts and tracking."""

from metering_engine.services.alerts import AlertGenerator, AlertNotifier
from metering_engine.services.gate import LimitGate
from metering_engine.services.ledger import EventLedger
from metering_engine.services.reconciler import SummaryReconciler, compute_percentage
from metering_engine.services.tracker import UsageTracker, build_tracker

__all__ = [
    "AlertGenerator",
    "AlertNotifier",
    "EventLedger",
    "LimitGate",
    "SummaryReconciler",
    "UsageTracker",
    "build_tracker",
    "compute_percentage",
]
