"""Dispatch: candidate search, ranking, assignment and the delivery lifecycle."""

from delivery_engine.dispatch.engine import DeliveryEngine, build_engine
from delivery_engine.dispatch.lifecycle import DeliveryLifecycle
from delivery_engine.dispatch.locator import CandidateLocator
from delivery_engine.dispatch.orchestrator import AssignmentOrchestrator
from delivery_engine.dispatch.ranking import RankingEngine
from delivery_engine.dispatch.reassignment import ReassignmentHandler
from delivery_engine.dispatch.sweeper import ExpirySweeper, RiderReconciler

__all__ = [
    "DeliveryEngine",
    "build_engine",
    "DeliveryLifecycle",
    "CandidateLocator",
    "AssignmentOrchestrator",
    "RankingEngine",
    "ReassignmentHandler",
    "ExpirySweeper",
    "RiderReconciler",
]
