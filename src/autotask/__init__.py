"""Autotask - autonomous plan/execute/verify orchestrator."""

__version__ = "0.1.0"
