"""paper-health: self-healing health monitoring for the paper-management service."""

__version__ = "0.1.0"

from .health.orchestrator import HealthOrchestrator

__all__ = ["HealthOrchestrator", "__version__"]
