"""
Collab Onboarding - session and flow coordination for profile setup.

Drives a user through the onboarding steps (profile, interests, goals,
project details, skills) while tolerating an absent network, backend
failures and a deferred backend identity.

Components (leaf-first):
- SessionStore: identity/session record and state persistence
- StepCatalog: step ordering and conditional-skip rules
- StepExecutor: validation and remote-then-local persistence
- RecoveryEngine: error taxonomy, retries, offline queue
- FlowCoordinator: step state machine and identity migration
- FlowOrchestrator: event-driven public facade
"""

__version__ = "1.0.0"

from .container import ServiceContainer, build_container
from .orchestrator import FlowOrchestrator, StepResult
from .steps import StepId, COMPLETED

__all__ = [
    "ServiceContainer",
    "build_container",
    "FlowOrchestrator",
    "StepResult",
    "StepId",
    "COMPLETED",
]
