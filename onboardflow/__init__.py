"""onboardflow: durable orchestration for applicant onboarding."""

from .config import OnboardingConfig, load_config
from .contracts import DecisionKind, EventType, Stage, WorkflowSignal, WorkflowStatus
from .dispatch import SignalDispatcher
from .engine import StageStateMachine, create_engine
from .gatekeeper import DeliveryResult, HumanGatekeeper
from .gateway import get_gateway
from .persistence import get_repository
from .transports import get_transport
from .worker import WorkflowWorker

__version__ = "0.1.0"
__all__ = [
    "DecisionKind",
    "DeliveryResult",
    "EventType",
    "HumanGatekeeper",
    "OnboardingConfig",
    "SignalDispatcher",
    "Stage",
    "StageStateMachine",
    "WorkflowSignal",
    "WorkflowStatus",
    "WorkflowWorker",
    "create_engine",
    "get_gateway",
    "get_repository",
    "get_transport",
    "load_config",
]
