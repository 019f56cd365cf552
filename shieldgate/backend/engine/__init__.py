"""engine/__init__.py"""
from .admin import AdminService
from .engine import DecisionEngine, build_dispatcher, build_engine
from .models import RequestView, RuleResult, TriggerPath
from .state import EngineState

__all__ = [
    "AdminService",
    "DecisionEngine",
    "EngineState",
    "RequestView",
    "RuleResult",
    "TriggerPath",
    "build_dispatcher",
    "build_engine",
]
