from .adapters.ollama import OllamaNarrationClient
from .config import SessionConfig
from .core.orchestrator import GMOrchestrator
from .core.session import SessionStore
from .persistence.realtime import SQLAlchemyRealtimeStore

__all__ = [
    "GMOrchestrator",
    "SessionStore",
    "SessionConfig",
    "SQLAlchemyRealtimeStore",
    "OllamaNarrationClient",
]
