from .base import BaseAgent, AgentResult, AgentStatus
from .registry import AgentRegistry

__all__ = ["BaseAgent", "AgentResult", "AgentStatus", "AgentRegistry"]
