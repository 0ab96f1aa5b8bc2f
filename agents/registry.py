"""Pipeline agents by name.

The scheduler runs one agent per job via run_one(); the CLI runs a chosen
subset in order via run_many(), which stops starting new passes once the
context's stop event is set.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from .base import AgentResult, BaseAgent


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: "OrderedDict[str, BaseAgent]" = OrderedDict()

    @classmethod
    def build(cls, factories: Dict[str, Callable[..., BaseAgent]],
              names: Iterable[str], config: Any = None) -> AgentRegistry:
        """Instantiate the named agents from ``factories`` with ``config``."""
        registry = cls()
        for name in names:
            if name not in factories:
                raise KeyError(f"Unknown agent '{name}'. Available: {', '.join(factories)}")
            registry.register(factories[name](config=config))
        return registry

    def register(self, agent: BaseAgent) -> None:
        self._agents[agent.name] = agent

    def get(self, name: str) -> Optional[BaseAgent]:
        return self._agents.get(name)

    @property
    def agent_names(self) -> List[str]:
        return list(self._agents.keys())

    def run_one(self, name: str, context: Dict[str, Any]) -> AgentResult:
        agent = self._agents.get(name)
        if not agent:
            raise KeyError(f"Agent '{name}' not registered.")
        return agent.run(context)

    def run_many(self, context: Dict[str, Any],
                 names: Optional[Iterable[str]] = None) -> List[AgentResult]:
        """Run agents in order (all of them by default) over one shared context."""
        results: List[AgentResult] = []
        for name in (names if names is not None else self.agent_names):
            stop_event = context.get("stop_event")
            if stop_event is not None and stop_event.is_set():
                break
            results.append(self.run_one(name, context))
        return results
