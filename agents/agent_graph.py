# agents/agent_graph.py
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Generic, List, Mapping, Tuple, TypeVar, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

StateT = TypeVar("StateT", bound=BaseModel)

StepResult = Union[Mapping[str, Any], Awaitable[Mapping[str, Any]], None]
Step = Callable[[StateT], StepResult]


class AgentGraph(Generic[StateT]):
    """
    Strictly sequential pipeline of named steps over a typed state model.

    Each step receives the state accumulated so far and returns the fields it
    wants to change (sync or async). The executor merges them into a new state
    with ``model_copy(update=...)``; nothing is retried or skipped, and the
    first exception stops the run.
    """

    def __init__(self, name: str, nodes: Tuple[Tuple[str, Step], ...]):
        self.name = name
        self._nodes = nodes

    @property
    def node_names(self) -> List[str]:
        return [name for name, _ in self._nodes]

    async def execute(self, state: StateT) -> StateT:
        for node_name, step in self._nodes:
            start = time.monotonic()
            try:
                update = step(state)
                if inspect.isawaitable(update):
                    update = await update
            except Exception:
                logger.warning("Graph node failed", extra={
                    "event": "graph_node_failed",
                    "graph": self.name,
                    "node": node_name,
                    "latency_sec": round(time.monotonic() - start, 3),
                })
                raise

            if update:
                unknown = set(update) - set(type(state).model_fields)
                if unknown:
                    raise KeyError(f"Node '{node_name}' returned unknown fields: {sorted(unknown)}")
                state = state.model_copy(update=dict(update))

            logger.debug("Graph node completed", extra={
                "event": "graph_node_completed",
                "graph": self.name,
                "node": node_name,
                "latency_sec": round(time.monotonic() - start, 3),
            })
        return state


class AgentGraphBuilder(Generic[StateT]):
    def __init__(self, name: str):
        self.name = name
        self._nodes: List[Tuple[str, Step]] = []

    def add_node(self, name: str, step: Step) -> "AgentGraphBuilder[StateT]":
        if any(existing == name for existing, _ in self._nodes):
            raise ValueError(f"Duplicate node name: {name}")
        self._nodes.append((name, step))
        return self

    def build(self) -> AgentGraph[StateT]:
        if not self._nodes:
            raise ValueError("Graph needs at least one node")
        return AgentGraph(self.name, tuple(self._nodes))
