"""Base class and runtime passed to node handlers."""

import json
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Set

from ..core.capabilities import CapabilityRegistry
from ..core.context import ExecutionContext
from ..core.outcomes import Outcome, Wake
from ..models.core import Edge, InboundMessage, Node, NodeType
from ..models.node_configs import NodeConfig


@dataclass
class NodeRuntime:
    """Everything a handler may read or touch while running one node."""
    node: Node
    context: ExecutionContext
    execution_id: str
    workflow_id: str
    capabilities: CapabilityRegistry
    now: datetime
    rng: random.Random
    outgoing: List[Edge] = field(default_factory=list)
    wake: Optional[Wake] = None

    @property
    def handles(self) -> Set[Optional[str]]:
        return {edge.source_handle for edge in self.outgoing}

    def has_handle(self, handle: Optional[str]) -> bool:
        return handle in self.handles

    @property
    def resuming(self) -> bool:
        return self.wake is not None


@dataclass(frozen=True)
class InputMatch:
    """Whether an inbound reply satisfies a waiting node."""
    accepted: bool
    reason: Optional[str] = None
    content: str = ""
    button_id: Optional[str] = None


class NodeHandler:
    """Runs one node type.

    ``execute`` gets the node's config already rendered against the context
    and parsed into ``config_model``. It returns an Outcome and never writes
    to storage.
    """

    node_type: NodeType
    # Set to False when the handler renders templates itself.
    render_config: bool = True

    def execute(self, config: NodeConfig, runtime: NodeRuntime) -> Outcome:
        raise NotImplementedError

    def accepts(self, config: NodeConfig, message: InboundMessage) -> InputMatch:
        """Decide whether ``message`` ends this node's wait."""
        return InputMatch(False, reason=f"{self.node_type.value} node does not wait for input")


def to_jsonable(value: Any) -> Any:
    """Coerce a capability result into something the store can persist."""
    return json.loads(json.dumps(value, default=str))
