"""Nodes that hand their config to a single capability."""

from ..core.capabilities import CapabilityKind
from ..core.outcomes import Continue, Outcome
from ..models.core import NodeType
from ..models.node_configs import AiAgentConfig, CapabilityNodeConfig, HttpConfig
from .base import NodeHandler, NodeRuntime, to_jsonable


class CapabilityNode(NodeHandler):
    """Invoke ``capability`` and store the result under ``outputVariable``."""

    capability: CapabilityKind

    def __init__(self, node_type: NodeType, capability: CapabilityKind):
        self.node_type = node_type
        self.capability = capability

    def execute(self, config: CapabilityNodeConfig, runtime: NodeRuntime) -> Outcome:
        result = runtime.capabilities.invoke(
            self.capability,
            config.capability_payload(),
            runtime.context.to_dict(),
            node_id=runtime.node.id,
        )
        if config.output_variable:
            runtime.context.set(config.output_variable, to_jsonable(result))
        return Continue()


class HttpNode(CapabilityNode):

    def __init__(self):
        super().__init__(NodeType.HTTP, CapabilityKind.HTTP)

    def execute(self, config: HttpConfig, runtime: NodeRuntime) -> Outcome:
        result = to_jsonable(runtime.capabilities.invoke(
            self.capability,
            config.capability_payload(),
            runtime.context.to_dict(),
            node_id=runtime.node.id,
        ))
        if config.output_variable:
            runtime.context.set(config.output_variable, result)
        if isinstance(result, dict) and "status" in result:
            runtime.context.set("http_last_status", result["status"])
        return Continue()


class AiAgentNode(CapabilityNode):
    """Ask the AI capability and keep its answer for later templates."""

    def __init__(self):
        super().__init__(NodeType.AI_AGENT, CapabilityKind.AI_AGENT)

    def execute(self, config: AiAgentConfig, runtime: NodeRuntime) -> Outcome:
        output = to_jsonable(runtime.capabilities.invoke(
            self.capability,
            config.capability_payload(),
            runtime.context.to_dict(),
            node_id=runtime.node.id,
        ))
        runtime.context.set(f"ai_{runtime.node.id}", output)
        runtime.context.set("ai_last_output", output)
        if config.output_variable:
            runtime.context.set(config.output_variable, output)
        return Continue()
