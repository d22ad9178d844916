"""Built-in node handlers.

``default_handlers`` returns one handler per node type; the dispatcher
looks handlers up by ``Node.type``.
"""

from typing import Dict

from ..core.capabilities import CapabilityKind
from ..models.core import NodeType
from .base import InputMatch, NodeHandler, NodeRuntime
from .capability_nodes import AiAgentNode, CapabilityNode, HttpNode
from .flow_nodes import AbTestNode, ConditionNode, TriggerNode, VariableNode
from .message_nodes import ActionNode, ButtonsNode
from .wait_nodes import WaitInputNode, WaitNode, match_input, parse_duration


def default_handlers() -> Dict[NodeType, NodeHandler]:
    handlers = [
        TriggerNode(),
        ActionNode(),
        ButtonsNode(),
        WaitInputNode(),
        WaitNode(),
        ConditionNode(),
        AbTestNode(),
        VariableNode(),
        HttpNode(),
        AiAgentNode(),
        CapabilityNode(NodeType.CRM, CapabilityKind.CRM),
        CapabilityNode(NodeType.EMAIL, CapabilityKind.EMAIL),
        CapabilityNode(NodeType.SMS, CapabilityKind.SMS),
        CapabilityNode(NodeType.BILLING, CapabilityKind.BILLING),
        CapabilityNode(NodeType.NOTIFICATION, CapabilityKind.NOTIFICATION),
    ]
    return {handler.node_type: handler for handler in handlers}


__all__ = [
    "InputMatch",
    "NodeHandler",
    "NodeRuntime",
    "default_handlers",
    "match_input",
    "parse_duration",
]
