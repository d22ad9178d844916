"""Node dispatcher: maps a node to its handler and normalizes the outcome."""

from typing import Dict, Optional

from ..models.core import InboundMessage, Node, NodeType
from ..models.node_configs import parse_node_config
from ..nodes import InputMatch, NodeHandler, NodeRuntime, default_handlers
from .context import ExecutionContext
from .exceptions import CapabilityError, WorkflowEngineError
from .logging import get_logger
from .outcomes import Continue, Fail, Outcome, Suspend

logger = get_logger(__name__)


class NodeDispatcher:
    """Run one node and always return an Outcome.

    Capability failures and unexpected handler errors become ``Fail`` so the
    engine can record them on the execution.
    """

    def __init__(self, handlers: Optional[Dict[NodeType, NodeHandler]] = None):
        self._handlers = dict(handlers) if handlers is not None else default_handlers()

    def register(self, handler: NodeHandler) -> None:
        self._handlers[handler.node_type] = handler

    def handler_for(self, node_type: NodeType) -> Optional[NodeHandler]:
        return self._handlers.get(NodeType(node_type))

    def _config(self, handler: NodeHandler, node: Node, context: ExecutionContext):
        raw = context.render_value(node.config) if handler.render_config else node.config
        return parse_node_config(node.type, raw, node.id)

    def execute(self, node: Node, runtime: NodeRuntime) -> Outcome:
        handler = self.handler_for(node.type)
        if handler is None:
            return Fail(f"No handler registered for node type '{node.type.value}'")

        try:
            config = self._config(handler, node, runtime.context)
            outcome = handler.execute(config, runtime)
        except CapabilityError as e:
            logger.warning(f"Node {node.id} ({node.type.value}) capability failed: {e.message}")
            return Fail(e.message)
        except WorkflowEngineError as e:
            logger.error(f"Node {node.id} ({node.type.value}) failed: {e.message}")
            return Fail(e.message)
        except Exception as e:
            logger.error(f"Node {node.id} ({node.type.value}) raised unexpectedly: {e}", exc_info=True)
            return Fail(f"{type(e).__name__}: {e}")

        if not isinstance(outcome, (Continue, Suspend, Fail)):
            return Fail(f"Node {node.id} returned an invalid outcome {outcome!r}")
        return outcome

    def accepts(self, node: Node, context: ExecutionContext, message: InboundMessage) -> InputMatch:
        """Ask the node's handler whether ``message`` ends its wait."""
        handler = self.handler_for(node.type)
        if handler is None:
            return InputMatch(False, reason=f"No handler for node type '{node.type.value}'")
        config = self._config(handler, node, context)
        return handler.accepts(config, message)
