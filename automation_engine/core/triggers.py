"""Trigger evaluation: start runs from external events and inbound messages."""

from typing import Any, Dict, List, Optional

from ..models.core import (
    InboundMessage,
    NodeType,
    RunResult,
    TriggerResult,
    Workflow,
)
from ..models.node_configs import TriggerConfig, parse_node_config
from ..storage.store import ExecutionStore
from .exceptions import WorkflowEngineError
from .execution_engine import ExecutionEngine
from .logging import get_logger
from .scheduler import QueueScheduler

logger = get_logger(__name__)

MESSAGE_RECEIVED = "message_received"
KEYWORD = "keyword"

# Upper bound on waiting runs scanned per inbound message.
WAITING_SCAN_LIMIT = 500


def message_context(message: InboundMessage) -> Dict[str, Any]:
    """Initial context of a run started by ``message``."""
    return {
        "conversation": {"id": message.conversation_id, "channel": message.channel},
        "message": {
            "content": message.content,
            "sender": message.sender,
            "type": message.type,
        },
        "lead": {"id": message.lead_id},
    }


def trigger_matches(config: TriggerConfig, message: InboundMessage) -> bool:
    """Whether a trigger node configured with ``config`` fires for ``message``."""
    if config.channel and message.channel and config.channel != message.channel:
        return False

    trigger_type = config.trigger_type.strip().lower()
    if trigger_type == MESSAGE_RECEIVED:
        return True
    if trigger_type != KEYWORD:
        return False

    text = (message.content or "").strip().lower()
    if not text:
        return False
    for keyword in config.keywords:
        keyword = keyword.strip().lower()
        if not keyword:
            continue
        if config.match_type == "exact" and text == keyword:
            return True
        if config.match_type != "exact" and keyword in text:
            return True
    return False


class TriggerService:
    """Route external events and messages to new or waiting executions."""

    def __init__(self, store: ExecutionStore, engine: ExecutionEngine, scheduler: QueueScheduler):
        self.store = store
        self.engine = engine
        self.scheduler = scheduler

    def on_external_event(self, workflow_id: str,
                          initial_context: Optional[Dict[str, Any]] = None) -> RunResult:
        logger.info(f"External event for workflow {workflow_id}")
        return self.engine.start(workflow_id, initial_context or {})

    def evaluate_message(self, message: InboundMessage) -> TriggerResult:
        """
        Deliver ``message`` to waiting runs of its conversation; if none takes
        it, start every active workflow whose trigger matches.
        """
        result = TriggerResult()

        for execution_id in self._waiting_in_conversation(message.conversation_id):
            delivery = self.scheduler.deliver_input(execution_id, message)
            result.delivered.append(delivery)
            if delivery.accepted:
                logger.info(f"Message delivered to waiting execution {execution_id}")

        if any(delivery.accepted for delivery in result.delivered):
            return result

        for workflow in self.store.list_workflows(active_only=True):
            if not self._fires(workflow, message):
                continue
            try:
                run = self.engine.start(workflow.id, message_context(message))
            except WorkflowEngineError as e:
                logger.error(f"Could not start workflow {workflow.id} from message: {e.message}")
                continue
            result.started.append(run)
        logger.info(
            f"Message evaluated: {len(result.started)} runs started, "
            f"{len(result.delivered)} waiting runs checked"
        )
        return result

    def _waiting_in_conversation(self, conversation_id: Optional[str]) -> List[str]:
        if not conversation_id:
            return []
        waiting = self.store.list_waiting_in_conversation(conversation_id, limit=WAITING_SCAN_LIMIT)
        if len(waiting) >= WAITING_SCAN_LIMIT:
            logger.warning(
                f"Conversation {conversation_id} has at least {WAITING_SCAN_LIMIT} waiting executions; "
                f"only the oldest {WAITING_SCAN_LIMIT} are offered this message"
            )
        return [execution.id for execution in waiting]

    @staticmethod
    def _fires(workflow: Workflow, message: InboundMessage) -> bool:
        trigger = next(
            (node for node in workflow.definition.nodes if node.type == NodeType.TRIGGER), None
        )
        if trigger is None:
            return False
        config = parse_node_config(trigger.type, trigger.config, trigger.id)
        return trigger_matches(config, message)
