"""Nodes that talk to the contact: ``action`` and ``buttons``."""

from typing import Any, Dict, Optional

from ..core.capabilities import CapabilityKind
from ..core.logging import get_logger
from ..core.outcomes import Continue, Outcome, Suspend, WaitCondition
from ..models.core import InboundMessage, NodeType
from ..models.node_configs import ActionConfig, ButtonOption, ButtonsConfig
from .base import InputMatch, NodeHandler, NodeRuntime, to_jsonable
from .wait_nodes import parse_duration, timeout_outcome

logger = get_logger(__name__)


class ActionNode(NodeHandler):
    """Send a rendered text message."""

    node_type = NodeType.ACTION

    def execute(self, config: ActionConfig, runtime: NodeRuntime) -> Outcome:
        if not config.message.strip():
            logger.warning(f"Action node {runtime.node.id} has an empty message; nothing sent")
            return Continue()

        result = runtime.capabilities.invoke(
            CapabilityKind.SEND_MESSAGE,
            config.capability_payload(),
            runtime.context.to_dict(),
            node_id=runtime.node.id,
        )
        if config.output_variable:
            runtime.context.set(config.output_variable, to_jsonable(result))
        return Continue()


def interactive_payload(config: ButtonsConfig) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": config.message_type, "body": config.body}
    if config.header:
        payload["header"] = config.header
    if config.footer:
        payload["footer"] = config.footer

    if config.message_type == "buttons":
        payload["buttons"] = [{"id": button.id, "title": button.title} for button in config.buttons]
    elif config.message_type == "list":
        payload["button_text"] = config.list_button_text
        payload["sections"] = config.sections
    else:
        payload["buttons"] = config.cta_buttons
    return payload


def find_button(config: ButtonsConfig, message: InboundMessage) -> Optional[ButtonOption]:
    if message.button_id:
        for button in config.buttons:
            if button.id == message.button_id:
                return button
    cleaned = message.content.strip().lower()
    if cleaned:
        for button in config.buttons:
            if button.title.strip().lower() == cleaned:
                return button
    return None


class ButtonsNode(NodeHandler):
    """Send an interactive choice; optionally wait for the pick."""

    node_type = NodeType.BUTTONS

    def accepts(self, config: ButtonsConfig, message: InboundMessage) -> InputMatch:
        if not config.wait_for_response:
            return InputMatch(False, reason="Buttons node is not waiting for a response")
        button = find_button(config, message)
        return InputMatch(
            True,
            content=button.title if button and not message.content else message.content,
            button_id=button.id if button else message.button_id,
        )

    def _route(self, config: ButtonsConfig, button_id: Optional[str], runtime: NodeRuntime) -> Outcome:
        button = next((b for b in config.buttons if b.id == button_id), None)
        if button and button.branch_id and runtime.has_handle(button.branch_id):
            return Continue(button.branch_id)
        if button_id and runtime.has_handle(button_id):
            return Continue(button_id)
        if runtime.has_handle("continue"):
            return Continue("continue")
        return Continue()

    def execute(self, config: ButtonsConfig, runtime: NodeRuntime) -> Outcome:
        wake = runtime.wake
        if wake is not None:
            if wake.is_timer:
                return timeout_outcome(config, runtime)
            matched = self.accepts(config, wake.message)
            runtime.context.set(config.store_as, matched.content)
            if matched.button_id:
                runtime.context.set("last_button_id", matched.button_id)
            return self._route(config, matched.button_id, runtime)

        result = runtime.capabilities.invoke(
            CapabilityKind.SEND_MESSAGE,
            {"message": config.body, "interactive": interactive_payload(config)},
            runtime.context.to_dict(),
            node_id=runtime.node.id,
        )
        runtime.context.set("last_button_type", config.message_type)
        if isinstance(result, dict) and result.get("message_id"):
            runtime.context.set("last_button_message_id", str(result["message_id"]))

        if not config.wait_for_response:
            return self._route(config, None, runtime)

        timeout = parse_duration(config.timeout, default=None)
        return Suspend(
            runtime.node.id,
            resume_at=runtime.now + timeout if timeout else None,
            wait_condition=WaitCondition(
                kind="input",
                input_type="button_click",
                details={"buttons": [button.id for button in config.buttons]},
            ),
        )
