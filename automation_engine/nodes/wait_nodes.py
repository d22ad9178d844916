"""Nodes that suspend a run: ``wait`` and ``wait_input``."""

import re
from datetime import timedelta
from typing import Optional, Union

from ..core.logging import get_logger
from ..core.outcomes import Continue, Fail, Outcome, Suspend, WaitCondition
from ..models.core import InboundMessage, NodeType
from ..models.node_configs import ButtonsConfig, InputValidation, WaitConfig, WaitInputConfig
from .base import InputMatch, NodeHandler, NodeRuntime

logger = get_logger(__name__)

DEFAULT_DURATION = timedelta(minutes=1)

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhdw]?)\s*$", re.IGNORECASE)

_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(text: Optional[Union[str, int, float]], default: Optional[timedelta] = DEFAULT_DURATION) -> Optional[timedelta]:
    """Parse ``30s``, ``5m``, ``2h``, ``1d`` or ``1w``; a bare number is minutes."""
    if text is None or str(text).strip() == "":
        return default
    match = _DURATION_PATTERN.match(str(text))
    if not match:
        logger.warning(f"Unparseable duration '{text}', using {default}")
        return default
    value, unit = float(match.group(1)), match.group(2).lower()
    return timedelta(**{_UNITS[unit]: value})


# Message types accepted for each expected input type.
INPUT_TYPE_MAP = {
    "button_click": ("interactive", "button_reply"),
    "text": ("text",),
    "image": ("image",),
    "location": ("location",),
    "audio": ("audio", "voice"),
}

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_PATTERN = re.compile(r"^[\d\s+()-]{10,}$")


def validate_text(text: str, validation: InputValidation) -> bool:
    kind = validation.type
    if kind == "regex":
        try:
            return re.search(validation.value or "", text) is not None
        except re.error as e:
            logger.warning(f"Invalid validation pattern {validation.value!r}: {e}")
            return False
    if kind == "contains":
        return (validation.value or "").lower() in text.lower()
    if kind == "length":
        if validation.min is not None and len(text) < validation.min:
            return False
        if validation.max is not None and len(text) > validation.max:
            return False
        return True
    if kind == "email":
        return _EMAIL_PATTERN.match(text.strip()) is not None
    if kind == "phone":
        return _PHONE_PATTERN.match(text.strip()) is not None
    if kind == "number":
        try:
            float(text.strip())
            return True
        except ValueError:
            return False
    return True


def match_input(config: WaitInputConfig, message: InboundMessage) -> InputMatch:
    """Check a reply against what a ``wait_input`` node expects."""
    message_type = (message.type or "text").lower()
    button_id = message.button_id

    # A typed reply that equals a button title counts as pressing it.
    if config.input_type == "button_click" and message_type == "text" and not button_id:
        cleaned = message.content.strip().lower()
        for option in config.button_options:
            if option.title.strip().lower() == cleaned:
                message_type, button_id = "interactive", option.id
                break

    if config.input_type != "any":
        expected = INPUT_TYPE_MAP.get(config.input_type, (config.input_type,))
        if message_type not in expected:
            return InputMatch(False, reason="Waiting for different input type")

    if config.validation and message_type == "text":
        if not validate_text(message.content, config.validation):
            return InputMatch(False, reason=config.validation.error_message or "Invalid input")

    return InputMatch(True, content=message.content, button_id=button_id)


def timeout_outcome(config: Union[WaitInputConfig, ButtonsConfig], runtime: NodeRuntime) -> Outcome:
    """Route a wait whose timer fired before a reply arrived."""
    runtime.context.set(config.store_as, "")
    action = config.timeout_action
    if action == "stop":
        return Fail("Timed out waiting for input")
    if action == "continue":
        return Continue()
    if action == "branch":
        return Continue(config.timeout_branch_id or "timeout")
    return Continue("timeout") if runtime.has_handle("timeout") else Continue()


class WaitNode(NodeHandler):
    """Pause for a fixed duration."""

    node_type = NodeType.WAIT

    def execute(self, config: WaitConfig, runtime: NodeRuntime) -> Outcome:
        if runtime.resuming:
            return Continue()
        duration = parse_duration(config.duration)
        logger.debug(f"[Wait] node {runtime.node.id} sleeping {duration}")
        return Suspend(runtime.node.id, resume_at=runtime.now + duration)


class WaitInputNode(NodeHandler):
    """Pause until a matching reply arrives or the timeout elapses."""

    node_type = NodeType.WAIT_INPUT

    def accepts(self, config: WaitInputConfig, message: InboundMessage) -> InputMatch:
        return match_input(config, message)

    def execute(self, config: WaitInputConfig, runtime: NodeRuntime) -> Outcome:
        wake = runtime.wake
        if wake is None:
            timeout = parse_duration(config.timeout, default=None)
            return Suspend(
                runtime.node.id,
                resume_at=runtime.now + timeout if timeout else None,
                wait_condition=WaitCondition(
                    kind="input",
                    input_type=config.input_type,
                    details={"store_as": config.store_as},
                ),
            )

        if wake.is_timer:
            logger.info(f"[WaitInput] node {runtime.node.id} timed out")
            return timeout_outcome(config, runtime)

        matched = match_input(config, wake.message)
        if not matched.accepted:
            return Fail(f"Reply rejected after wake: {matched.reason}")

        runtime.context.set(config.store_as, matched.content)
        if matched.button_id:
            runtime.context.set("last_button_id", matched.button_id)
            branch = config.button_branches.get(matched.button_id)
            if branch:
                return Continue(branch)
            if runtime.has_handle(matched.button_id):
                return Continue(matched.button_id)
        return Continue()
