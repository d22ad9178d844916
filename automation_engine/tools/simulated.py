"""Stand-in capabilities for development and local runs.

They log what would have been sent instead of calling a real channel.
"""

from typing import Any, Dict, List

from ..core.capabilities import CapabilityInvoker
from ..core.logging import get_logger

logger = get_logger(__name__)


class LogMessageCapability(CapabilityInvoker):
    """Record outgoing messages and log them."""

    description = "Log outgoing messages instead of sending them"

    def __init__(self, kind: str = "send_message"):
        self.kind = kind
        self.sent: List[Dict[str, Any]] = []

    def invoke(self, config: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        conversation = context.get("conversation") or {}
        record = {"kind": self.kind, "conversation_id": conversation.get("id"), **config}
        self.sent.append(record)
        preview = config.get("message") or config.get("body") or config.get("subject") or ""
        logger.info(f"[{self.kind}] to {record['conversation_id'] or '-'}: {str(preview)[:80]}")
        return {"status": "logged", "message_id": f"log-{len(self.sent)}"}


class EchoAiCapability(CapabilityInvoker):
    """Return the prompt prefixed with a marker instead of calling a model."""

    description = "Echo the user prompt instead of calling a model"

    def invoke(self, config: Dict[str, Any], context: Dict[str, Any]) -> str:
        prompt = str(config.get("user_prompt") or "")
        logger.info(f"[ai_agent] model={config.get('model')} prompt={prompt[:50]}")
        return f"[AI Processed] {prompt}"
