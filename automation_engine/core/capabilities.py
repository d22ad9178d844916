"""Capability registry: the uniform way nodes reach the outside world."""

import inspect
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .exceptions import CapabilityError
from .logging import get_logger

logger = get_logger(__name__)


class CapabilityKind(str, Enum):
    SEND_MESSAGE = "send_message"
    EMAIL = "email"
    SMS = "sms"
    HTTP = "http"
    CRM = "crm"
    BILLING = "billing"
    NOTIFICATION = "notification"
    AI_AGENT = "ai_agent"


class CapabilityInvoker(ABC):
    """A side-effecting integration a node can call.

    ``invoke`` receives the node's rendered config and a read-only copy of
    the execution context. It raises CapabilityError on failure.
    """

    description: str = ""

    @abstractmethod
    def invoke(self, config: Dict[str, Any], context: Dict[str, Any]) -> Any:
        pass


CapabilityFunction = Callable[[Dict[str, Any], Dict[str, Any]], Any]
CapabilityHandler = Union[CapabilityInvoker, CapabilityFunction]


class CapabilityRegistry:
    """In-memory registry of capability handlers keyed by kind."""

    def __init__(self):
        self._handlers: Dict[str, CapabilityHandler] = {}
        self._descriptions: Dict[str, str] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(kind: Union[CapabilityKind, str]) -> str:
        key = kind.value if isinstance(kind, CapabilityKind) else str(kind or "").strip()
        if not key:
            raise CapabilityError("Capability kind cannot be empty")
        return key

    def register(self, kind: Union[CapabilityKind, str], handler: CapabilityHandler,
                 description: str = "", replace: bool = False) -> None:
        """Register a handler for ``kind``.

        Raises:
            CapabilityError: If the handler is not callable or the kind is taken
        """
        key = self._key(kind)
        if not isinstance(handler, CapabilityInvoker):
            if not callable(handler):
                raise CapabilityError(f"Capability '{key}' must be callable", capability=key)
            try:
                if len(inspect.signature(handler).parameters) < 2:
                    raise CapabilityError(
                        f"Capability '{key}' must accept (config, context)", capability=key
                    )
            except (TypeError, ValueError):
                # Builtins without a signature are accepted as-is.
                pass

        with self._lock:
            if key in self._handlers and not replace:
                raise CapabilityError(f"Capability '{key}' is already registered", capability=key)
            self._handlers[key] = handler
            self._descriptions[key] = description or getattr(handler, "description", "") or ""
        logger.info(f"Registered capability '{key}'")

    def unregister(self, kind: Union[CapabilityKind, str]) -> bool:
        key = self._key(kind)
        with self._lock:
            removed = self._handlers.pop(key, None) is not None
            self._descriptions.pop(key, None)
        if removed:
            logger.info(f"Unregistered capability '{key}'")
        return removed

    def exists(self, kind: Union[CapabilityKind, str]) -> bool:
        with self._lock:
            return self._key(kind) in self._handlers

    def get(self, kind: Union[CapabilityKind, str]) -> CapabilityHandler:
        key = self._key(kind)
        with self._lock:
            handler = self._handlers.get(key)
        if handler is None:
            raise CapabilityError(f"Capability '{key}' is not registered", capability=key)
        return handler

    def list(self) -> Dict[str, str]:
        """Registered kinds mapped to their descriptions."""
        with self._lock:
            return dict(self._descriptions)

    def invoke(self, kind: Union[CapabilityKind, str], config: Dict[str, Any],
               context: Optional[Dict[str, Any]] = None, node_id: Optional[str] = None) -> Any:
        """Call the handler for ``kind``; any failure surfaces as CapabilityError."""
        key = self._key(kind)
        handler = self.get(key)
        logger.debug(f"Invoking capability '{key}' for node {node_id}")
        try:
            if isinstance(handler, CapabilityInvoker):
                return handler.invoke(config, dict(context or {}))
            return handler(config, dict(context or {}))
        except CapabilityError as e:
            if node_id:
                e.add_context(node_id=node_id)
            raise
        except Exception as e:
            logger.error(f"Capability '{key}' raised {type(e).__name__}: {e}")
            raise CapabilityError(
                f"Capability '{key}' failed: {e}",
                capability=key,
                node_id=node_id,
                details={"exception_type": type(e).__name__},
            ) from e
