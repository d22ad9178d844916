"""Values returned by node handlers.

A handler never raises to pause a run: it returns ``Suspend`` and the engine
persists the wait.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from ..models.core import InboundMessage


@dataclass(frozen=True)
class Continue:
    """Follow the edge leaving through ``handle`` (default exit when None)."""
    handle: Optional[str] = None


@dataclass(frozen=True)
class WaitCondition:
    """What a suspended node is waiting for besides its timer."""
    kind: str = "input"
    input_type: str = "any"
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Suspend:
    """Pause the run and resume at ``resume_step_id``.

    ``resume_at`` None means no timer: only a matching reply wakes the run.
    """
    resume_step_id: str
    resume_at: Optional[datetime] = None
    wait_condition: Optional[WaitCondition] = None


@dataclass(frozen=True)
class Fail:
    reason: str


Outcome = Union[Continue, Suspend, Fail]


WAKE_TIMER = "timer"
WAKE_INPUT = "input"


@dataclass(frozen=True)
class Wake:
    """Tells the node being resumed why its wait ended."""
    kind: str = WAKE_TIMER
    message: Optional[InboundMessage] = None

    @property
    def is_timer(self) -> bool:
        return self.kind == WAKE_TIMER

    @property
    def is_input(self) -> bool:
        return self.kind == WAKE_INPUT


def timer_wake() -> Wake:
    return Wake(kind=WAKE_TIMER)


def input_wake(message: InboundMessage) -> Wake:
    return Wake(kind=WAKE_INPUT, message=message)
