"""Typed configuration for each node type.

Configs arrive from the graph editor in camelCase and are validated when the
node runs, not when the graph is saved. A field that fails validation is
dropped and falls back to its default so one bad setting never stops a run.
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from ..core.logging import get_logger
from .core import NodeType


logger = get_logger(__name__)


class NodeConfig(BaseModel):
    """Base for node configs: camelCase aliases, unknown keys ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CapabilityNodeConfig(NodeConfig):
    """Config passed through to a capability; extra keys are kept."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    output_variable: Optional[str] = Field(
        None, validation_alias=AliasChoices("output_variable", "outputVariable")
    )

    def capability_payload(self) -> Dict[str, Any]:
        """Everything the capability should see, keyed as the editor wrote it."""
        payload = self.model_dump(by_alias=False, exclude={"output_variable"})
        return {k: v for k, v in payload.items() if v is not None}


class ButtonOption(NodeConfig):
    id: str
    title: str = ""
    branch_id: Optional[str] = Field(None, validation_alias=AliasChoices("branch_id", "branchId"))


class InputValidation(NodeConfig):
    type: str = Field("contains", description="regex, contains, length, email, phone or number")
    value: Optional[str] = None
    min: Optional[int] = None
    max: Optional[int] = None
    error_message: Optional[str] = Field(
        None, validation_alias=AliasChoices("error_message", "errorMessage")
    )


class TriggerConfig(NodeConfig):
    trigger_type: str = Field(
        "manual", validation_alias=AliasChoices("trigger_type", "triggerType")
    )
    keywords: List[str] = Field(default_factory=list)
    match_type: str = Field("contains", validation_alias=AliasChoices("match_type", "matchType"))
    channel: Optional[str] = None

    @field_validator('keywords', mode='before')
    @classmethod
    def split_keywords(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class ActionConfig(CapabilityNodeConfig):
    message: str = ""
    channel: Optional[str] = None


class ButtonsConfig(NodeConfig):
    message_type: str = Field("buttons", validation_alias=AliasChoices("message_type", "messageType"))
    body: str = ""
    header: Optional[str] = None
    footer: Optional[str] = None
    buttons: List[ButtonOption] = Field(default_factory=list)
    list_button_text: str = Field(
        "Ver opciones", validation_alias=AliasChoices("list_button_text", "listButtonText")
    )
    sections: List[Dict[str, Any]] = Field(default_factory=list)
    cta_buttons: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=AliasChoices("cta_buttons", "ctaButtons")
    )
    wait_for_response: bool = Field(
        False, validation_alias=AliasChoices("wait_for_response", "waitForResponse")
    )
    timeout: Optional[str] = None
    timeout_action: Optional[str] = Field(
        None, validation_alias=AliasChoices("timeout_action", "timeoutAction")
    )
    timeout_branch_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("timeout_branch_id", "timeoutBranchId")
    )
    store_as: str = Field("user_response", validation_alias=AliasChoices("store_as", "storeAs"))

    @field_validator('message_type')
    @classmethod
    def validate_message_type(cls, value):
        if value not in ("buttons", "list", "cta"):
            raise ValueError(f"Unsupported message type '{value}'")
        return value


class WaitInputConfig(NodeConfig):
    input_type: str = Field("any", validation_alias=AliasChoices("input_type", "inputType"))
    timeout: Optional[str] = None
    timeout_action: Optional[str] = Field(
        None, validation_alias=AliasChoices("timeout_action", "timeoutAction")
    )
    timeout_branch_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("timeout_branch_id", "timeoutBranchId")
    )
    validation: Optional[InputValidation] = None
    store_as: str = Field("user_response", validation_alias=AliasChoices("store_as", "storeAs"))
    button_branches: Dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("button_branches", "buttonBranches")
    )
    button_options: List[ButtonOption] = Field(
        default_factory=list, validation_alias=AliasChoices("button_options", "buttonOptions")
    )

    @field_validator('input_type')
    @classmethod
    def validate_input_type(cls, value):
        if value not in ("any", "text", "button_click", "image", "location", "audio"):
            raise ValueError(f"Unsupported input type '{value}'")
        return value

    @field_validator('timeout_action')
    @classmethod
    def validate_timeout_action(cls, value):
        if value is not None and value not in ("continue", "branch", "stop"):
            raise ValueError(f"Unsupported timeout action '{value}'")
        return value

    @field_validator('store_as')
    @classmethod
    def default_store_as(cls, value):
        return value.strip() or "user_response"


class WaitConfig(NodeConfig):
    duration: str = Field("1m", validation_alias=AliasChoices("duration", "delay"))

    @field_validator('duration', mode='before')
    @classmethod
    def coerce_duration(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ConditionRule(NodeConfig):
    field: str = Field("", validation_alias=AliasChoices("field", "variable"))
    operator: str = "=="
    value: Any = ""


class ConditionConfig(NodeConfig):
    logic: str = "ALL"
    conditions: List[ConditionRule] = Field(default_factory=list)
    field: Optional[str] = Field(None, validation_alias=AliasChoices("field", "variable"))
    operator: Optional[str] = None
    value: Any = None

    @field_validator('logic', mode='before')
    @classmethod
    def normalize_logic(cls, value):
        value = str(value or "ALL").upper()
        if value not in ("ALL", "ANY"):
            raise ValueError(f"Unsupported logic '{value}'")
        return value

    def rules(self) -> List[ConditionRule]:
        """Rules to evaluate; a single inline rule when no list is given."""
        if self.conditions:
            return self.conditions
        return [ConditionRule(
            field=self.field or "",
            operator=self.operator or "==",
            value="" if self.value is None else self.value,
        )]


class AbTestVariant(NodeConfig):
    id: str
    label: str = ""
    weight: float = Field(0, ge=0, validation_alias=AliasChoices("weight", "percentage"))


class AbTestConfig(NodeConfig):
    variants: List[AbTestVariant] = Field(
        default_factory=lambda: [
            AbTestVariant(id="a", label="Path A", weight=50),
            AbTestVariant(id="b", label="Path B", weight=50),
        ],
        validation_alias=AliasChoices("variants", "paths"),
    )
    sticky_key: Optional[str] = Field(None, validation_alias=AliasChoices("sticky_key", "stickyKey"))

    @field_validator('variants')
    @classmethod
    def validate_variants(cls, variants):
        if not variants:
            raise ValueError("At least one variant is required")
        return variants


class VariableConfig(NodeConfig):
    variable: str = Field("", validation_alias=AliasChoices("variable", "name"))
    operation: str = "set"
    value: Any = None
    operand1: Any = Field(None, validation_alias=AliasChoices("operand1", "left"))
    operator: str = "+"
    operand2: Any = Field(None, validation_alias=AliasChoices("operand2", "right"))

    @field_validator('operation')
    @classmethod
    def validate_operation(cls, value):
        if value not in ("set", "math"):
            raise ValueError(f"Unsupported operation '{value}'")
        return value


class HttpConfig(CapabilityNodeConfig):
    method: str = "GET"
    url: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None
    retries: int = Field(0, ge=0, le=10)
    retry_delay: float = Field(1.0, ge=0, validation_alias=AliasChoices("retry_delay", "retryDelay"))

    @field_validator('method')
    @classmethod
    def upper_method(cls, value):
        return value.upper()


class AiAgentConfig(CapabilityNodeConfig):
    system_prompt: str = Field(
        "You are a helpful assistant.",
        validation_alias=AliasChoices("system_prompt", "systemPrompt"),
    )
    user_prompt: str = Field("", validation_alias=AliasChoices("user_prompt", "userPrompt"))
    model: str = "gpt-4o"
    temperature: Optional[float] = None


NODE_CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.BUTTONS: ButtonsConfig,
    NodeType.WAIT_INPUT: WaitInputConfig,
    NodeType.WAIT: WaitConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.AB_TEST: AbTestConfig,
    NodeType.CRM: CapabilityNodeConfig,
    NodeType.EMAIL: CapabilityNodeConfig,
    NodeType.SMS: CapabilityNodeConfig,
    NodeType.HTTP: HttpConfig,
    NodeType.BILLING: CapabilityNodeConfig,
    NodeType.NOTIFICATION: CapabilityNodeConfig,
    NodeType.AI_AGENT: AiAgentConfig,
    NodeType.VARIABLE: VariableConfig,
}


def parse_node_config(node_type: NodeType, raw: Optional[Dict[str, Any]], node_id: str = "") -> NodeConfig:
    """Validate ``raw`` against the config model of ``node_type``.

    Invalid top-level fields are dropped one pass at a time; if the config
    still does not validate, the model's defaults are used.
    """
    model = NODE_CONFIG_MODELS[NodeType(node_type)]
    data = dict(raw or {})

    for _ in range(len(data) + 1):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            bad_keys = {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
            dropped = bad_keys & set(data)
            if not dropped:
                break
            logger.warning(
                f"Node {node_id or '?'} ({node_type}): ignoring invalid config fields {sorted(dropped)}"
            )
            for key in dropped:
                data.pop(key, None)

    logger.warning(f"Node {node_id or '?'} ({node_type}): config invalid, using defaults")
    return model()
