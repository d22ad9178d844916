"""Workflow graph loading, structural validation and definition management."""

import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..models.core import (
    Edge,
    Node,
    NodeType,
    ValidationResult,
    Workflow,
    WorkflowDefinition,
    WorkflowSummary,
)
from ..storage.store import ExecutionStore
from .exceptions import GraphValidationError, ValidationErrorKind
from .logging import get_logger

logger = get_logger(__name__)

Issue = Tuple[ValidationErrorKind, str]


class ValidatedGraph:
    """Immutable, structurally valid view of a workflow definition."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._nodes: Dict[str, Node] = {node.id: node for node in definition.nodes}
        self._outgoing: Dict[str, List[Edge]] = {node.id: [] for node in definition.nodes}
        for edge in definition.edges:
            self._outgoing[edge.source].append(edge)
        self.trigger = next(node for node in definition.nodes if node.type == NodeType.TRIGGER)

    @property
    def nodes(self) -> List[Node]:
        return list(self.definition.nodes)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing.get(node_id, []))

    def handles(self, node_id: str) -> List[Optional[str]]:
        """Exit handles present on a node, None for the default exit."""
        return [edge.source_handle for edge in self._outgoing.get(node_id, [])]

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """Target of the edge leaving ``node_id`` through ``handle``.

        Returns None when no edge matches, which ends the run.
        """
        matches = [edge for edge in self._outgoing.get(node_id, []) if edge.source_handle == handle]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"Node {node_id} has {len(matches)} edges for handle {handle!r}; "
                f"following the first to {matches[0].target}"
            )
        return matches[0].target

    def has_cycles(self) -> bool:
        """Check if the graph contains cycles using iterative DFS."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in self._nodes}
        for start in self._nodes:
            if color[start] != WHITE:
                continue
            stack = [(start, iter(self._outgoing[start]))]
            color[start] = GREY
            while stack:
                current, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    color[current] = BLACK
                    stack.pop()
                    continue
                if color[edge.target] == GREY:
                    return True
                if color[edge.target] == WHITE:
                    color[edge.target] = GREY
                    stack.append((edge.target, iter(self._outgoing[edge.target])))
        return False


def _parse_definition(definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
    if isinstance(definition, WorkflowDefinition):
        return definition
    try:
        return WorkflowDefinition.model_validate(definition)
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise GraphValidationError(
            f"Malformed workflow definition: {'; '.join(problems)}",
            kind=ValidationErrorKind.MALFORMED_DEFINITION,
            validation_errors=problems,
        )


def _find_reachable(start: str, definition: WorkflowDefinition) -> set:
    adjacency: Dict[str, List[str]] = {}
    for edge in definition.edges:
        adjacency.setdefault(edge.source, []).append(edge.target)

    reachable = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbor in adjacency.get(current, []):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)
    return reachable


def collect_issues(definition: WorkflowDefinition) -> Tuple[List[Issue], List[str]]:
    """Return (errors, warnings) for a parsed definition."""
    errors: List[Issue] = []
    warnings: List[str] = []

    if not definition.nodes:
        errors.append((ValidationErrorKind.EMPTY_GRAPH, "Workflow has no nodes"))
        return errors, warnings

    seen = set()
    for node in definition.nodes:
        if node.id in seen:
            errors.append((ValidationErrorKind.DUPLICATE_NODE_ID, f"Duplicate node id '{node.id}'"))
        seen.add(node.id)

    triggers = [node.id for node in definition.nodes if node.type == NodeType.TRIGGER]
    if not triggers:
        errors.append((ValidationErrorKind.MISSING_TRIGGER, "Workflow has no trigger node"))
    elif len(triggers) > 1:
        errors.append((
            ValidationErrorKind.MULTIPLE_TRIGGERS,
            f"Workflow has {len(triggers)} trigger nodes: {', '.join(triggers)}"
        ))

    dangling = False
    for edge in definition.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                dangling = True
                errors.append((
                    ValidationErrorKind.DANGLING_EDGE,
                    f"Edge {edge.id or f'{edge.source}->{edge.target}'} references unknown node '{endpoint}'"
                ))

    if len(triggers) == 1 and not dangling:
        unreachable = sorted(seen - _find_reachable(triggers[0], definition))
        if unreachable:
            errors.append((
                ValidationErrorKind.UNREACHABLE_NODE,
                f"Nodes not reachable from the trigger: {', '.join(unreachable)}"
            ))

    for edge in definition.edges:
        if edge.source == edge.target:
            warnings.append(f"Node '{edge.source}' has an edge to itself")

    for node_id in triggers:
        if any(edge.target == node_id for edge in definition.edges):
            warnings.append(f"Trigger '{node_id}' has incoming edges; they are never followed on resume")

    handle_counts: Dict[Tuple[str, Optional[str]], int] = {}
    for edge in definition.edges:
        key = (edge.source, edge.source_handle)
        handle_counts[key] = handle_counts.get(key, 0) + 1
    for (source, handle), count in handle_counts.items():
        if count > 1:
            label = handle if handle else "default"
            warnings.append(f"Node '{source}' has {count} edges on the {label} exit; only the first is followed")

    if not errors and ValidatedGraph(definition).has_cycles():
        warnings.append("Workflow contains cycles; runs are bounded by the step limit")

    return errors, warnings


def load_graph(definition: Union[WorkflowDefinition, Dict[str, Any]],
               workflow_id: Optional[str] = None) -> ValidatedGraph:
    """Parse and validate a definition.

    Raises:
        GraphValidationError: with the kind of the first problem found
    """
    try:
        parsed = _parse_definition(definition)
    except GraphValidationError as e:
        if workflow_id:
            e.add_context(workflow_id=workflow_id)
        raise

    errors, warnings = collect_issues(parsed)
    if errors:
        kind, message = errors[0]
        raise GraphValidationError(
            f"Workflow validation failed: {message}",
            kind=kind,
            validation_errors=[msg for _, msg in errors],
            workflow_id=workflow_id,
        )
    for warning in warnings:
        logger.debug(f"Workflow {workflow_id or '<unsaved>'}: {warning}")
    return ValidatedGraph(parsed)


def validate_definition(definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
    """Non-raising validation returning every error and warning."""
    try:
        parsed = _parse_definition(definition)
    except GraphValidationError as e:
        return ValidationResult(
            is_valid=False,
            errors=e.validation_errors,
            error_kind=e.kind.value,
        )
    errors, warnings = collect_issues(parsed)
    return ValidationResult(
        is_valid=not errors,
        errors=[msg for _, msg in errors],
        warnings=warnings,
        error_kind=errors[0][0].value if errors else None,
    )


class GraphManager:
    """Manages workflow definitions: validation and storage."""

    def __init__(self, store: ExecutionStore):
        self._store = store

    def create_workflow(
        self,
        name: str,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        description: str = "",
        is_active: bool = True,
        workflow_id: Optional[str] = None,
    ) -> Workflow:
        """
        Validate and store a new workflow.

        Raises:
            GraphValidationError: If the definition is structurally invalid
            StorageError: If storage operation fails
        """
        if not name or not name.strip():
            raise GraphValidationError(
                "Workflow name cannot be empty",
                kind=ValidationErrorKind.MALFORMED_DEFINITION,
            )
        graph = load_graph(definition)
        workflow = Workflow(
            id=workflow_id or str(uuid.uuid4()),
            name=name.strip(),
            description=description or "",
            definition=graph.definition,
            is_active=is_active,
        )
        saved = self._store.save_workflow(workflow)
        logger.info(f"Created workflow '{saved.name}' with ID: {saved.id}")
        return saved

    def update_workflow(self, workflow_id: str,
                        definition: Union[WorkflowDefinition, Dict[str, Any]],
                        name: Optional[str] = None,
                        description: Optional[str] = None) -> Workflow:
        existing = self._store.get_workflow(workflow_id)
        graph = load_graph(definition, workflow_id=workflow_id)
        updated = existing.model_copy(update={
            "definition": graph.definition,
            "name": name.strip() if name else existing.name,
            "description": existing.description if description is None else description,
        })
        return self._store.save_workflow(updated)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self._store.get_workflow(workflow_id)

    def list_workflows(self, active_only: bool = False) -> List[WorkflowSummary]:
        summaries = []
        for workflow in self._store.list_workflows(active_only=active_only):
            trigger = next(
                (node for node in workflow.definition.nodes if node.type == NodeType.TRIGGER), None
            )
            summaries.append(WorkflowSummary(
                id=workflow.id,
                name=workflow.name,
                description=workflow.description,
                is_active=workflow.is_active,
                trigger_type=_trigger_type(trigger),
                node_count=len(workflow.definition.nodes),
                created_at=workflow.created_at,
            ))
        return summaries

    def delete_workflow(self, workflow_id: str) -> bool:
        return self._store.delete_workflow(workflow_id)

    def set_active(self, workflow_id: str, active: bool) -> Workflow:
        workflow = self._store.set_workflow_active(workflow_id, active)
        logger.info(f"Workflow {workflow_id} {'activated' if active else 'deactivated'}")
        return workflow

    def validate(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        return validate_definition(definition)


def _trigger_type(trigger: Optional[Node]) -> Optional[str]:
    if trigger is None:
        return None
    value = trigger.config.get("triggerType") or trigger.config.get("trigger_type")
    return str(value) if value else "manual"
