"""
Journey graph helpers.

Pure functions over JourneyNode rows: edge extraction, entry-node resolution,
next-node resolution and graph validation. Nothing here touches the database.

Edges live in ``node.connections``:

    {
        "nextNodeId": "<uuid>",
        "outputs": {"answered": "<uuid>", "failed": "<uuid>"},
        "branches": [{"condition": {...}, "nextNodeId": "<uuid>"}],   # CONDITION
        "defaultBranch": {"nextNodeId": "<uuid>"},                   # CONDITION
        "paths": [{"percentage": 50, "nextNodeId": "<uuid>"}]        # WEIGHTED_PATH
    }

Older journeys keep ``branches``/``defaultBranch``/``paths`` in ``node.config``;
both locations are read, connections first.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from services.common.result import NodeOutcome
from services.enums import JourneyNodeType
from services.journey_exceptions import JourneyRoutingError

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE
)
TEMPORARY_ID_PATTERN = re.compile(r'^([A-Z_]+)-(\d+)$')
DAY_MARKER_PREFIX = 'day-marker-'

BRANCHING_TYPES = (JourneyNodeType.CONDITION.value, JourneyNodeType.WEIGHTED_PATH.value)


@dataclass(frozen=True)
class NodeSnapshot:
    """Read-only copy of a JourneyNode that can outlive its database session"""
    id: str
    journey_id: str
    tenant_id: str
    type: str
    name: Optional[str]
    config: Dict[str, Any]
    connections: Dict[str, Any]
    created_at: Any = None

    @classmethod
    def from_model(cls, node) -> 'NodeSnapshot':
        return cls(
            id=node.id,
            journey_id=node.journey_id,
            tenant_id=node.tenant_id,
            type=node.type,
            name=node.name,
            config=dict(node.config or {}),
            connections=dict(node.connections or {}),
            created_at=node.created_at,
        )


def is_valid_node_id(node_id: Any) -> bool:
    """Node ids are UUIDs; anything else is an unresolved editor reference"""
    return isinstance(node_id, str) and bool(UUID_PATTERN.match(node_id))


def parse_temporary_id(node_id: Any) -> Optional[Tuple[str, int]]:
    """
    Split an editor placeholder id like ``SEND_SMS-1717171717171``.

    Returns:
        (type prefix, creation timestamp in milliseconds) or None
    """
    if not isinstance(node_id, str):
        return None
    match = TEMPORARY_ID_PATTERN.match(node_id)
    if not match:
        return None
    return match.group(1), int(match.group(2))


def _connections(node) -> Dict[str, Any]:
    return node.connections or {}


def _config(node) -> Dict[str, Any]:
    return node.config or {}


def branches_of(node) -> List[Dict[str, Any]]:
    return _connections(node).get('branches') or _config(node).get('branches') or []


def default_branch_of(node) -> Optional[Dict[str, Any]]:
    return _connections(node).get('defaultBranch') or _config(node).get('defaultBranch')


def paths_of(node) -> List[Dict[str, Any]]:
    return _connections(node).get('paths') or _config(node).get('paths') or []


def outputs_of(node) -> Dict[str, Any]:
    outputs = _connections(node).get('outputs')
    return outputs if isinstance(outputs, dict) else {}


def outbound_targets(node) -> List[str]:
    """Every node id this node can route to, in declaration order, without duplicates"""
    targets: List[str] = []

    def add(target):
        if target and target not in targets:
            targets.append(target)

    add(_connections(node).get('nextNodeId'))
    for target in outputs_of(node).values():
        add(target)
    for branch in branches_of(node):
        add(branch.get('nextNodeId'))
    default = default_branch_of(node)
    if default:
        add(default.get('nextNodeId'))
    for path in paths_of(node):
        add(path.get('nextNodeId'))
    return targets


def sort_by_creation(nodes: Iterable) -> List:
    return sorted(nodes, key=lambda n: (n.created_at is None, n.created_at, str(n.id)))


def find_entry_nodes(nodes: Sequence) -> List:
    """
    Nodes no other node points at, oldest first.

    When every node has an incoming edge the oldest node is returned on its own.
    """
    ordered = sort_by_creation(nodes)
    if not ordered:
        return []
    targeted = set()
    for node in ordered:
        targeted.update(outbound_targets(node))
    entries = [node for node in ordered if node.id not in targeted]
    return entries or ordered[:1]


def resolve_entry_node(nodes: Sequence):
    entries = find_entry_nodes(nodes)
    return entries[0] if entries else None


def node_day(node) -> int:
    """Journey day a node belongs to (1 when unset or malformed)"""
    try:
        return int(_config(node).get('day') or 1)
    except (TypeError, ValueError):
        return 1


def find_day_one_nodes(nodes: Sequence) -> List:
    """Entry nodes that belong to day 1 of a multi-day journey"""
    return [node for node in find_entry_nodes(nodes) if node_day(node) == 1]


def resolve_next_node_id(node, outcome: NodeOutcome) -> Optional[str]:
    """
    Pick the outbound edge for an outcome.

    Branching nodes choose their own edge, carried on ``outcome.next_node_id``.
    Failures follow ``outputs[outcome]``, then ``outputs.failed``; a failure with
    neither edge ends the journey. Everything else follows ``outputs[outcome]``,
    then ``nextNodeId``. None means the journey is complete.
    """
    if node.type in BRANCHING_TYPES:
        return outcome.next_node_id

    outputs = outputs_of(node)
    if outcome.outcome in outputs and outputs[outcome.outcome]:
        return outputs[outcome.outcome]
    if outcome.is_failure:
        return outputs.get('failed') or None
    return _connections(node).get('nextNodeId') or None


def check_target(node_id: str, known_ids: Optional[Iterable[str]] = None) -> None:
    """
    Raise JourneyRoutingError when an edge target is unusable.

    Args:
        node_id: Target id taken from an edge
        known_ids: Ids of nodes in the journey; membership is checked when given
    """
    if not is_valid_node_id(node_id):
        raise JourneyRoutingError(f"Cannot resolve temporary node ID: {node_id}", node_id)
    if known_ids is not None and node_id not in set(known_ids):
        raise JourneyRoutingError(f"Target node not found: {node_id}", node_id)


@dataclass
class GraphValidationReport:
    """Result of validating a journey graph before launch"""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    entry_node_ids: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.is_valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'entryNodeIds': list(self.entry_node_ids),
        }


def validate_journey_graph(nodes: Sequence) -> GraphValidationReport:
    """
    Check every edge of a journey before it goes live.

    Errors: no nodes, malformed or dangling edges, branching nodes without
    branches or paths, weighted paths with no positive weight.
    Warnings: nodes unreachable from any entry node.
    """
    report = GraphValidationReport()
    if not nodes:
        report.errors.append("Journey has no nodes")
        return report

    by_id = {node.id: node for node in nodes}
    for node in sort_by_creation(nodes):
        label = node.name or node.type
        for target in outbound_targets(node):
            if not is_valid_node_id(target):
                report.errors.append(f"{label}: unresolved node reference {target}")
            elif target not in by_id:
                report.errors.append(f"{label}: edge points at missing node {target}")

        if node.type == JourneyNodeType.CONDITION.value and not branches_of(node) \
                and not default_branch_of(node):
            report.errors.append(f"{label}: condition has no branches")
        if node.type == JourneyNodeType.WEIGHTED_PATH.value:
            paths = paths_of(node)
            if not paths:
                report.errors.append(f"{label}: weighted path has no paths")
            elif sum(_as_number(p.get('percentage')) for p in paths) <= 0:
                report.errors.append(f"{label}: weighted path percentages sum to zero")

    entries = find_entry_nodes(nodes)
    report.entry_node_ids = [node.id for node in entries]
    day_one = [node for node in entries if node_day(node) == 1]
    if len(day_one) > 1:
        report.warnings.append(
            f"{len(day_one)} day-1 entry nodes; only the earliest runs on immediate enrollment"
        )

    reachable = set()
    stack = [node.id for node in entries]
    while stack:
        current = stack.pop()
        if current in reachable or current not in by_id:
            continue
        reachable.add(current)
        stack.extend(outbound_targets(by_id[current]))
    for node in sort_by_creation(nodes):
        if node.id not in reachable:
            report.warnings.append(f"{node.name or node.type}: unreachable from any entry node")

    return report


def _as_number(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
