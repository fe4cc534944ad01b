from __future__ import annotations

import heapq
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from stackfold.errors import StackfoldError
from stackfold.graph import Graph, build
from stackfold.logger import logger
from stackfold.resource.model import (
    Action,
    ChangeKind,
    DiffResult,
    KindRegistry,
    ResourceDescriptor,
    ResourceId,
    classify_change,
    diff,
    iter_references,
)
from stackfold.state.store import RecordStatus, ResourceRecord, StateStore
from stackfold.utils import utc_now

# Destroy halves of a replacement sort before the matching create
_ACTION_RANK = {Action.DESTROY: 0, Action.CREATE: 1, Action.UPDATE: 2, Action.NOOP: 3}


def op_id_for(action: Action, rid: ResourceId) -> str:
    return f"{action.value}:{rid}"


class Operation(BaseModel):
    """
    One step of a plan.
    """

    model_config = ConfigDict(frozen=True)

    op_id: str = Field(..., description="Unique identifier of the operation in its plan.")
    resource: ResourceId = Field(..., description="The resource the operation acts on.")
    action: Action = Field(..., description="What the executor does.")
    changed: Tuple[str, ...] = Field((), description="Attributes that differ.")
    replace: bool = Field(
        False, description="Whether the operation is one half of a replacement."
    )
    verify: bool = Field(
        False,
        description="The record was left pending by an interrupted run and must be "
        "verified against the provider first.",
    )
    base_generation: int = Field(
        0,
        description="The record generation this operation expects to advance from.",
    )
    depends_on: Tuple[str, ...] = Field(
        (), description="Operations that must succeed first."
    )
    wave: int = Field(0, description="The wave the operation runs in.")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="The desired attributes."
    )
    dependencies: Tuple[ResourceId, ...] = Field(
        (), description="The resource dependencies to record on success."
    )

    def sort_key(self) -> Tuple[int, str, str, int]:
        return (
            self.wave,
            self.resource.kind,
            self.resource.name,
            _ACTION_RANK[self.action],
        )


class Plan(BaseModel):
    """
    An immutable, ordered list of operations. A plan only applies to the state it was
    made against; the one exception is the state left behind by an earlier apply of
    the same plan, so that an apply that stopped halfway can be resumed.
    """

    model_config = ConfigDict(frozen=True)

    operations: Tuple[Operation, ...] = ()
    destroy: bool = False
    state_serial: int = 0
    plan_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = Field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.operations)

    def get(self, op_id: str) -> Operation:
        for op in self.operations:
            if op.op_id == op_id:
                return op
        raise KeyError(op_id)

    def waves(self) -> List[List[Operation]]:
        result: List[List[Operation]] = []
        for op in self.operations:
            while len(result) <= op.wave:
                result.append([])
            result[op.wave].append(op)
        return result

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def has_changes(self) -> bool:
        return any(op.action != Action.NOOP for op in self.operations)

    def rows(self) -> List[List[Any]]:
        return [
            [
                op.wave,
                op.action.value + (" (replace)" if op.replace else ""),
                str(op.resource),
                ", ".join(op.changed),
                "verify" if op.verify else "",
            ]
            for op in self.operations
        ]

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")

    @classmethod
    def load(cls, path: Union[str, Path]) -> Plan:
        return cls.model_validate_json(Path(path).read_text())


class _Draft:
    def __init__(
        self,
        rid: ResourceId,
        action: Action,
        changed: Tuple[str, ...] = (),
        replace: bool = False,
        verify: bool = False,
        base_generation: int = 0,
        descriptor: Optional[ResourceDescriptor] = None,
        dependencies: Tuple[ResourceId, ...] = (),
    ) -> None:
        self.rid = rid
        self.action = action
        self.changed = changed
        self.replace = replace
        self.verify = verify
        self.base_generation = base_generation
        self.descriptor = descriptor
        self.dependencies = dependencies
        self.depends_on: Set[str] = set()
        self.op_id = op_id_for(action, rid)

    def key(self) -> Tuple[str, str, int]:
        return (self.rid.kind, self.rid.name, _ACTION_RANK[self.action])


def _referencing_fields(descriptor: ResourceDescriptor, target: ResourceId) -> List[str]:
    return sorted(
        key
        for key, value in descriptor.attributes.items()
        if any(ref.resource == target for ref in iter_references(value))
    )


def _diff_node(
    descriptor: ResourceDescriptor,
    record: Optional[ResourceRecord],
    kinds: KindRegistry,
) -> DiffResult:
    if record is not None and record.status == RecordStatus.PENDING:
        if record.previous_status != RecordStatus.APPLIED:
            return DiffResult(kind=ChangeKind.CREATE)
    return diff(descriptor, record, kinds)


def _assign_waves(drafts: Dict[str, _Draft]) -> List[Operation]:
    """
    Layers the operations into waves. Everything starts as early as possible, then
    destroys are pushed as late as their dependents allow so that a teardown runs in
    the reverse of the waves that created the resources.
    """
    remaining = {op_id: len(d.depends_on) for op_id, d in drafts.items()}
    dependents: Dict[str, List[str]] = {op_id: [] for op_id in drafts}
    for op_id, d in drafts.items():
        for dep in d.depends_on:
            dependents[dep].append(op_id)

    ready = [(d.key(), op_id) for op_id, d in drafts.items() if remaining[op_id] == 0]
    heapq.heapify(ready)
    wave: Dict[str, int] = {}
    order: List[str] = []
    while ready:
        _, op_id = heapq.heappop(ready)
        d = drafts[op_id]
        wave[op_id] = 1 + max((wave[dep] for dep in d.depends_on), default=-1)
        order.append(op_id)
        for dependent in dependents[op_id]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (drafts[dependent].key(), dependent))

    if len(wave) != len(drafts):
        # The graph is a DAG, so this would be a bug in how operations are wired
        raise StackfoldError(
            "Operations could not be ordered: "
            + ", ".join(sorted(set(drafts) - set(wave)))
        )

    last = max(wave.values(), default=0)
    for op_id in reversed(order):
        if drafts[op_id].action == Action.DESTROY:
            wave[op_id] = (
                min(wave[dependent] for dependent in dependents[op_id]) - 1
                if dependents[op_id]
                else last
            )

    operations = []
    for op_id, d in drafts.items():
        descriptor = d.descriptor
        operations.append(
            Operation(
                op_id=op_id,
                resource=d.rid,
                action=d.action,
                changed=d.changed,
                replace=d.replace,
                verify=d.verify,
                base_generation=d.base_generation,
                depends_on=tuple(sorted(d.depends_on)),
                wave=wave[op_id],
                attributes=dict(descriptor.attributes) if descriptor else {},
                dependencies=d.dependencies,
            )
        )
    return sorted(operations, key=lambda op: op.sort_key())


def plan(
    graph: Graph,
    state: Union[StateStore, Mapping[ResourceId, ResourceRecord]],
    kinds: KindRegistry,
    destroy: bool = False,
) -> Plan:
    """
    Diffs the desired resources against the recorded state and orders the resulting
    operations. No provider is contacted.

    Resources that are recorded but no longer desired are destroyed, dependents before
    their dependencies. A replacement becomes a destroy followed by a create; the
    create also waits for the resource's own dependencies.

    Args:
        graph (Graph): The dependency graph of the desired resources.
        state (StateStore | Mapping[ResourceId, ResourceRecord]): The recorded state.
        kinds (KindRegistry): The resource kinds.
        destroy (bool, optional): Whether the plan is a full teardown. Only used as metadata.

    Returns:
        Plan: The plan.
    """
    serial = state.serial if isinstance(state, StateStore) else 0
    records = state.load() if isinstance(state, StateStore) else dict(state)

    changes: Dict[ResourceId, DiffResult] = {}
    for rid in graph.order:
        descriptor = graph.nodes[rid]
        result = _diff_node(descriptor, records.get(rid), kinds)

        if result.kind in (ChangeKind.NO_CHANGE, ChangeKind.UPDATE):
            # Outputs of a new or replaced dependency are not known yet, so anything
            # referencing them changes too
            fields = set(result.fields)
            for dep in graph.dependencies(rid):
                if changes[dep].kind in (ChangeKind.CREATE, ChangeKind.REPLACE):
                    fields.update(_referencing_fields(descriptor, dep))
            if fields != set(result.fields):
                result = classify_change(kinds.get(descriptor.kind), sorted(fields))

        changes[rid] = result

    removed = sorted(
        rid
        for rid, record in records.items()
        if rid not in graph
        and record.status in (RecordStatus.APPLIED, RecordStatus.PENDING)
    )

    drafts: Dict[str, _Draft] = {}
    final_op: Dict[ResourceId, str] = {}
    destroy_op: Dict[ResourceId, str] = {}

    def add(draft: _Draft) -> _Draft:
        drafts[draft.op_id] = draft
        return draft

    for rid in graph.order:
        descriptor = graph.nodes[rid]
        record = records.get(rid)
        result = changes[rid]
        generation = record.generation if record else 0
        verify = record is not None and record.status == RecordStatus.PENDING

        if result.kind == ChangeKind.REPLACE:
            d = add(
                _Draft(
                    rid,
                    Action.DESTROY,
                    result.fields,
                    replace=True,
                    verify=verify,
                    base_generation=generation,
                )
            )
            destroy_op[rid] = d.op_id
            c = add(
                _Draft(
                    rid,
                    Action.CREATE,
                    result.fields,
                    replace=True,
                    base_generation=generation + 1,
                    descriptor=descriptor,
                    dependencies=graph.dependencies(rid),
                )
            )
            c.depends_on.add(d.op_id)
            final_op[rid] = c.op_id
            continue

        action = {
            ChangeKind.CREATE: Action.CREATE,
            ChangeKind.UPDATE: Action.UPDATE,
            ChangeKind.NO_CHANGE: Action.NOOP,
        }[result.kind]
        d = add(
            _Draft(
                rid,
                action,
                result.fields,
                verify=verify,
                base_generation=generation,
                descriptor=descriptor,
                dependencies=graph.dependencies(rid),
            )
        )
        final_op[rid] = d.op_id

    for rid in removed:
        record = records[rid]
        d = add(
            _Draft(
                rid,
                Action.DESTROY,
                verify=record.status == RecordStatus.PENDING,
                base_generation=record.generation,
            )
        )
        destroy_op[rid] = d.op_id

    # Desired resources wait for whatever produces the new version of their dependencies
    for rid in graph.order:
        draft = drafts[final_op[rid]]
        for dep in graph.dependencies(rid):
            draft.depends_on.add(final_op[dep])

    # Teardown runs dependents first. Dependencies are taken from the records since
    # removed resources have no descriptor anymore.
    for rid, op_id in destroy_op.items():
        for other, other_op in destroy_op.items():
            if other != rid and rid in records[other].dependencies:
                drafts[op_id].depends_on.add(other_op)

        if rid not in graph:
            # A surviving resource that used the removed one must stop using it first
            for survivor, survivor_op in final_op.items():
                record = records.get(survivor)
                if record is not None and rid in record.dependencies:
                    drafts[op_id].depends_on.add(survivor_op)

    operations = _assign_waves(drafts)
    result_plan = Plan(
        operations=tuple(operations), destroy=destroy, state_serial=serial
    )
    logger.debug(
        "Planned "
        + ", ".join(f"{count} {action}" for action, count in result_plan.summary().items())
    )
    return result_plan


def plan_destroy(
    state: Union[StateStore, Mapping[ResourceId, ResourceRecord]],
    kinds: KindRegistry,
) -> Plan:
    """
    Plans the teardown of every recorded resource.
    """
    return plan(build([]), state, kinds, destroy=True)
