from typing import Any, Dict, Sequence

from conftest import res

from stackfold.graph import build
from stackfold.plan import Plan, plan, plan_destroy
from stackfold.resource.model import Action, KindRegistry, ResourceDescriptor, ResourceId
from stackfold.state.store import (
    RecordStatus,
    ResourceRecord,
    StateStore,
    TransitionResult,
)


def applied(
    kind: str,
    name: str,
    deps: Sequence[str] = (),
    generation: int = 1,
    status: RecordStatus = RecordStatus.APPLIED,
    **attributes: Any,
) -> ResourceRecord:
    attributes = {"name": name, **attributes}
    return ResourceRecord(
        kind=kind,
        name=name,
        status=status,
        generation=generation,
        attributes=attributes,
        resolved=attributes,
        provider_ids={"id": f"{kind}-{name}"},
        dependencies=[ResourceId.parse(d) for d in deps],
    )


def state(*records: ResourceRecord) -> Dict[ResourceId, ResourceRecord]:
    return {r.id: r for r in records}


def make_plan(
    descriptors: Sequence[ResourceDescriptor], records: Any, kinds: KindRegistry
) -> Plan:
    return plan(build(list(descriptors), kinds), records, kinds)


def summary(p: Plan) -> list:
    return [(op.wave, op.op_id) for op in p.operations]


PIPELINE = [
    res("registry", "main"),
    res("image", "app", repo="${registry.main.url}"),
    res("workload", "app", image="${image.app.url}"),
]


def test_empty_state_creates_everything(kinds: KindRegistry) -> None:
    p = make_plan(PIPELINE, {}, kinds)

    assert summary(p) == [
        (0, "create:registry.main"),
        (1, "create:image.app"),
        (2, "create:workload.app"),
    ]
    assert p.get("create:image.app").depends_on == ("create:registry.main",)
    assert p.get("create:workload.app").dependencies == (ResourceId("image", "app"),)
    assert p.has_changes()


def test_before_hints_are_recorded_as_dependencies(kinds: KindRegistry) -> None:
    p = make_plan(
        [res("image", "app", before=["cluster.main"]), res("cluster", "main")], {}, kinds
    )

    assert p.get("create:cluster.main").dependencies == (ResourceId("image", "app"),)
    assert p.get("create:image.app").dependencies == ()


def test_matching_state_is_a_no_op(kinds: KindRegistry) -> None:
    records = state(
        applied("registry", "main"),
        applied("image", "app", ["registry.main"], repo="${registry.main.url}"),
        applied("workload", "app", ["image.app"], image="${image.app.url}"),
    )

    p = make_plan(PIPELINE, records, kinds)

    assert [op.action for op in p.operations] == [Action.NOOP] * 3
    assert not p.has_changes()
    assert p.summary() == {"create": 0, "update": 0, "destroy": 0, "no-op": 3}


def test_update(kinds: KindRegistry) -> None:
    records = state(applied("workload", "app", generation=4, replicas=1))

    p = make_plan([res("workload", "app", replicas=3)], records, kinds)

    op = p.operations[0]
    assert op.action == Action.UPDATE
    assert op.changed == ("replicas",)
    assert op.base_generation == 4
    assert op.attributes == {"name": "app", "replicas": 3}


def test_replacement_propagates_to_non_updatable_dependents(
    kinds: KindRegistry,
) -> None:
    records = state(
        applied("network", "main", cidr="10.0.0.0/16"),
        applied("subnet", "a", ["network.main"], vpc="${network.main.id}"),
    )
    desired = [
        res("network", "main", cidr="10.1.0.0/16"),
        res("subnet", "a", vpc="${network.main.id}"),
    ]

    p = make_plan(desired, records, kinds)

    assert summary(p) == [
        (0, "destroy:subnet.a"),
        (1, "destroy:network.main"),
        (2, "create:network.main"),
        (3, "create:subnet.a"),
    ]
    assert all(op.replace for op in p.operations)
    assert p.get("create:network.main").base_generation == 2
    assert p.get("create:subnet.a").changed == ("vpc",)


def test_replacement_updates_referencing_dependents(kinds: KindRegistry) -> None:
    records = state(
        applied("cluster", "main", zone="a"),
        applied(
            "workload", "app", ["cluster.main"], endpoint="${cluster.main.url}", replicas=1
        ),
    )
    desired = [
        res("cluster", "main", zone="b"),
        res("workload", "app", endpoint="${cluster.main.url}", replicas=1),
    ]

    p = make_plan(desired, records, kinds)

    update = p.get("update:workload.app")
    assert update.changed == ("endpoint",)
    assert update.depends_on == ("create:cluster.main",)
    assert p.get("create:cluster.main").depends_on == ("destroy:cluster.main",)
    assert update.wave == 2


def test_removed_resources_are_destroyed_dependents_first(kinds: KindRegistry) -> None:
    records = state(
        applied("registry", "main"),
        applied("image", "app", ["registry.main"]),
        applied("workload", "other", status=RecordStatus.DESTROYED),
        applied("workload", "broken", status=RecordStatus.FAILED),
    )

    p = make_plan([], records, kinds)

    assert summary(p) == [(0, "destroy:image.app"), (1, "destroy:registry.main")]
    assert p.get("destroy:registry.main").depends_on == ("destroy:image.app",)


def test_removed_resource_waits_for_survivors(kinds: KindRegistry) -> None:
    records = state(
        applied("registry", "old"),
        applied("workload", "app", ["registry.old"], image="${registry.old.url}"),
    )

    p = make_plan([res("workload", "app", image="nginx")], records, kinds)

    assert summary(p) == [(0, "update:workload.app"), (1, "destroy:registry.old")]
    assert p.get("destroy:registry.old").depends_on == ("update:workload.app",)


def test_interrupted_records_are_verified(kinds: KindRegistry) -> None:
    records = state(
        applied("workload", "updated", status=RecordStatus.PENDING),
        applied("workload", "created", status=RecordStatus.PENDING, generation=0),
        applied("registry", "removed", status=RecordStatus.PENDING),
    )
    records[ResourceId("workload", "updated")].previous_status = RecordStatus.APPLIED

    p = make_plan([res("workload", "updated"), res("workload", "created")], records, kinds)

    updated = p.get("no-op:workload.updated")
    assert updated.verify
    created = p.get("create:workload.created")
    assert created.verify
    assert p.get("destroy:registry.removed").verify


def test_plan_destroy(kinds: KindRegistry) -> None:
    records = state(
        applied("network", "main"),
        applied("subnet", "a", ["network.main"]),
        applied("subnet", "b", ["network.main"]),
        applied("cluster", "main", ["subnet.a", "subnet.b"]),
    )

    p = plan_destroy(records, kinds)

    assert p.destroy
    assert summary(p) == [
        (0, "destroy:cluster.main"),
        (1, "destroy:subnet.a"),
        (1, "destroy:subnet.b"),
        (2, "destroy:network.main"),
    ]


def test_plan_records_state_serial(kinds: KindRegistry) -> None:
    store = StateStore()
    handle = store.begin_transition(ResourceId("registry", "main"), Action.CREATE)
    store.commit(handle, TransitionResult(attributes={"name": "main"}))

    p = make_plan([res("registry", "main")], store, kinds)

    assert p.state_serial == store.serial == 2
    assert not p.has_changes()


def test_save_and_load(tmp_path: Any, kinds: KindRegistry) -> None:
    p = make_plan(PIPELINE, {}, kinds)
    path = tmp_path / "plans" / "plan.json"

    p.save(path)

    assert Plan.load(path) == p


def test_rows(kinds: KindRegistry) -> None:
    records = state(applied("cluster", "main", zone="a"))

    rows = make_plan([res("cluster", "main", zone="b")], records, kinds).rows()

    assert rows == [
        [0, "destroy (replace)", "cluster.main", "zone", ""],
        [1, "create (replace)", "cluster.main", "zone", ""],
    ]
