import threading
import time
from typing import Any, Dict, List, Tuple
from unittest.mock import patch

import pytest
from conftest import Engine, FakeProvider, res

from stackfold.errors import CycleError, ProviderError
from stackfold.executor import CANCELLED, Executor, OperationStatus
from stackfold.resource.model import Action, ResourceId
from stackfold.state.store import RecordStatus, StateStore, TransitionResult


def pipeline() -> list:
    return [
        res("registry", "main"),
        res("image", "app", repositoryUrl="${registry.main.url}"),
        res("cluster", "main", zone="a", depends_on=["image.app"]),
        res("workload", "app", endpoint="${cluster.main.url}"),
    ]


def test_pipeline_runs_in_dependency_waves(
    engine: Engine, journal: List[Tuple[str, str]]
) -> None:
    plan, result = engine.apply(pipeline())

    assert [[op.op_id for op in wave] for wave in plan.waves()] == [
        ["create:registry.main"],
        ["create:image.app"],
        ["create:cluster.main"],
        ["create:workload.app"],
    ]
    assert result.ok
    assert len(result.succeeded) == 4
    assert [entry for entry in journal if entry[0] == "create"] == [
        ("create", "registry.main"),
        ("create", "image.app"),
        ("create", "cluster.main"),
        ("create", "workload.app"),
    ]

    record = engine.store.get(ResourceId("image", "app"))
    assert record is not None
    assert record.status == RecordStatus.APPLIED
    assert record.generation == 1
    assert record.resolved["repositoryUrl"] == "fake://registry-main"
    assert record.attributes["repositoryUrl"] == "${registry.main.url}"
    assert record.dependencies == [ResourceId("registry", "main")]


def test_failed_push_skips_everything_downstream(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    fakes["image"].errors["create"] = ProviderError("push failed")

    _, result = engine.apply(pipeline())

    assert result.status_of("create:registry.main") == OperationStatus.SUCCEEDED
    assert result.status_of("create:image.app") == OperationStatus.FAILED
    assert result.status_of("create:cluster.main") == OperationStatus.SKIPPED
    assert result.status_of("create:workload.app") == OperationStatus.SKIPPED
    assert result.states["create:cluster.main"].skipped_due_to == "create:image.app"
    assert result.states["create:workload.app"].skipped_due_to == "create:image.app"
    assert result.states["create:image.app"].error == "push failed"
    assert not result.ok

    assert fakes["cluster"].calls == []
    assert fakes["workload"].calls == []

    record = engine.store.get(ResourceId("image", "app"))
    assert record is not None
    assert record.status == RecordStatus.FAILED
    assert record.last_error == "push failed"
    assert engine.store.get(ResourceId("cluster", "main")) is None


def test_failure_does_not_stop_independent_siblings(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    fakes["image"].errors["create"] = ProviderError("push failed")

    _, result = engine.apply(
        [
            res("registry", "main"),
            res("image", "app", repositoryUrl="${registry.main.url}"),
            res("workload", "other", registry="${registry.main.id}"),
        ]
    )

    assert result.status_of("create:image.app") == OperationStatus.FAILED
    assert result.status_of("create:workload.other") == OperationStatus.SUCCEEDED


def test_mutual_dependency_is_rejected_before_any_call(
    engine: Engine, journal: List[Tuple[str, str]]
) -> None:
    with pytest.raises(CycleError) as e:
        engine.plan(
            [
                res("image", "app", depends_on=["cluster.main"]),
                res("cluster", "main", depends_on=["image.app"]),
            ]
        )
    assert e.value.path[0] == e.value.path[-1]
    assert set(e.value.path) == {ResourceId("image", "app"), ResourceId("cluster", "main")}
    assert journal == []


def test_replanning_an_applied_stack_is_a_no_op(engine: Engine) -> None:
    engine.apply(pipeline())

    plan = engine.plan(pipeline())

    assert not plan.has_changes()
    assert {op.action for op in plan.operations} == {Action.NOOP}


def test_applying_the_same_plan_twice_creates_once(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    plan = engine.plan(pipeline())
    engine.executor().apply(plan)
    result = engine.executor().apply(plan)

    assert result.ok
    assert {s.performed for s in result.states.values()} == {Action.NOOP}
    for kind in ("registry", "image", "cluster", "workload"):
        assert fakes[kind].count("create") == 1


def test_resuming_a_partially_failed_plan(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    plan = engine.plan(pipeline())
    fakes["cluster"].errors["create"] = ProviderError("quota exceeded")
    first = engine.executor().apply(plan)
    assert first.status_of("create:cluster.main") == OperationStatus.FAILED

    del fakes["cluster"].errors["create"]
    second = engine.executor().apply(plan)

    assert second.ok
    assert second.states["create:registry.main"].performed == Action.NOOP
    assert second.states["create:cluster.main"].performed == Action.CREATE
    assert second.states["create:workload.app"].performed == Action.CREATE
    assert fakes["registry"].count("create") == 1
    assert fakes["image"].count("create") == 1


def test_teardown_reverses_creation_order(
    engine: Engine, journal: List[Tuple[str, str]]
) -> None:
    chain = [
        res("network", "main", cidr="10.0.0.0/16"),
        res("subnet", "a", vpc="${network.main.id}"),
        res("cluster", "main", subnet="${subnet.a.id}"),
    ]
    engine.apply(chain)
    del journal[:]

    plan, result = engine.destroy()

    assert [[op.op_id for op in wave] for wave in plan.waves()] == [
        ["destroy:cluster.main"],
        ["destroy:subnet.a"],
        ["destroy:network.main"],
    ]
    assert result.ok
    assert journal == [
        ("delete", "cluster.main"),
        ("delete", "subnet.a"),
        ("delete", "network.main"),
    ]
    for record in engine.store.load().values():
        assert record.status == RecordStatus.DESTROYED
        assert record.provider_ids == {}


def test_branched_teardown_reverses_creation_waves(engine: Engine) -> None:
    creation, _ = engine.apply(
        [
            res("network", "c"),
            res("subnet", "b", vpc="${network.c.id}"),
            res("workload", "d", vpc="${network.c.id}"),
            res("cluster", "a", subnet="${subnet.b.id}"),
        ]
    )

    plan, result = engine.destroy()

    created = [[str(op.resource) for op in wave] for wave in creation.waves()]
    assert created == [["network.c"], ["subnet.b", "workload.d"], ["cluster.a"]]
    assert [[str(op.resource) for op in wave] for wave in plan.waves()] == [
        ["cluster.a"],
        ["subnet.b", "workload.d"],
        ["network.c"],
    ]
    assert result.ok


def test_teardown_honours_before_hints(
    engine: Engine, journal: List[Tuple[str, str]]
) -> None:
    creation, _ = engine.apply(
        [res("image", "app", before=["cluster.main"]), res("cluster", "main")]
    )
    assert [[op.op_id for op in wave] for wave in creation.waves()] == [
        ["create:image.app"],
        ["create:cluster.main"],
    ]
    record = engine.store.get(ResourceId("cluster", "main"))
    assert record is not None
    assert record.dependencies == [ResourceId("image", "app")]
    del journal[:]

    plan, result = engine.destroy()

    assert [[op.op_id for op in wave] for wave in plan.waves()] == [
        ["destroy:cluster.main"],
        ["destroy:image.app"],
    ]
    assert result.ok
    assert journal == [("delete", "cluster.main"), ("delete", "image.app")]


def test_replacement_destroys_then_recreates(
    engine: Engine, fakes: Dict[str, FakeProvider], journal: List[Tuple[str, str]]
) -> None:
    engine.apply(pipeline())
    del journal[:]

    changed = pipeline()
    changed[2] = res("cluster", "main", zone="b", depends_on=["image.app"])
    plan, result = engine.apply(changed)

    assert [op.op_id for op in plan.operations if op.action != Action.NOOP] == [
        "destroy:cluster.main",
        "create:cluster.main",
        "update:workload.app",
    ]
    assert result.ok
    assert journal == [
        ("delete", "cluster.main"),
        ("create", "cluster.main"),
        ("update", "workload.app"),
    ]
    record = engine.store.get(ResourceId("cluster", "main"))
    assert record is not None
    assert record.generation == 3
    assert record.attributes["zone"] == "b"


def test_removed_resource_is_destroyed(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    engine.apply(pipeline())

    plan, result = engine.apply(pipeline()[:3])

    assert [op.op_id for op in plan.operations if op.action != Action.NOOP] == [
        "destroy:workload.app"
    ]
    assert result.ok
    assert fakes["workload"].resources == {}


def test_retryable_errors_are_retried(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    fakes["registry"].transient["create"] = 2

    _, result = engine.apply([res("registry", "main")])

    assert result.ok
    assert fakes["registry"].count("create") == 3


def test_retries_are_bounded(engine: Engine, fakes: Dict[str, FakeProvider]) -> None:
    fakes["registry"].transient["create"] = 5

    _, result = engine.apply([res("registry", "main")])

    assert result.status_of("create:registry.main") == OperationStatus.FAILED
    assert fakes["registry"].count("create") == engine.config.retryLimit


def test_non_retryable_errors_fail_immediately(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    fakes["registry"].errors["create"] = ProviderError("denied", retryable=False)

    _, result = engine.apply([res("registry", "main")])

    assert result.status_of("create:registry.main") == OperationStatus.FAILED
    assert fakes["registry"].count("create") == 1


def test_call_deadline(
    store: StateStore, providers: Any, kinds: Any, provider_config: Any, fakes: Any
) -> None:
    config = provider_config.model_copy(update={"callTimeout": 0.05})
    release = threading.Event()
    fakes["registry"].on_call = lambda verb, name: release.wait(2)

    try:
        _, result = Engine(store, providers, kinds, config).apply([res("registry", "main")])
    finally:
        release.set()

    state = result.states["create:registry.main"]
    assert state.status == OperationStatus.FAILED
    assert "did not finish within" in (state.error or "")
    assert fakes["registry"].count("create") == 1

    # The create may still land, so the record waits for verification
    record = store.get(ResourceId("registry", "main"))
    assert record is not None
    assert record.status == RecordStatus.PENDING

    for _ in range(200):
        if fakes["registry"].resources:
            break
        time.sleep(0.01)

    plan, result = Engine(store, providers, kinds, config).apply([res("registry", "main")])

    assert plan.get("create:registry.main").verify
    assert result.ok
    assert result.states["create:registry.main"].performed == Action.NOOP
    assert fakes["registry"].count("create") == 1


def test_concurrency_limit(
    store: StateStore, providers: Any, kinds: Any, provider_config: Any, fakes: Any
) -> None:
    config = provider_config.model_copy(update={"concurrencyLimit": 2})
    fakes["workload"].delay = 0.02

    plan, result = Engine(store, providers, kinds, config).apply(
        [res("workload", f"w{i}") for i in range(6)]
    )

    assert len(plan.waves()) == 1
    assert result.ok
    assert fakes["workload"].max_active <= 2


def test_cancel_skips_operations_not_started(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    executor = engine.executor()
    fakes["registry"].on_call = lambda verb, name: executor.cancel()

    result = executor.apply(engine.plan(pipeline()))

    assert result.cancelled
    assert result.status_of("create:registry.main") == OperationStatus.SUCCEEDED
    for op_id in ("create:image.app", "create:cluster.main", "create:workload.app"):
        assert result.status_of(op_id) == OperationStatus.SKIPPED
        assert result.states[op_id].skipped_due_to == CANCELLED
    assert fakes["image"].calls == []


def _interrupt(path: str, rid: ResourceId, action: Action, attrs: dict) -> None:
    """
    Leaves a pending record behind, as a process killed mid-transition would.
    """
    crashed = StateStore(path)
    crashed.begin_transition(
        rid, action, TransitionResult(attributes=attrs, resolved=attrs)
    )


def test_interrupted_create_of_an_existing_resource_is_adopted(
    tmp_path: Any, providers: Any, kinds: Any, provider_config: Any, fakes: Any
) -> None:
    path = str(tmp_path / "state.json")
    attrs = {"name": "main"}
    _interrupt(path, ResourceId("registry", "main"), Action.CREATE, attrs)
    fakes["registry"].resources["registry-main"] = dict(attrs)

    engine = Engine(StateStore(path), providers, kinds, provider_config)
    plan = engine.plan([res("registry", "main")])
    assert plan.operations[0].verify

    result = engine.executor().apply(plan)

    assert result.ok
    assert result.states["create:registry.main"].performed == Action.NOOP
    assert fakes["registry"].count("create") == 0
    record = engine.store.get(ResourceId("registry", "main"))
    assert record is not None
    assert record.status == RecordStatus.APPLIED
    assert record.provider_ids == {"id": "registry-main"}


def test_interrupted_create_without_resource_needs_an_operator(
    tmp_path: Any, providers: Any, kinds: Any, provider_config: Any, fakes: Any
) -> None:
    path = str(tmp_path / "state.json")
    _interrupt(path, ResourceId("registry", "main"), Action.CREATE, {"name": "main"})

    engine = Engine(StateStore(path), providers, kinds, provider_config)
    result = engine.executor().apply(engine.plan([res("registry", "main")]))

    assert result.status_of("create:registry.main") == OperationStatus.FAILED
    assert "interrupted create" in (result.states["create:registry.main"].error or "")
    assert fakes["registry"].count("create") == 0


def test_interrupted_destroy_that_completed(
    tmp_path: Any, providers: Any, kinds: Any, provider_config: Any, fakes: Any
) -> None:
    path = str(tmp_path / "state.json")
    engine = Engine(StateStore(path), providers, kinds, provider_config)
    engine.apply([res("registry", "main")])

    _interrupt(path, ResourceId("registry", "main"), Action.DESTROY, {})
    del fakes["registry"].resources["registry-main"]

    engine = Engine(StateStore(path), providers, kinds, provider_config)
    plan, result = engine.destroy()

    assert plan.operations[0].verify
    assert result.ok
    assert result.states["destroy:registry.main"].performed == Action.NOOP
    assert fakes["registry"].count("delete") == 0
    record = engine.store.get(ResourceId("registry", "main"))
    assert record is not None
    assert record.status == RecordStatus.DESTROYED


def test_pending_record_unknown_to_the_plan_is_refused(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    plan = engine.plan([res("registry", "main")])
    engine.store.begin_transition(ResourceId("registry", "main"), Action.CREATE)

    result = Executor(
        engine.store, engine.providers, engine.kinds, engine.config
    ).apply(plan)

    assert result.status_of("create:registry.main") == OperationStatus.FAILED
    assert fakes["registry"].calls == []


def test_update_without_a_record_fails(
    engine: Engine, fakes: Dict[str, FakeProvider]
) -> None:
    plan = engine.plan([res("workload", "app")])

    with patch.object(Executor, "_remaining", return_value=Action.UPDATE):
        result = engine.executor().apply(plan)

    state = result.states["create:workload.app"]
    assert state.status == OperationStatus.FAILED
    assert state.error == "workload.app has no record to update"
    assert fakes["workload"].calls == []
