from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from stackfold.config import ProviderConfig
from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.executor import ApplyResult, Executor
from stackfold.graph import build
from stackfold.plan import Plan, plan, plan_destroy
from stackfold.provider.base import Provider, ProviderRegistry, ProviderResult
from stackfold.resource.model import KindRegistry, KindSpec, ResourceDescriptor
from stackfold.state.store import StateStore

TEST_KINDS = [
    KindSpec(name="network", force_replace=("cidr",)),
    KindSpec(name="subnet", updatable=False),
    KindSpec(name="registry"),
    KindSpec(name="image"),
    KindSpec(name="cluster", force_replace=("zone",)),
    KindSpec(name="workload"),
]


class FakeProvider(Provider):
    """
    Keeps resources in memory. Identifiers are derived from the `name` attribute, so a
    second create of the same resource fails like a real API would.
    """

    def __init__(
        self, kind: str, config: ProviderConfig, journal: List[Tuple[str, str]]
    ) -> None:
        super().__init__(config)
        self.kind = kind
        self.journal = journal
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, BaseException] = {}
        self.transient: Dict[str, int] = {}
        self.calls: List[Tuple[str, str]] = []
        self.on_call: Optional[Callable[[str, str], None]] = None
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _id(self, name: str) -> str:
        return f"{self.kind}-{name}"

    def _enter(self, verb: str, name: str) -> None:
        with self._lock:
            self.calls.append((verb, name))
            self.journal.append((verb, f"{self.kind}.{name}"))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call:
                self.on_call(verb, name)
            if self.delay:
                threading.Event().wait(self.delay)
            if self.transient.get(verb, 0) > 0:
                self.transient[verb] -= 1
                raise ProviderError(f"{verb} throttled", retryable=True)
            if verb in self.errors:
                raise self.errors[verb]
        finally:
            with self._lock:
                self.active -= 1

    def _name(self, provider_ids: Dict[str, Any]) -> str:
        return provider_ids["id"][len(self.kind) + 1 :]

    def count(self, verb: str) -> int:
        return len([c for c in self.calls if c[0] == verb])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        name = attrs["name"]
        self._enter("create", name)
        rid = self._id(name)
        if rid in self.resources:
            raise ProviderError(f"{rid} already exists")
        self.resources[rid] = dict(attrs)
        return ProviderResult(
            provider_ids={"id": rid},
            outputs={"id": rid, "url": f"fake://{rid}"},
        )

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        self._enter("read", self._name(provider_ids))
        if provider_ids["id"] not in self.resources:
            raise ResourceNotFound()
        return dict(self.resources[provider_ids["id"]])

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._enter("update", self._name(provider_ids))
        if provider_ids["id"] not in self.resources:
            raise ResourceNotFound()
        self.resources[provider_ids["id"]] = dict(attrs)
        return {"id": provider_ids["id"], "url": f"fake://{provider_ids['id']}"}

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        self._enter("delete", self._name(provider_ids))
        if provider_ids["id"] not in self.resources:
            raise ResourceNotFound()
        del self.resources[provider_ids["id"]]

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return {"id": self._id(attrs["name"])} if attrs.get("name") else None


def res(kind: str, name: str, **kwargs: Any) -> ResourceDescriptor:
    """
    Shorthand for a descriptor. Attributes always carry the name so that the fake
    provider can derive identifiers from it.
    """
    hints = {k: kwargs.pop(k) for k in ("depends_on", "before", "after") if k in kwargs}
    return ResourceDescriptor(
        kind=kind, name=name, attributes={"name": name, **kwargs}, **hints
    )


class Engine:
    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        kinds: KindRegistry,
        config: ProviderConfig,
    ) -> None:
        self.store = store
        self.providers = providers
        self.kinds = kinds
        self.config = config

    def executor(self) -> Executor:
        return Executor(
            self.store, self.providers, self.kinds, self.config, sleep=lambda _: None
        )

    def plan(self, descriptors: List[ResourceDescriptor]) -> Plan:
        return plan(build(descriptors, self.kinds), self.store, self.kinds)

    def apply(self, descriptors: List[ResourceDescriptor]) -> Tuple[Plan, ApplyResult]:
        p = self.plan(descriptors)
        return p, self.executor().apply(p)

    def destroy(self) -> Tuple[Plan, ApplyResult]:
        p = plan_destroy(self.store, self.kinds)
        return p, self.executor().apply(p)


@pytest.fixture
def kinds() -> KindRegistry:
    return KindRegistry(TEST_KINDS)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        region="us-east-1",
        retryLimit=3,
        concurrencyLimit=4,
        backoffInitial=0,
        backoffMax=0,
    )


@pytest.fixture
def journal() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def fakes(
    provider_config: ProviderConfig, journal: List[Tuple[str, str]]
) -> Dict[str, FakeProvider]:
    return {
        spec.name: FakeProvider(spec.name, provider_config, journal)
        for spec in TEST_KINDS
    }


@pytest.fixture
def providers(fakes: Dict[str, FakeProvider]) -> ProviderRegistry:
    return ProviderRegistry(list(fakes.values()))


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def engine(
    store: StateStore,
    providers: ProviderRegistry,
    kinds: KindRegistry,
    provider_config: ProviderConfig,
) -> Engine:
    return Engine(store, providers, kinds, provider_config)
