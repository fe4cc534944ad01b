from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Optional

from stackfold.config import Config
from stackfold.errors import StackfoldError
from stackfold.executor import ApplyResult, Executor
from stackfold.graph import Graph, build
from stackfold.logger import logger
from stackfold.plan import Plan, plan, plan_destroy
from stackfold.provider.base import ProviderCaller, ProviderRegistry
from stackfold.provider.builtin import default_provider_registry
from stackfold.reconcile import RefreshReport, refresh
from stackfold.resource.kinds import default_kind_registry
from stackfold.resource.model import KindRegistry, ResourceDescriptor, ResourceId
from stackfold.state.store import ResourceRecord, StateStore


class StackManager:
    """
    Drives the resources of one stack file through planning, applying, teardown and
    refresh.

    The manager owns the state store of the stack. Applying, destroying and refreshing
    hold the inter-process lock of the state for their whole duration.
    """

    def __init__(
        self,
        config: Config,
        providers: Optional[ProviderRegistry] = None,
        kinds: Optional[KindRegistry] = None,
        store: Optional[StateStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.provider_config = config.stack.provider_config()
        self.kinds = kinds or default_kind_registry()
        self.providers = providers or default_provider_registry(self.provider_config)
        self.store = store or StateStore(config.stack.state_path())
        self.sleep = sleep
        self._executor: Optional[Executor] = None

    @property
    def name(self) -> str:
        return self.config.stack.name

    def descriptors(self) -> List[ResourceDescriptor]:
        return self.config.descriptors()

    def graph(self) -> Graph:
        """
        Builds and validates the dependency graph of the stack.

        Raises:
            InvalidDescriptor: If a resource is not valid.
            CycleError: If the dependencies form a cycle.
        """
        return build(self.descriptors(), self.kinds)

    def _check_providers(self, kinds: Iterable[str]) -> None:
        missing = sorted(set(k for k in kinds if k not in self.providers))
        if missing:
            raise StackfoldError(
                f"No provider is registered for kind(s): {', '.join(missing)}"
            )

    def plan(self) -> Plan:
        """
        Computes the changes needed to bring the recorded state to the stack file.
        No provider is contacted.
        """
        self.store.reload()
        graph = self.graph()
        records = self.store.load()
        self._check_providers(
            [rid.kind for rid in graph.nodes]
            + [rid.kind for rid in records if rid not in graph]
        )
        logger.debug(f"Planning stack {self.name} with {len(graph)} resource(s)")
        return plan(graph, self.store, self.kinds)

    def plan_destroy(self) -> Plan:
        self.store.reload()
        self._check_providers(rid.kind for rid in self.store.load())
        return plan_destroy(self.store, self.kinds)

    def apply(self, stack_plan: Plan) -> ApplyResult:
        """
        Executes a plan produced by `plan` or `plan_destroy`. A plan whose apply stopped
        halfway can be applied again as long as nothing else changed the state since.

        Raises:
            StackfoldError: If the state changed since the plan was made or another
                process holds the state.
        """
        with self.store.lock():
            self.store.reload()
            if (
                stack_plan.state_serial != self.store.serial
                and stack_plan.plan_id != self.store.last_plan
            ):
                raise StackfoldError(
                    "The state changed since the plan was made. Please plan again."
                )

            if not stack_plan.has_changes():
                logger.info("No changes. Infrastructure is up-to-date.")

            self._executor = Executor(
                self.store,
                self.providers,
                self.kinds,
                self.provider_config,
                sleep=self.sleep,
            )
            try:
                with self.store.applying(stack_plan.plan_id):
                    return self._executor.apply(stack_plan)
            finally:
                self._executor = None

    def up(self) -> ApplyResult:
        return self.apply(self.plan())

    def destroy(self) -> ApplyResult:
        logger.info("Destroying resources...")
        return self.apply(self.plan_destroy())

    def cancel(self) -> None:
        if self._executor is not None:
            self._executor.cancel()

    def refresh(self) -> RefreshReport:
        """
        Reads back every recorded resource and records drift. Interrupted transitions
        are verified and settled where possible.
        """
        logger.info("Refreshing the stack...")
        with self.store.lock():
            self.store.reload()
            records = self.store.load()
            self._check_providers(rid.kind for rid in records)
            caller = ProviderCaller(self.provider_config, sleep=self.sleep)
            return refresh(self.store, self.providers, caller)

    def records(self) -> Dict[ResourceId, ResourceRecord]:
        self.store.reload()
        return self.store.load()
