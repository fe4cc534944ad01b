from __future__ import annotations

import concurrent.futures
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from stackfold.config import ProviderConfig
from stackfold.errors import (
    ProviderError,
    ProviderTimeout,
    ResourceNotFound,
    StackfoldError,
)
from stackfold.logger import logger
from stackfold.plan import Operation, Plan
from stackfold.provider.base import Provider, ProviderCaller, ProviderRegistry
from stackfold.reconcile import verify_pending
from stackfold.resource.model import (
    Action,
    ChangeKind,
    KindRegistry,
    Reference,
    ResourceDescriptor,
    diff,
    resolve_references,
)
from stackfold.state.store import (
    RecordStatus,
    ResourceRecord,
    StateStore,
    TransitionHandle,
    TransitionResult,
)

CANCELLED = "cancelled"


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class OperationState(BaseModel):
    op_id: str
    resource: str
    action: Action
    status: OperationStatus = OperationStatus.PENDING
    performed: Optional[Action] = Field(
        None,
        description="The action actually carried out. no-op when nothing was left to do.",
    )
    error: Optional[str] = Field(None, description="Why the operation failed.")
    skipped_due_to: Optional[str] = Field(
        None,
        description="The failed operation it was skipped because of, or 'cancelled'.",
    )

    @property
    def terminal(self) -> bool:
        return self.status in (
            OperationStatus.SUCCEEDED,
            OperationStatus.FAILED,
            OperationStatus.SKIPPED,
        )


class ApplyResult(BaseModel):
    states: Dict[str, OperationState] = Field(default_factory=dict)
    cancelled: bool = False

    def _with(self, status: OperationStatus) -> List[OperationState]:
        return [s for s in self.states.values() if s.status == status]

    @property
    def succeeded(self) -> List[OperationState]:
        return self._with(OperationStatus.SUCCEEDED)

    @property
    def failed(self) -> List[OperationState]:
        return self._with(OperationStatus.FAILED)

    @property
    def skipped(self) -> List[OperationState]:
        return self._with(OperationStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def status_of(self, op_id: str) -> OperationStatus:
        return self.states[op_id].status

    def rows(self) -> List[List[str]]:
        rows = []
        for s in self.states.values():
            if s.status == OperationStatus.FAILED:
                detail = s.error or ""
            elif s.status == OperationStatus.SKIPPED:
                detail = (
                    "cancelled"
                    if s.skipped_due_to == CANCELLED
                    else f"upstream {s.skipped_due_to} failed"
                )
            else:
                detail = (s.performed or s.action).value
            rows.append([s.resource, s.action.value, s.status.value, detail])
        return rows


class Executor:
    """
    Runs a plan wave by wave.

    Operations of a wave run concurrently, capped by `concurrencyLimit`; a wave only
    starts once every operation of the previous one is terminal. A failure skips
    every operation that transitively depends on it, siblings keep going.
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        kinds: KindRegistry,
        config: ProviderConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.providers = providers
        self.kinds = kinds
        self.config = config
        self.caller = ProviderCaller(config, sleep=sleep)
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """
        Requests cancellation. Running operations finish and get recorded, nothing new
        starts.
        """
        if not self._cancel_event.is_set():
            logger.warning("Cancelling. Waiting for running operations to finish...")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def apply(self, plan: Plan) -> ApplyResult:
        result = ApplyResult(
            states={
                op.op_id: OperationState(
                    op_id=op.op_id, resource=str(op.resource), action=op.action
                )
                for op in plan.operations
            }
        )

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.concurrencyLimit
        ) as pool:
            for index, wave in enumerate(plan.waves()):
                if self.cancelled:
                    break

                logger.debug(f"Starting wave {index} with {len(wave)} operation(s)")
                futures = []
                for op in wave:
                    blocker = self._blocker(op, result)
                    if blocker is not None:
                        state = result.states[op.op_id]
                        state.status = OperationStatus.SKIPPED
                        state.skipped_due_to = blocker
                        logger.info(f"Skipping {op.op_id}, {blocker} failed.")
                        continue
                    futures.append(pool.submit(self._run, op, result.states[op.op_id]))

                self._join(futures)

        for state in result.states.values():
            if not state.terminal:
                state.status = OperationStatus.SKIPPED
                state.skipped_due_to = CANCELLED
        result.cancelled = self.cancelled

        logger.info(
            f"Apply finished: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped."
        )
        return result

    def _join(self, futures: List[concurrent.futures.Future]) -> None:
        try:
            concurrent.futures.wait(futures)
        except KeyboardInterrupt:
            self.cancel()
            concurrent.futures.wait(futures)

    def _blocker(self, op: Operation, result: ApplyResult) -> Optional[str]:
        for dep in op.depends_on:
            state = result.states[dep]
            if state.status == OperationStatus.FAILED:
                return dep
            if state.status == OperationStatus.SKIPPED:
                return state.skipped_due_to
        return None

    def _run(self, op: Operation, state: OperationState) -> None:
        if self.cancelled:
            state.status = OperationStatus.SKIPPED
            state.skipped_due_to = CANCELLED
            return

        state.status = OperationStatus.RUNNING
        try:
            state.performed = self._execute(op)
        except Exception as e:
            logger.error(f"{op.op_id} failed: {e}")
            state.status = OperationStatus.FAILED
            state.error = str(e) or type(e).__name__
            return

        state.status = OperationStatus.SUCCEEDED
        logger.info(f"{op.op_id} succeeded ({state.performed.value}).")

    def _execute(self, op: Operation) -> Action:
        rid = op.resource
        provider = self.providers.get(rid.kind)
        current = self.store.get(rid)

        if current is not None and current.status == RecordStatus.PENDING:
            if not op.verify:
                # Pending records only come from an interrupted run the plan knew about
                raise StackfoldError(
                    f"{rid} changed state since the plan was made, plan again"
                )
            current = verify_pending(self.store, current, provider, self.caller)
            action = self._after_recovery(op, current)
        else:
            action = self._remaining(op, current)

        if action == Action.NOOP:
            return Action.NOOP

        if action in (Action.DESTROY, Action.UPDATE) and current is None:
            raise StackfoldError(f"{rid} has no record to {action.value}")

        if action == Action.DESTROY:
            handle = self.store.begin_transition(rid, Action.DESTROY)
            try:
                self._delete(provider, current)
            except BaseException as e:
                self._fail(handle, e)
                raise
            self.store.commit(handle)
            return Action.DESTROY

        resolved = resolve_references(op.attributes, self._lookup)
        intended = TransitionResult(
            attributes=op.attributes,
            resolved=resolved,
            dependencies=list(op.dependencies),
        )
        handle = self.store.begin_transition(rid, action, intended)
        try:
            if action == Action.CREATE:
                created = self.caller.call(provider, "create", resolved)
                provider_ids, outputs = created.provider_ids, created.outputs
            else:
                provider_ids = current.provider_ids
                outputs = self.caller.call(provider, "update", provider_ids, resolved)
        except BaseException as e:
            self._fail(handle, e)
            raise

        self.store.commit(
            handle,
            TransitionResult(
                attributes=op.attributes,
                resolved=resolved,
                outputs=outputs or {},
                provider_ids=provider_ids,
                dependencies=list(op.dependencies),
            ),
        )
        return action

    def _fail(self, handle: TransitionHandle, error: BaseException) -> None:
        if isinstance(error, ProviderTimeout):
            # The call may still complete in the background
            self.store.leave_pending(handle, error)
        else:
            self.store.abort(handle, error)

    def _remaining(self, op: Operation, current: Optional[ResourceRecord]) -> Action:
        """
        What is left to do of an operation. A record whose generation moved past the
        one the plan saw was already handled by an earlier apply of the same plan.
        """
        if op.action == Action.NOOP:
            return Action.NOOP
        if current is not None and current.generation > op.base_generation:
            return Action.NOOP
        if op.action == Action.DESTROY and (
            current is None or current.status != RecordStatus.APPLIED
        ):
            return Action.NOOP
        if op.action == Action.UPDATE and (
            current is None or current.status != RecordStatus.APPLIED
        ):
            return Action.CREATE
        return op.action

    def _after_recovery(self, op: Operation, current: ResourceRecord) -> Action:
        if op.action == Action.DESTROY:
            return (
                Action.DESTROY if current.status == RecordStatus.APPLIED else Action.NOOP
            )
        if current.status != RecordStatus.APPLIED:
            return Action.CREATE

        # The resource exists, compare it with what the plan wants
        desired = ResourceDescriptor(
            kind=op.resource.kind, name=op.resource.name, attributes=op.attributes
        )
        change = diff(desired, current, self.kinds)
        if change.kind == ChangeKind.NO_CHANGE:
            return Action.NOOP
        if change.kind == ChangeKind.UPDATE:
            return Action.UPDATE
        raise StackfoldError(
            f"{op.resource} needs to be replaced after recovering an interrupted "
            f"transition ({', '.join(change.fields)}), plan again"
        )

    def _delete(self, provider: Provider, record: ResourceRecord) -> None:
        try:
            self.caller.call(provider, "delete", record.provider_ids)
        except ResourceNotFound:
            logger.info(f"{record.id} was already gone.")

    def _lookup(self, ref: Reference) -> Any:
        record = self.store.get(ref.resource)
        if record is None or record.status != RecordStatus.APPLIED:
            raise ProviderError(f"{ref} refers to a resource that is not applied")
        if ref.attribute in record.outputs:
            return record.outputs[ref.attribute]
        if ref.attribute in record.resolved:
            return record.resolved[ref.attribute]
        raise ProviderError(f"{ref} refers to an unknown output")
