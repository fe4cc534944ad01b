from __future__ import annotations

import contextlib
import json
import os
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import fasteners
from pydantic import BaseModel, ConfigDict, Field

from stackfold.constants import STATE_FORMAT_VERSION
from stackfold.errors import ConflictingTransition, StackfoldError
from stackfold.logger import logger
from stackfold.resource.model import Action, ResourceId
from stackfold.utils import utc_now, write_json_atomic


class RecordStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    DESTROYED = "destroyed"


TERMINAL_STATUSES = (RecordStatus.APPLIED, RecordStatus.FAILED, RecordStatus.DESTROYED)


class ResourceRecord(BaseModel):
    """
    The last known state of one resource.
    """

    kind: str = Field(..., description="The kind of the resource.")
    name: str = Field(..., description="The name of the resource.")
    status: RecordStatus = Field(..., description="The lifecycle status.")
    generation: int = Field(
        0, description="Incremented on every successful transition."
    )
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        description="The desired attributes as last applied, references unresolved.",
    )
    resolved: Dict[str, Any] = Field(
        default_factory=dict,
        description="The attributes as sent to the provider, references resolved.",
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Outputs reported by the provider."
    )
    provider_ids: Dict[str, Any] = Field(
        default_factory=dict, description="Identifiers assigned by the provider."
    )
    dependencies: List[ResourceId] = Field(
        default_factory=list,
        description="Resources this one depended on when it was last applied.",
    )
    drift: Dict[str, Any] = Field(
        default_factory=dict,
        description="Values observed by a refresh that diverge from the applied attributes.",
    )
    pending_action: Optional[Action] = Field(
        None, description="The action of an in-flight or interrupted transition."
    )
    previous_status: Optional[RecordStatus] = Field(
        None, description="The status before the pending transition began."
    )
    last_error: Optional[str] = Field(
        None, description="The error of the last failed transition."
    )
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def id(self) -> ResourceId:
        return ResourceId(self.kind, self.name)


class TransitionHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: ResourceId
    action: Action
    token: str
    previous: Optional[ResourceRecord] = None


class TransitionResult(BaseModel):
    """
    What a successful provider call produced.
    """

    attributes: Dict[str, Any] = Field(default_factory=dict)
    resolved: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    provider_ids: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[ResourceId] = Field(default_factory=list)


class StateStore:
    """
    Owns the persisted records of every resource.

    All mutations go through the transition API. Each write replaces the backing file
    atomically and bumps the document serial. When `path` is None the store only
    lives in memory.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[ResourceId, ResourceRecord] = {}
        self._in_flight: Dict[ResourceId, str] = {}
        self._serial = 0
        self._plan_id: Optional[str] = None
        self._last_plan: Optional[str] = None
        self._read()

    @property
    def serial(self) -> int:
        return self._serial

    @property
    def last_plan(self) -> Optional[str]:
        """
        The plan whose apply made the last write, None when the last write happened
        outside of an apply.
        """
        return self._last_plan

    def _read(self) -> None:
        if self.path is None or not os.path.exists(self.path):
            return

        with open(self.path, "r") as f:
            data = json.load(f)

        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StackfoldError(
                f"Unsupported state format version {version} in {self.path}"
            )

        self._serial = data.get("serial", 0)
        self._last_plan = data.get("plan")
        self._records = {}
        for key, raw in data.get("resources", {}).items():
            record = ResourceRecord.model_validate(raw)
            self._records[ResourceId.parse(key)] = record

        pending = [str(r.id) for r in self._records.values() if r.status == RecordStatus.PENDING]
        if pending:
            logger.warning(
                f"State has interrupted transitions that must be verified: {', '.join(sorted(pending))}"
            )

    def _persist(self, records: Dict[ResourceId, ResourceRecord], serial: int) -> None:
        if self.path is None:
            return
        write_json_atomic(
            self.path,
            {
                "version": STATE_FORMAT_VERSION,
                "serial": serial,
                "plan": self._plan_id,
                "resources": {
                    str(rid): record.model_dump(mode="json")
                    for rid, record in sorted(records.items())
                },
            },
        )

    def _put(self, record: ResourceRecord) -> ResourceRecord:
        # Memory only changes once the document is on disk
        record.updated_at = utc_now()
        records = dict(self._records)
        records[record.id] = record
        self._persist(records, self._serial + 1)
        self._records = records
        self._serial += 1
        self._last_plan = self._plan_id
        return record.model_copy(deep=True)

    @contextlib.contextmanager
    def applying(self, plan_id: str) -> Iterator[None]:
        """
        Attributes every write made inside the block to the plan being applied.
        """
        self._plan_id = plan_id
        try:
            yield
        finally:
            self._plan_id = None

    def reload(self) -> None:
        with self._lock:
            if self._in_flight:
                raise StackfoldError("Cannot reload state while transitions are in flight")
            self._read()

    def load(self) -> Dict[ResourceId, ResourceRecord]:
        """
        Returns a snapshot of every record keyed by resource identity.
        """
        with self._lock:
            return {
                rid: record.model_copy(deep=True)
                for rid, record in sorted(self._records.items())
            }

    def get(self, rid: ResourceId) -> Optional[ResourceRecord]:
        with self._lock:
            record = self._records.get(rid)
            return record.model_copy(deep=True) if record else None

    def begin_transition(
        self,
        rid: ResourceId,
        action: Action,
        intended: Optional[TransitionResult] = None,
    ) -> TransitionHandle:
        """
        Marks the record `pending` and persists the marker before returning. This marker
        is what a later run finds if the process dies before `commit` or `abort`.

        For a resource that is not live yet, the `intended` attributes are kept on the
        pending record so that an interrupted create can be identified later.

        Raises:
            ConflictingTransition: If a transition for the same resource is in flight.
        """
        with self._lock:
            if rid in self._in_flight:
                raise ConflictingTransition(rid)

            current = self._records.get(rid)
            previous = current.model_copy(deep=True) if current else None

            if current is None:
                record = ResourceRecord(
                    kind=rid.kind, name=rid.name, status=RecordStatus.PENDING
                )
            else:
                record = current.model_copy(deep=True)
                record.previous_status = (
                    current.previous_status
                    if current.status == RecordStatus.PENDING
                    else current.status
                )
                record.status = RecordStatus.PENDING

            if intended is not None and record.previous_status != RecordStatus.APPLIED:
                record.attributes = intended.attributes
                record.resolved = intended.resolved
                record.dependencies = sorted(intended.dependencies)
            record.pending_action = action

            token = uuid.uuid4().hex
            self._in_flight[rid] = token
            try:
                self._put(record)
            except BaseException:
                del self._in_flight[rid]
                raise

            logger.debug(f"Began {action.value} transition of {rid}")
            return TransitionHandle(
                resource=rid, action=action, token=token, previous=previous
            )

    def _release(self, handle: TransitionHandle) -> ResourceRecord:
        token = self._in_flight.get(handle.resource)
        if token != handle.token:
            raise StackfoldError(
                f"{handle.resource}: transition handle is stale or already released"
            )
        del self._in_flight[handle.resource]
        return self._records[handle.resource]

    def commit(
        self, handle: TransitionHandle, result: Optional[TransitionResult] = None
    ) -> ResourceRecord:
        """
        Writes the final state of a successful transition and increments the generation.
        """
        with self._lock:
            current = self._release(handle)
            record = current.model_copy(deep=True)

            if handle.action == Action.DESTROY:
                record.status = RecordStatus.DESTROYED
                record.outputs = {}
                record.provider_ids = {}
                record.resolved = {}
                record.dependencies = []
            else:
                result = result or TransitionResult()
                record.status = RecordStatus.APPLIED
                record.attributes = result.attributes
                record.resolved = result.resolved
                record.outputs = result.outputs
                record.provider_ids = result.provider_ids or record.provider_ids
                record.dependencies = sorted(result.dependencies)

            record.generation += 1
            record.drift = {}
            record.pending_action = None
            record.previous_status = None
            record.last_error = None
            logger.debug(f"Committed {handle.action.value} of {handle.resource}")
            return self._put(record)

    def abort(self, handle: TransitionHandle, error: BaseException) -> ResourceRecord:
        """
        Rolls the record back to its last known-good terminal state and records the error.
        A resource that never reached a terminal state is marked `failed`.
        """
        with self._lock:
            self._release(handle)
            previous = handle.previous
            if previous is not None and previous.status in TERMINAL_STATUSES:
                record = previous.model_copy(deep=True)
            else:
                record = ResourceRecord(
                    kind=handle.resource.kind,
                    name=handle.resource.name,
                    status=RecordStatus.FAILED,
                    generation=previous.generation if previous else 0,
                )
            record.pending_action = None
            record.previous_status = None
            record.last_error = str(error) or type(error).__name__
            logger.debug(f"Aborted {handle.action.value} of {handle.resource}: {error}")
            return self._put(record)

    def leave_pending(
        self, handle: TransitionHandle, error: BaseException
    ) -> ResourceRecord:
        """
        Ends a transition whose outcome is unknown, e.g. a provider call that timed out
        but may still complete. The record stays `pending` so that the next run
        verifies it against the provider before doing anything else.
        """
        with self._lock:
            record = self._release(handle).model_copy(deep=True)
            record.last_error = str(error) or type(error).__name__
            logger.warning(
                f"{handle.action.value} of {handle.resource} may still complete, "
                "it is verified on the next run"
            )
            return self._put(record)

    def resolve_pending(
        self,
        rid: ResourceId,
        status: RecordStatus,
        observed: Optional[Dict[str, Any]] = None,
        provider_ids: Optional[Dict[str, Any]] = None,
    ) -> ResourceRecord:
        """
        Settles an interrupted transition after it was verified against the provider.

        Args:
            rid (ResourceId): The resource.
            status (RecordStatus): `applied` if the provider holds the resource, `destroyed` if it does not.
            observed (Dict[str, Any], optional): The attributes read from the provider.
            provider_ids (Dict[str, Any], optional): The identifiers the resource was found with.
        """
        with self._lock:
            if rid in self._in_flight:
                raise ConflictingTransition(rid)
            current = self._records.get(rid)
            if current is None or current.status != RecordStatus.PENDING:
                raise StackfoldError(f"{rid}: no interrupted transition to resolve")

            record = current.model_copy(deep=True)
            record.status = status
            if status == RecordStatus.DESTROYED:
                record.outputs = {}
                record.provider_ids = {}
                record.resolved = {}
                record.dependencies = []
                record.drift = {}
            else:
                if provider_ids:
                    record.provider_ids = provider_ids
                record.drift = _diverging(record.resolved, observed or {})
            record.generation += 1
            record.pending_action = None
            record.previous_status = None
            return self._put(record)

    def record_drift(self, rid: ResourceId, observed: Dict[str, Any]) -> ResourceRecord:
        """
        Records the values read from the provider that diverge from the applied ones.
        """
        with self._lock:
            if rid in self._in_flight:
                raise ConflictingTransition(rid)
            current = self._records.get(rid)
            if current is None:
                raise StackfoldError(f"{rid}: no such record")
            record = current.model_copy(deep=True)
            record.drift = _diverging(record.resolved, observed)
            return self._put(record)

    def mark_missing(self, rid: ResourceId) -> ResourceRecord:
        """
        Marks an applied resource that the provider no longer holds as destroyed.
        """
        with self._lock:
            if rid in self._in_flight:
                raise ConflictingTransition(rid)
            current = self._records.get(rid)
            if current is None:
                raise StackfoldError(f"{rid}: no such record")
            record = current.model_copy(deep=True)
            record.status = RecordStatus.DESTROYED
            record.outputs = {}
            record.provider_ids = {}
            record.resolved = {}
            record.drift = {}
            record.last_error = "Resource not found by the provider during refresh"
            return self._put(record)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """
        Holds an inter-process lock for the duration of an apply, destroy or refresh, so
        that two processes never drive the same state concurrently.
        """
        if self.path is None:
            yield
            return

        lock = fasteners.InterProcessLock(f"{self.path}.lock")
        if not lock.acquire(blocking=False):
            raise StackfoldError(
                f"State {self.path} is locked by another process. Try again later."
            )
        try:
            yield
        finally:
            lock.release()


def _diverging(applied: Dict[str, Any], observed: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: observed[k] for k in sorted(applied) if k in observed and observed[k] != applied[k]
    }
