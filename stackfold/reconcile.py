from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from stackfold.errors import ConsistencyError, ProviderError, ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.base import Provider, ProviderCaller, ProviderRegistry
from stackfold.resource.model import Action
from stackfold.state.store import RecordStatus, ResourceRecord, StateStore


def verify_pending(
    store: StateStore,
    record: ResourceRecord,
    provider: Provider,
    caller: ProviderCaller,
) -> ResourceRecord:
    """
    Settles a record left `pending` by an interrupted run by asking the provider
    whether the resource exists.

    A resource that exists is recorded as applied with the observed attributes kept as
    drift. An interrupted destroy whose resource is gone is recorded as destroyed.
    Anything else is left for an operator.

    Returns:
        ResourceRecord: The settled record.

    Raises:
        ConsistencyError: If the provider has no resource for the record, or the record
            carries nothing to look it up with.
    """
    rid = record.id
    provider_ids = record.provider_ids or provider.identify(
        record.resolved or record.attributes
    )
    if not provider_ids:
        raise ConsistencyError(
            rid,
            f"interrupted {_action(record)} left no provider identifiers to verify it with",
        )

    try:
        observed = caller.call(provider, "read", provider_ids)
    except ResourceNotFound:
        if record.pending_action == Action.DESTROY:
            logger.info(f"Interrupted destroy of {rid} had completed.")
            return store.resolve_pending(rid, RecordStatus.DESTROYED)
        raise ConsistencyError(
            rid,
            f"interrupted {_action(record)} left a pending record but the provider has no such resource",
        )

    logger.info(f"Interrupted {_action(record)} of {rid} found a live resource.")
    return store.resolve_pending(
        rid, RecordStatus.APPLIED, observed=observed, provider_ids=provider_ids
    )


def _action(record: ResourceRecord) -> str:
    return record.pending_action.value if record.pending_action else "transition"


class RefreshReport(BaseModel):
    """
    The outcome of comparing the recorded state with the providers.
    """

    in_sync: List[str] = Field(default_factory=list)
    drifted: Dict[str, Dict[str, object]] = Field(
        default_factory=dict, description="Diverging values observed per resource."
    )
    missing: List[str] = Field(
        default_factory=list, description="Applied resources the provider no longer has."
    )
    recovered: List[str] = Field(
        default_factory=list, description="Interrupted transitions that were settled."
    )
    inconsistent: Dict[str, str] = Field(
        default_factory=dict,
        description="Interrupted transitions that need an operator.",
    )
    errors: Dict[str, str] = Field(
        default_factory=dict, description="Resources the provider could not read."
    )

    @property
    def ok(self) -> bool:
        return not self.inconsistent and not self.errors

    def rows(self) -> List[List[str]]:
        rows = [[rid, "in sync", ""] for rid in self.in_sync]
        rows += [
            [rid, "drifted", ", ".join(sorted(fields))]
            for rid, fields in self.drifted.items()
        ]
        rows += [[rid, "missing", "will be re-created"] for rid in self.missing]
        rows += [[rid, "recovered", ""] for rid in self.recovered]
        rows += [[rid, "inconsistent", msg] for rid, msg in self.inconsistent.items()]
        rows += [[rid, "error", msg] for rid, msg in self.errors.items()]
        return sorted(rows)


def refresh(
    store: StateStore,
    providers: ProviderRegistry,
    caller: ProviderCaller,
    report: Optional[RefreshReport] = None,
) -> RefreshReport:
    """
    Reads every live resource back from its provider and records drift.

    Resources that vanished are marked destroyed so that the next plan re-creates them.
    Interrupted transitions are verified; those that cannot be settled are reported as
    inconsistent rather than guessed.
    """
    report = report or RefreshReport()

    for rid, record in store.load().items():
        key = str(rid)
        if record.status not in (RecordStatus.APPLIED, RecordStatus.PENDING):
            continue

        provider = providers.get(rid.kind)

        if record.status == RecordStatus.PENDING:
            try:
                verify_pending(store, record, provider, caller)
                report.recovered.append(key)
            except ConsistencyError as e:
                logger.error(str(e))
                report.inconsistent[key] = str(e)
            except ProviderError as e:
                report.errors[key] = str(e)
            continue

        try:
            observed = caller.call(provider, "read", record.provider_ids)
        except ResourceNotFound:
            logger.warning(f"{rid} no longer exists.")
            store.mark_missing(rid)
            report.missing.append(key)
            continue
        except ProviderError as e:
            logger.error(f"Failed to read {rid}: {e}")
            report.errors[key] = str(e)
            continue

        updated = store.record_drift(rid, observed)
        if updated.drift:
            logger.info(f"{rid} drifted: {', '.join(sorted(updated.drift))}")
            report.drifted[key] = updated.drift
        else:
            report.in_sync.append(key)

    return report
