from stackfold.state.store import (
    RecordStatus,
    ResourceRecord,
    StateStore,
    TransitionHandle,
    TransitionResult,
)

__all__ = [
    "RecordStatus",
    "ResourceRecord",
    "StateStore",
    "TransitionHandle",
    "TransitionResult",
]
