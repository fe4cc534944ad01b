from stackfold.resource.kinds import BUILTIN_KINDS, default_kind_registry
from stackfold.resource.model import (
    Action,
    ChangeKind,
    DiffResult,
    KindRegistry,
    KindSpec,
    Reference,
    ResourceDescriptor,
    ResourceId,
    diff,
    validate,
)

__all__ = [
    "BUILTIN_KINDS",
    "Action",
    "ChangeKind",
    "DiffResult",
    "KindRegistry",
    "KindSpec",
    "Reference",
    "ResourceDescriptor",
    "ResourceId",
    "default_kind_registry",
    "diff",
    "validate",
]
