from __future__ import annotations

import re
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Set,
    Tuple,
)

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stackfold.errors import InvalidDescriptor, UnknownKind

if TYPE_CHECKING:
    from stackfold.state.store import ResourceRecord

NAME_PATTERN = r"[a-z0-9](?:[-a-z0-9]*[a-z0-9])?"
KIND_PATTERN = r"[a-z][a-z0-9_]*"

# ${kind.name.attribute}
REFERENCE_RE = re.compile(
    r"\$\{(?P<kind>" + KIND_PATTERN + r")\.(?P<name>" + NAME_PATTERN + r")"
    r"\.(?P<attr>[A-Za-z_][A-Za-z0-9_]*)\}"
)


class ResourceId(NamedTuple):
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """
        Parses the `kind.name` form of a resource identity.

        Raises:
            ValueError: If the value is not in the `kind.name` format.
        """
        kind, sep, name = value.partition(".")
        if not sep or not kind or not name:
            raise ValueError(f"Invalid resource identity '{value}', expected kind.name")
        return cls(kind, name)


class Reference(NamedTuple):
    resource: ResourceId
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.resource}.{self.attribute}}}"


def _reference(match: re.Match) -> Reference:
    return Reference(
        ResourceId(match.group("kind"), match.group("name")), match.group("attr")
    )


def iter_references(value: Any) -> Iterator[Reference]:
    """
    Yields every output reference embedded in an attribute value, recursing into
    lists and mappings.
    """
    if isinstance(value, str):
        for match in REFERENCE_RE.finditer(value):
            yield _reference(match)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_references(v)


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Replaces output references with their values. A string that is exactly one
    reference takes the referenced value as is, otherwise references are formatted
    into the string.
    """
    if isinstance(value, str):
        match = REFERENCE_RE.fullmatch(value)
        if match:
            return lookup(_reference(match))
        return REFERENCE_RE.sub(lambda m: str(lookup(_reference(m))), value)
    if isinstance(value, Mapping):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_references(v, lookup) for v in value]
    return value


def _to_resource_id(v: Any) -> ResourceId:
    if isinstance(v, str):
        return ResourceId.parse(v)
    if isinstance(v, Mapping):
        return ResourceId(v["kind"], v["name"])
    return ResourceId(*v)


class ResourceDescriptor(BaseModel):
    """
    The desired state of one resource.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(..., description="The kind of the resource.")
    name: str = Field(..., description="The name of the resource, unique per kind.")
    attributes: Dict[str, Any] = Field(
        default_factory=dict,
        description="The desired attributes. The semantics are owned by the provider.",
    )
    depends_on: Tuple[ResourceId, ...] = Field(
        (), description="Resources that must be fully applied first."
    )
    before: Tuple[ResourceId, ...] = Field(
        (), description="Resources that must not start before this one succeeded."
    )
    after: Tuple[ResourceId, ...] = Field(
        (), description="Resources that must succeed before this one starts."
    )

    @field_validator("kind", mode="before")
    def validate_kind(cls, v: str) -> str:
        if not isinstance(v, str) or not re.fullmatch(KIND_PATTERN, v):
            raise ValueError(
                "Invalid kind. It must start with a lowercase letter and contain only "
                "lowercase alphanumeric characters or '_'."
            )
        return v

    @field_validator("name", mode="before")
    def validate_name(cls, v: str) -> str:
        if not isinstance(v, str) or not re.fullmatch(NAME_PATTERN, v) or len(v) > 63:
            raise ValueError(
                "Invalid name. It must contain no more than 63 characters, contain "
                "only lowercase alphanumeric characters or '-', start with an "
                "alphanumeric character, and end with an alphanumeric character."
            )
        return v

    @field_validator("depends_on", "before", "after", mode="before")
    def validate_ids(cls, v: Any) -> Tuple[ResourceId, ...]:
        if v is None:
            return ()
        return tuple(_to_resource_id(i) for i in v)

    @property
    def id(self) -> ResourceId:
        return ResourceId(self.kind, self.name)

    def references(self) -> List[Reference]:
        return sorted(set(iter_references(self.attributes)))

    def dependencies(self) -> List[ResourceId]:
        """
        Resources this one must wait for: explicit dependencies, `after` hints and
        every resource whose outputs are referenced.
        """
        deps: Set[ResourceId] = set(self.depends_on) | set(self.after)
        deps.update(ref.resource for ref in self.references())
        return sorted(deps)


class KindSpec(BaseModel):
    """
    Describes how resources of one kind are validated and compared.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="The kind name.")
    required: Tuple[str, ...] = Field((), description="Required attributes.")
    force_replace: Tuple[str, ...] = Field(
        (), description="Attributes whose change forces destroy-then-create."
    )
    updatable: bool = Field(
        True, description="Whether the provider can update the resource in place."
    )
    description: str = Field("", description="Human readable description.")


class KindRegistry:
    def __init__(self, specs: Optional[List[KindSpec]] = None) -> None:
        self._specs: Dict[str, KindSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: KindSpec) -> None:
        self._specs[spec.name] = spec

    def get(self, kind: str) -> KindSpec:
        try:
            return self._specs[kind]
        except KeyError:
            raise UnknownKind(kind, f"Unknown resource kind '{kind}'")

    def __contains__(self, kind: object) -> bool:
        return kind in self._specs

    def kinds(self) -> List[str]:
        return sorted(self._specs)


def validate(
    descriptor: ResourceDescriptor,
    descriptors: Mapping[ResourceId, ResourceDescriptor],
    kinds: KindRegistry,
) -> None:
    """
    Checks the required attributes of a descriptor and that every dependency it
    declares resolves to a descriptor of the same set.

    Raises:
        InvalidDescriptor: If the descriptor is not valid.
    """
    rid = descriptor.id
    try:
        spec = kinds.get(descriptor.kind)
    except UnknownKind as e:
        raise UnknownKind(rid, e.message)

    missing = [
        attr
        for attr in spec.required
        if attr not in descriptor.attributes or descriptor.attributes[attr] is None
    ]
    if missing:
        raise InvalidDescriptor(
            rid, f"missing required attribute(s): {', '.join(missing)}"
        )

    for ref in descriptor.references():
        if ref.resource == rid:
            raise InvalidDescriptor(rid, f"reference {ref} points at the resource itself")
        if ref.resource not in descriptors:
            raise InvalidDescriptor(rid, f"reference {ref} to an undeclared resource")

    for label, ids in (
        ("dependsOn", descriptor.depends_on),
        ("before", descriptor.before),
        ("after", descriptor.after),
    ):
        for dep in ids:
            if dep == rid:
                raise InvalidDescriptor(rid, f"{label} refers to the resource itself")
            if dep not in descriptors:
                raise InvalidDescriptor(rid, f"{label} refers to undeclared {dep}")


class ChangeKind(str, Enum):
    NO_CHANGE = "no-change"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"


class DiffResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    fields: Tuple[str, ...] = ()


def changed_fields(desired: Mapping[str, Any], current: Mapping[str, Any]) -> List[str]:
    keys = set(desired) | set(current)
    return sorted(k for k in keys if desired.get(k) != current.get(k))


def classify_change(spec: KindSpec, fields: List[str]) -> DiffResult:
    if not fields:
        return DiffResult(kind=ChangeKind.NO_CHANGE)
    if not spec.updatable or any(f in spec.force_replace for f in fields):
        return DiffResult(kind=ChangeKind.REPLACE, fields=tuple(fields))
    return DiffResult(kind=ChangeKind.UPDATE, fields=tuple(fields))


def diff(
    desired: Optional[ResourceDescriptor],
    current: Optional[ResourceRecord],
    kinds: KindRegistry,
) -> DiffResult:
    """
    Compares the desired state of a resource with its last applied record.

    Kinds that cannot be updated in place report `Replace` instead of `Update`.
    """
    # Imported here, the state store depends on this module
    from stackfold.state.store import RecordStatus

    absent = current is None or current.status in (
        RecordStatus.DESTROYED,
        RecordStatus.FAILED,
    )

    if desired is None:
        if absent:
            return DiffResult(kind=ChangeKind.NO_CHANGE)
        return DiffResult(kind=ChangeKind.DESTROY)

    if current is None or absent:
        return DiffResult(kind=ChangeKind.CREATE)

    fields = set(changed_fields(desired.attributes, current.attributes))
    fields.update(k for k in current.drift if k in desired.attributes)
    return classify_change(kinds.get(desired.kind), sorted(fields))


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"
