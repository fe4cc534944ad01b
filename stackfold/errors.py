from __future__ import annotations

from typing import Any, List, Optional


class StackfoldError(Exception):
    """
    Base class for every error raised by stackfold.
    """


class InvalidDescriptor(StackfoldError):
    """
    A resource descriptor is malformed: a required attribute is missing, the kind is
    unknown, or a dependency does not resolve to another descriptor.
    """

    def __init__(self, resource: Any, message: str) -> None:
        self.resource = resource
        self.message = message
        super().__init__(f"{resource}: {message}")


class UnknownKind(InvalidDescriptor):
    pass


class CycleError(StackfoldError):
    """
    The dependency edges do not form a DAG.

    Attributes:
        path: The offending cycle. The first and the last element are the same resource.
    """

    def __init__(self, path: List[Any]) -> None:
        self.path = path
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(str(p) for p in path)
        )


class ConflictingTransition(StackfoldError):
    """
    A second transition was requested for a resource that already has one in flight.
    """

    def __init__(self, resource: Any) -> None:
        self.resource = resource
        super().__init__(f"{resource}: another transition is already in progress")


class ProviderError(StackfoldError):
    """
    Raised by provider adapters. Only errors flagged as retryable are retried.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        self.retryable = retryable
        super().__init__(message)


class ProviderTimeout(ProviderError):
    pass


class ResourceNotFound(ProviderError):
    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message, retryable=False)


class ConsistencyError(StackfoldError):
    """
    A pending record has no corresponding provider resource. This must be resolved by
    an operator, guessing would either orphan or duplicate infrastructure.
    """

    def __init__(self, resource: Any, message: Optional[str] = None) -> None:
        self.resource = resource
        super().__init__(
            f"{resource}: "
            + (
                message
                or "state records an interrupted transition but the provider has no such resource"
            )
        )


class ConfigError(StackfoldError):
    """
    The stack file cannot be read or is not valid.
    """
