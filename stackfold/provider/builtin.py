from __future__ import annotations

from typing import List, Type

from stackfold.config import ProviderConfig
from stackfold.provider.aws import (
    ClusterProvider,
    ImageProvider,
    NetworkProvider,
    NodePoolProvider,
    RegistryProvider,
    RoleAttachmentProvider,
    SubnetProvider,
)
from stackfold.provider.base import Provider, ProviderRegistry
from stackfold.provider.k8s import WorkloadProvider

# One provider per built-in resource kind
BUILTIN_PROVIDERS: List[Type[Provider]] = [
    NetworkProvider,
    SubnetProvider,
    RegistryProvider,
    ImageProvider,
    ClusterProvider,
    NodePoolProvider,
    RoleAttachmentProvider,
    WorkloadProvider,
]


def default_provider_registry(config: ProviderConfig) -> ProviderRegistry:
    """
    Instantiates every built-in provider with the given configuration.
    """
    return ProviderRegistry([cls(config) for cls in BUILTIN_PROVIDERS])
