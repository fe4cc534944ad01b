from stackfold.provider.base import (
    Provider,
    ProviderCaller,
    ProviderRegistry,
    ProviderResult,
)

__all__ = ["Provider", "ProviderCaller", "ProviderRegistry", "ProviderResult"]
