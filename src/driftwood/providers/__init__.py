"""Provider utilities and built-in registrations."""

# Import built-in providers for side effects (registration)
from driftwood.providers import gcp as _gcp  # noqa: F401
from driftwood.providers import kubernetes as _kubernetes  # noqa: F401
from driftwood.providers import memory as _memory  # noqa: F401
from driftwood.providers.base import (
    BaseProvider,
    ProviderAdapter,
    ProviderSession,
    ResourceObservation,
    ResourceSchema,
)
from driftwood.providers.registry import (
    ProviderSet,
    create_provider,
    register_provider,
    registered_providers,
)

__all__ = [
    "BaseProvider",
    "ProviderAdapter",
    "ProviderSession",
    "ProviderSet",
    "ResourceObservation",
    "ResourceSchema",
    "create_provider",
    "register_provider",
    "registered_providers",
]
