"""Provider utilities and built-in registrations."""

# Import built-in providers for side effects (registration)
from stackrun.providers import command as _command  # noqa: F401
from stackrun.providers import random_password as _random_password  # noqa: F401
from stackrun.providers import static as _static  # noqa: F401
from stackrun.providers.base import (
    ALL_FIELDS,
    BaseProviderAdapter,
    ProviderAdapter,
    ProviderResourceSchema,
    SyncProviderAdapter,
)
from stackrun.providers.registry import (
    ProviderRegistry,
    create_provider,
    list_providers,
    provider_registry,
    register_provider,
)

__all__ = [
    "ALL_FIELDS",
    "BaseProviderAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderResourceSchema",
    "SyncProviderAdapter",
    "create_provider",
    "list_providers",
    "provider_registry",
    "register_provider",
]
