"""Provider clients the reconciler talks to."""

from converge.providers.base import ProviderClient
from converge.providers.memory import Fault, InMemoryProvider


def build_provider(settings) -> ProviderClient:
    """Create the provider named by EngineSettings."""
    if settings.provider == "aws":
        from converge.providers.aws import AwsProvider
        from converge.utils.retry import RetryStrategy
        return AwsProvider(
            region=settings.region,
            profile=settings.profile,
            retry_strategy=RetryStrategy.from_settings(settings.retry)
        )
    return InMemoryProvider(
        region=settings.region or "us-east-1",
        persist_path=settings.provider_state_path
    )


__all__ = [
    "Fault",
    "InMemoryProvider",
    "ProviderClient",
    "build_provider",
]
