"""Model provider backends."""

from roombot.providers.cli import CliModelProvider
from roombot.providers.registry import ProviderRegistry, ResolvedProvider

__all__ = ["CliModelProvider", "ProviderRegistry", "ResolvedProvider"]
