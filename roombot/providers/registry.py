"""Agent name -> model provider lookup shared by all rooms."""

import logging
from dataclasses import dataclass

from roombot.core.config import AppConfig
from roombot.core.interfaces import MissingCredentialError, ModelProvider
from roombot.core.retry import RateLimiter
from roombot.providers.cli import CliModelProvider

logger = logging.getLogger(__name__)


@dataclass
class ResolvedProvider:
    """A provider ready to call, with its rate-limit identity."""

    agent: str
    key: str
    provider: ModelProvider
    model: str | None = None


class ProviderRegistry:
    """Named agents backed by ModelProvider instances."""

    def __init__(self, default_agent: str | None = None, rate_limiter: RateLimiter | None = None):
        self.default_agent = default_agent
        self.rate_limiter = rate_limiter or RateLimiter()
        self._agents: dict[str, ResolvedProvider] = {}

    def register(
        self,
        name: str,
        provider: ModelProvider,
        model: str | None = None,
        key: str | None = None,
        requests_per_minute: float | None = None,
    ) -> None:
        key = key or name
        self._agents[name] = ResolvedProvider(agent=name, key=key, provider=provider, model=model)
        if requests_per_minute:
            self.rate_limiter.configure(key, requests_per_minute)
        if self.default_agent is None:
            self.default_agent = name

    def names(self) -> list[str]:
        return sorted(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def resolve(self, name: str | None = None) -> ResolvedProvider:
        """Look up an agent, falling back to the default.

        Raises:
            MissingCredentialError: The agent is not configured.
        """
        agent = name or self.default_agent
        if agent is None or agent not in self._agents:
            raise MissingCredentialError(f"Agent '{agent}' is not configured")
        return self._agents[agent]

    @classmethod
    def from_config(
        cls, config: AppConfig, rate_limiter: RateLimiter | None = None
    ) -> "ProviderRegistry":
        registry = cls(default_agent=config.default_agent, rate_limiter=rate_limiter)
        for name, agent in config.agents.items():
            provider = CliModelProvider(
                cli_name=agent.provider,
                api_key_env=agent.api_key_env,
                timeout=agent.timeout,
            )
            registry.register(
                name,
                provider,
                model=agent.model,
                key=agent.provider,
                requests_per_minute=agent.requests_per_minute,
            )
            logger.debug(f"Registered agent {name} ({agent.provider})")
        return registry
