"""Capability interfaces the core consumes from chat and model backends.

Any object with the right methods satisfies these protocols; backends do not
need to inherit from anything.
"""

from typing import Protocol, runtime_checkable


class ProviderError(Exception):
    """Model provider call failed."""

    pass


class TransientProviderError(ProviderError):
    """Failure expected to clear on retry (network, rate limit, bad response)."""

    pass


class FatalProviderError(ProviderError):
    """Misconfiguration that retrying cannot fix."""

    pass


class MissingCredentialError(FatalProviderError):
    """Provider credential or binary is not available."""

    pass


@runtime_checkable
class ChatProvider(Protocol):
    """One chat room as seen by the engine."""

    async def send_message(self, content: str) -> str:
        """Post a trackable message and return its id."""
        ...

    async def edit_message(self, message_id: str, content: str) -> None:
        ...

    async def send_notification(self, content: str) -> None:
        ...

    async def typing(self, active: bool) -> None:
        ...

    async def get_latest_event_id(self) -> str | None:
        ...

    def room_id(self) -> str:
        ...


@runtime_checkable
class ModelProvider(Protocol):
    """Text completion backend.

    Must raise MissingCredentialError (or another FatalProviderError) for
    misconfiguration and TransientProviderError for retryable failures.
    """

    async def completion(self, prompt: str, model: str | None = None) -> str:
        ...
