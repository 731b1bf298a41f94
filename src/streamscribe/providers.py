"""Provider profiles and transcription backend credential resolution.

Profiles come from a provider settings store and are modelled as a tagged union
keyed by ``api_provider``; each family names its credential and base URL fields
differently. Resolution scans every configured profile, keeps those whose family
can reach the transcription backend, and takes the first one carrying a key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .config import DEFAULT_BASE_URL
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class _ProfileBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1, description="Stable profile identifier")
    name: str = Field(..., min_length=1, description="Human readable profile name")


class OpenAIProfile(_ProfileBase):
    """Profile for an OpenAI-compatible endpoint."""

    api_provider: Literal["openai"] = "openai"
    openai_api_key: str | None = None
    openai_base_url: str | None = None


class OpenAINativeProfile(_ProfileBase):
    """Profile for the first-party OpenAI API."""

    api_provider: Literal["openai-native"] = "openai-native"
    openai_native_api_key: str | None = None
    openai_native_base_url: str | None = None


class MoonshotProfile(_ProfileBase):
    """Profile for the Moonshot API (OpenAI-compatible chat only)."""

    api_provider: Literal["moonshot"] = "moonshot"
    moonshot_api_key: str | None = None
    moonshot_base_url: str | None = None


class AnthropicProfile(_ProfileBase):
    """Profile for the Anthropic API."""

    api_provider: Literal["anthropic"] = "anthropic"
    api_key: str | None = None
    base_url: str | None = None


ProviderProfile = Annotated[
    OpenAIProfile | OpenAINativeProfile | MoonshotProfile | AnthropicProfile,
    Field(discriminator="api_provider"),
]

_PROFILE_LIST_ADAPTER: TypeAdapter[list[ProviderProfile]] = TypeAdapter(list[ProviderProfile])


@dataclass(frozen=True, slots=True)
class ProviderProfileSummary:
    """Listing entry describing a configured profile without its secrets."""

    id: str
    name: str
    api_provider: str


@dataclass(frozen=True, slots=True)
class BackendCredentials:
    """Credential and endpoint used to reach the transcription backend."""

    api_key: str
    base_url: str
    profile_name: str

    def __repr__(self) -> str:
        """Return a representation that never includes the key."""
        return (
            f"BackendCredentials(profile_name={self.profile_name!r}, "
            f"base_url={self.base_url!r})"
        )


class ProviderSettingsStore(Protocol):
    """Protocol describing the provider configuration collaborator."""

    async def list_profiles(
        self,
    ) -> Sequence[ProviderProfileSummary]:  # pragma: no cover - protocol
        """Return summaries of every configured profile in priority order."""
        ...

    async def get_profile(
        self, profile_id: str
    ) -> ProviderProfile:  # pragma: no cover - protocol
        """Return the full profile identified by *profile_id*."""
        ...


class InMemoryProviderSettingsStore(ProviderSettingsStore):
    """Provider store holding profiles in memory."""

    def __init__(self, profiles: Iterable[ProviderProfile] = ()) -> None:
        """Store *profiles*, preserving their order."""
        self._profiles: dict[str, ProviderProfile] = {}
        for profile in profiles:
            self._profiles[profile.id] = profile

    async def list_profiles(self) -> Sequence[ProviderProfileSummary]:
        """Return summaries in insertion order."""
        return [_summarize(profile) for profile in self._profiles.values()]

    async def get_profile(self, profile_id: str) -> ProviderProfile:
        """Return the profile for *profile_id*."""
        try:
            return self._profiles[profile_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown provider profile '{profile_id}'") from exc

    @classmethod
    def from_environment(
        cls, *, env: Mapping[str, str] | None = None
    ) -> InMemoryProviderSettingsStore:
        """Build a store with one ``openai`` profile from environment variables.

        Recognised variables:
            - ``OPENAI_API_KEY`` → ``openai_api_key``
            - ``OPENAI_BASE_URL`` → ``openai_base_url``

        The store is empty when no API key is set.
        """
        source = dict(os.environ if env is None else env)
        api_key = source.get("OPENAI_API_KEY")
        if not api_key:
            return cls()
        profile = OpenAIProfile(
            id="environment",
            name="environment",
            openai_api_key=api_key,
            openai_base_url=source.get("OPENAI_BASE_URL") or None,
        )
        return cls([profile])


class JsonProviderSettingsStore(ProviderSettingsStore):
    """Provider store backed by a JSON file holding a list of profiles.

    The file is re-read on every listing so edits are picked up after
    :meth:`SegmentTranscriber.reset`.
    """

    def __init__(self, path: Path) -> None:
        """Read profiles from *path*."""
        self._path = path

    async def list_profiles(self) -> Sequence[ProviderProfileSummary]:
        """Return summaries for every profile in file order."""
        profiles = await self._load()
        return [_summarize(profile) for profile in profiles]

    async def get_profile(self, profile_id: str) -> ProviderProfile:
        """Return the profile for *profile_id*."""
        for profile in await self._load():
            if profile.id == profile_id:
                return profile
        raise ConfigurationError(f"Unknown provider profile '{profile_id}'")

    async def _load(self) -> list[ProviderProfile]:
        try:
            raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot read provider settings from {self._path}: {exc}"
            ) from exc
        try:
            return _PROFILE_LIST_ADAPTER.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ConfigurationError(
                f"Invalid provider settings in {self._path}: {exc}"
            ) from exc


def profile_credentials(profile: ProviderProfile) -> tuple[str | None, str | None]:
    """Return the ``(api_key, base_url)`` pair declared by *profile*."""
    if isinstance(profile, OpenAIProfile):
        return profile.openai_api_key, profile.openai_base_url
    if isinstance(profile, OpenAINativeProfile):
        return profile.openai_native_api_key, profile.openai_native_base_url
    if isinstance(profile, MoonshotProfile):
        return profile.moonshot_api_key, profile.moonshot_base_url
    return profile.api_key, profile.base_url


async def resolve_backend_credentials(
    store: ProviderSettingsStore,
    *,
    families: Collection[str] = ("openai", "openai-native"),
    default_base_url: str = DEFAULT_BASE_URL,
) -> BackendCredentials:
    """Return credentials from the first profile of *families* that has a key.

    Raises:
        ConfigurationError: If no matching profile carries a key.
    """
    summaries = await store.list_profiles()
    logger.debug("Scanning %d provider profile(s) for transcription credentials", len(summaries))
    for summary in summaries:
        if summary.api_provider not in families:
            continue
        profile = await store.get_profile(summary.id)
        api_key, base_url = profile_credentials(profile)
        if not api_key:
            logger.info(
                "Profile '%s' (%s) has no API key; skipping", summary.name, summary.api_provider
            )
            continue
        logger.info(
            "Using transcription credentials from profile '%s' (%s)",
            summary.name,
            summary.api_provider,
        )
        return BackendCredentials(
            api_key=api_key,
            base_url=base_url or default_base_url,
            profile_name=summary.name,
        )
    raise ConfigurationError(
        "No transcription API key configured; add a profile for one of: "
        + ", ".join(sorted(families))
    )


def _summarize(profile: ProviderProfile) -> ProviderProfileSummary:
    return ProviderProfileSummary(
        id=profile.id, name=profile.name, api_provider=profile.api_provider
    )
