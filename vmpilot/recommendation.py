"""Suggestion engine with a provider fallback chain.

A request resolves the active provider, asks it once, and falls back to the
deterministic offline responder whenever the provider cannot answer. Callers
never see a provider failure, only (possibly degraded) suggestions plus
warnings describing what happened.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Type

from . import logging_config
from .errors import ProviderConfigError, ProviderError
from .providers import (
    DEFAULT_ADAPTERS,
    DEFAULT_PROVIDERS,
    HttpClientFactory,
    OpenHandsAdapter,
    ProviderAdapter,
    with_endpoint_overrides,
)
from .schemas import (
    ConversationMessage,
    ProviderInfo,
    RecommendationProvider,
    Role,
    SuggestionResult,
)

logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_ADVISOR)

DEFAULT_PROVIDER_ID = "ollama"
OFFLINE = "offline"

SYSTEM_PERSONA = (
    "You are an assistant for vmpilot, a local virtual machine manager. "
    "Provide helpful, accurate suggestions for VM management, resource sizing, "
    "Docker, development environments and troubleshooting. Keep responses concise "
    "and actionable, and put each shell command on its own line."
)

COMMAND_PREFIXES: Tuple[str, ...] = ("vmpilot", "docker", "git", "./")
SUGGESTION_BULLET = "- "
WARNING_PREFIX = "Warning: "


def extract_commands(text: str) -> List[str]:
    """Collect lines that look like shell commands, in document order."""
    commands = []
    for line in (text or "").splitlines():
        line = line.strip()
        if line.startswith(COMMAND_PREFIXES):
            commands.append(line)
    return commands


def parse_offline_text(text: str) -> SuggestionResult:
    """Rebuild an offline result from text produced by :meth:`OfflineEntry.render`."""
    suggestions = []
    warnings = []
    for line in (text or "").splitlines():
        line = line.strip()
        if line.startswith(SUGGESTION_BULLET):
            suggestions.append(line[len(SUGGESTION_BULLET):])
        elif line.startswith(WARNING_PREFIX):
            warnings.append(line[len(WARNING_PREFIX):])
    return SuggestionResult(
        suggestions=suggestions,
        commands=extract_commands(text),
        warnings=warnings,
        provider=OFFLINE,
    )


@dataclass(frozen=True)
class OfflineEntry:
    keyword: str
    suggestions: Tuple[str, ...]
    commands: Tuple[str, ...]
    warnings: Tuple[str, ...] = field(default=())

    def render(self) -> str:
        # suggestions are bulleted so they are never mistaken for commands
        lines = [f"{SUGGESTION_BULLET}{s}" for s in self.suggestions]
        lines.extend(f"{WARNING_PREFIX}{w}" for w in self.warnings)
        if self.commands:
            lines.append("")
            lines.append("Commands:")
            lines.extend(self.commands)
        return "\n".join(lines)


OFFLINE_TABLE: Tuple[OfflineEntry, ...] = (
    OfflineEntry(
        keyword="help",
        suggestions=(
            "Start the default VM and check that it came up",
            "Open an SSH session on the forwarded port",
            "Inspect live CPU and memory usage",
        ),
        commands=("vmpilot start", "vmpilot status", "vmpilot monitor"),
    ),
    OfflineEntry(
        keyword="docker",
        suggestions=(
            "Start the VM first, then SSH into it",
            "Check that the Docker daemon is running inside the guest",
            "Pull images before running containers",
        ),
        commands=("vmpilot start", "docker ps", "docker pull <image>", "docker run <options> <image>"),
    ),
    OfflineEntry(
        keyword="install",
        suggestions=(
            "Clone the repository and run the installer",
            "Initialize a starter registry with a default VM",
            "Validate the registry after editing it by hand",
        ),
        commands=("git clone <repository-url>", "./install.sh", "vmpilot init", "vmpilot validate"),
    ),
    OfflineEntry(
        keyword="troubleshoot",
        suggestions=(
            "VM won't start: check that qemu-system-x86_64 is installed",
            "SSH fails: wait for the guest to finish booting (2-3 min)",
            "Stale status: compare the registry with the live process",
        ),
        commands=("vmpilot status --json", "vmpilot diagnose"),
        warnings=("A VM marked running without a live process is reported as stopped",),
    ),
    OfflineEntry(
        keyword="first boot",
        suggestions=(
            "Use at least 2GB RAM for development workloads",
            "Enable KVM for better performance on supported hosts",
            "Install essential dev tools during first boot",
        ),
        commands=("vmpilot start --headless", "vmpilot status"),
        warnings=(
            "First boot may take several minutes",
            "Ensure a stable internet connection for package downloads",
        ),
    ),
    OfflineEntry(
        keyword="optimize",
        suggestions=(
            "Increase RAM to 4096MB for container and build workloads",
            "Add CPU core capacity (4 cores) for parallel builds",
            "Restart the VM after scaling so the new allocation takes effect",
        ),
        commands=("vmpilot scale --ram 4096 --cpu 4", "vmpilot stop", "vmpilot start"),
    ),
    OfflineEntry(
        keyword="predict",
        suggestions=(
            "Track memory usage over a few days before resizing",
            "Plan a RAM upgrade before usage reaches the allocation",
            "Keep headroom below the VM's maximum limits",
        ),
        commands=("vmpilot monitor --continuous", "vmpilot scale --ram 4096"),
    ),
    OfflineEntry(
        keyword="diagnose",
        suggestions=(
            "Check whether the VM process is alive",
            "Read the VM log for hypervisor errors",
            "Restart the VM if it is unresponsive",
        ),
        commands=("vmpilot status", "vmpilot stop", "vmpilot start"),
    ),
)

GENERIC_ENTRY = OfflineEntry(
    keyword="",
    suggestions=(
        "Use 'vmpilot help' for available commands",
        "Check 'vmpilot status' for VM state",
        "Ask about Docker, installation, optimization or troubleshooting",
    ),
    commands=("vmpilot help", "vmpilot status", "vmpilot list"),
)


class OfflineResponder:
    """Keyword table answering without any backend. Never fails."""

    def __init__(self, table: Tuple[OfflineEntry, ...] = OFFLINE_TABLE,
                 generic: OfflineEntry = GENERIC_ENTRY):
        self.table = table
        self.generic = generic

    def match(self, query: str) -> OfflineEntry:
        lowered = (query or "").lower()
        for entry in self.table:
            if entry.keyword in lowered:
                return entry
        return self.generic

    def respond(self, query: str) -> SuggestionResult:
        return parse_offline_text(self.match(query).render())


class RecommendationEngine:
    """Provider-abstracted suggestion generation.

    The provider table and adapter lookup are injected so tests can substitute
    either. The active provider is resolved from ``environ`` at the start of
    every request.
    """

    def __init__(
        self,
        providers: Optional[Mapping[str, RecommendationProvider]] = None,
        adapters: Optional[Mapping[str, Type[ProviderAdapter]]] = None,
        environ: Optional[Mapping[str, str]] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
        responder: Optional[OfflineResponder] = None,
    ):
        self.environ = environ if environ is not None else os.environ
        self.providers: Dict[str, RecommendationProvider] = with_endpoint_overrides(
            providers if providers is not None else DEFAULT_PROVIDERS, self.environ
        )
        self.adapters = dict(adapters if adapters is not None else DEFAULT_ADAPTERS)
        self.http_client_factory = http_client_factory
        self.responder = responder or OfflineResponder()

    def active_provider_id(self) -> str:
        return (self.environ.get("VMPILOT_AI_PROVIDER") or DEFAULT_PROVIDER_ID).strip().lower()

    def resolve_provider(self) -> RecommendationProvider:
        """Return the configured provider.

        Raises:
            ProviderConfigError: The configured id is not in the provider table.
        """
        provider_id = self.active_provider_id()
        provider = self.providers.get(provider_id)
        if provider is None or provider_id not in self.adapters:
            known = ", ".join(sorted(self.providers))
            raise ProviderConfigError(f"Unknown AI provider '{provider_id}' (known: {known})")
        return provider

    def suggest(self, query: str, context: Optional[str] = None) -> SuggestionResult:
        """Answer ``query``, degrading to the offline responder on any provider failure.

        ``context`` (VM details and the like) is sent to the provider as a
        separate system message. The offline table only ever matches ``query``.
        """
        provider = self.resolve_provider()

        credential = None
        if provider.requires_credential:
            credential = self.environ.get(provider.credential_env_var)
            if not credential:
                warning = (
                    f"{provider.credential_env_var} not set; "
                    f"using offline suggestions instead of {provider.display_name}"
                )
                logger.warning(warning)
                return self._offline(query, warning)

        messages = [ConversationMessage(role=Role.SYSTEM, content=SYSTEM_PERSONA)]
        if context:
            messages.append(ConversationMessage(role=Role.SYSTEM, content=context))
        messages.append(ConversationMessage(role=Role.USER, content=query))
        adapter = self.adapters[provider.id](
            provider, credential=credential, http_client_factory=self.http_client_factory
        )
        model = self.environ.get("VMPILOT_AI_MODEL") or None
        try:
            text = adapter.converse(messages, model=model)
        except ProviderError as e:
            warning = f"{provider.display_name} unavailable, using offline suggestions: {e}"
            logger.warning(warning)
            result = self._offline(query, warning)
            if isinstance(adapter, OpenHandsAdapter):
                result.warnings.append(OpenHandsAdapter.HINT)
            return result

        if adapter.offline:
            return parse_offline_text(text)

        logger.debug("Provider %s answered (%d chars)", provider.id, len(text))
        return SuggestionResult(
            suggestions=[text],
            commands=extract_commands(text),
            provider=provider.id,
        )

    def _offline(self, query: str, warning: str) -> SuggestionResult:
        result = self.responder.respond(query)
        result.warnings.insert(0, warning)
        return result

    def provider_info(self) -> List[ProviderInfo]:
        active = self.active_provider_id()
        info = []
        for provider_id in sorted(self.providers):
            provider = self.providers[provider_id]
            credential_present = (
                not provider.requires_credential
                or bool(self.environ.get(provider.credential_env_var))
            )
            info.append(ProviderInfo(
                id=provider.id,
                display_name=provider.display_name,
                description=provider.description,
                credential_present=credential_present,
                active=provider_id == active,
            ))
        return info
