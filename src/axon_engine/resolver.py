"""Backend resolution: pick the invocation strategy and degrade on failure.

Three modes, tried in this order at detection time:

``cli``
    The coding-agent executable is on ``PATH``.
``direct``
    A provider config file declares a primary provider whose credential resolves.
``fallback``
    Raw ``*_API_KEY`` environment variables, then the proxy token as a last resort.

A call failure moves the session one step down (``cli`` to ``direct`` when a
usable provider exists, otherwise to ``fallback``; ``direct`` to ``fallback``)
and a failure in ``fallback`` is terminal. The resolution is a frozen
``ResolutionState`` value produced by pure functions; ``LLMSession`` swaps in a
new value on every cascade, and modes that already failed are never retried.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .errors import InvocationError, ProviderResolutionError
from .llm import (
    DEEPSEEK_ENDPOINT,
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_DEEPSEEK_MODEL,
    DEFAULT_GEMINI_MODEL,
    DEFAULT_OPENAI_MODEL,
    AgentCliClient,
    AnthropicMessagesClient,
    ChatMessage,
    GeminiClient,
    HttpPost,
    LLMClient,
    LLMOptions,
    LLMResponse,
    OpenAICompatibleClient,
    ProviderRoutedClient,
    UsageSummary,
    http_post_json,
    messages_from_prompt,
)
from .providers import (
    CredentialResolver,
    ProviderCatalog,
    config_paths,
    load_provider_catalog,
    proxy_accounts_path,
)
from .settings import VALID_LLM_MODES, RuntimeSettings

logger = logging.getLogger(__name__)

LLMMode = Literal["cli", "direct", "fallback"]

FALLBACK_ENV_VARS: tuple[str, ...] = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY", "DEEPSEEK_API_KEY")


@dataclass(frozen=True)
class ResolverContext:
    """Everything resolution reads from the outside world, gathered once per session."""

    env: Mapping[str, str]
    catalog: ProviderCatalog
    credentials: CredentialResolver
    agent_command: str = "opencode"
    agent_name: str = "sisyphus"
    agent_timeout_seconds: float = 600.0
    forced_mode: str = ""
    which: Callable[[str], str | None] = shutil.which
    http_post: HttpPost = http_post_json
    searched_paths: tuple[Path, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        env: Mapping[str, str] | None = None,
        home: Path | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> "ResolverContext":
        environ = env if env is not None else os.environ
        paths = config_paths(home)
        return cls(
            env=environ,
            catalog=load_provider_catalog(paths),
            credentials=CredentialResolver(env=environ, accounts_path=proxy_accounts_path(home)),
            agent_command=settings.agent_command,
            agent_name=settings.agent_name,
            agent_timeout_seconds=settings.agent_timeout_seconds,
            forced_mode=settings.llm_mode,
            which=which,
            searched_paths=tuple(paths),
        )

    def env_value(self, name: str) -> str | None:
        value = (self.env.get(name) or "").strip()
        return value or None


@dataclass(frozen=True)
class ResolutionState:
    mode: LLMMode
    client: LLMClient | None
    failed_modes: frozenset[str] = frozenset()
    diagnostic: str = ""
    last_error: str = ""

    @property
    def terminal(self) -> bool:
        return self.client is None


def has_usable_provider(context: ResolverContext) -> bool:
    primary = context.catalog.primary()
    return primary is not None and context.credentials.resolve(primary) is not None


def detect_mode(context: ResolverContext) -> LLMMode:
    forced = context.forced_mode.strip().lower()
    if forced in VALID_LLM_MODES:
        return forced  # type: ignore[return-value]
    if context.which(context.agent_command):
        return "cli"
    if has_usable_provider(context):
        return "direct"
    return "fallback"


def describe_credentials(context: ResolverContext) -> str:
    """One line naming every credential source checked and whether it is present."""
    source = context.catalog.source_path
    config = str(source) if source else f"not found (searched {len(context.searched_paths)} paths)"
    usable = context.credentials.usable_providers(context.catalog)
    parts = [
        f"config: {config}",
        f"providers: {len(context.catalog.providers)} ({len(usable)} usable)",
        f"proxy token: {'found' if context.credentials.proxy_token() else 'not found'}",
    ]
    parts.extend(f"{name}: {'set' if context.env_value(name) else 'not set'}" for name in FALLBACK_ENV_VARS)
    return ", ".join(parts)


def build_fallback_client(context: ResolverContext, failed_modes: frozenset[str] = frozenset()) -> LLMClient | None:
    """Build the first client an environment variable allows, else the proxy-token client.

    The proxy client is skipped once ``direct`` has failed, since direct mode
    already exercised the same credential.
    """
    anthropic_key = context.env_value("ANTHROPIC_API_KEY")
    if anthropic_key:
        return AnthropicMessagesClient(api_key=anthropic_key, model=DEFAULT_ANTHROPIC_MODEL, http_post=context.http_post)
    openai_key = context.env_value("OPENAI_API_KEY")
    if openai_key:
        return OpenAICompatibleClient(api_key=openai_key, model=DEFAULT_OPENAI_MODEL)
    google_key = context.env_value("GOOGLE_API_KEY")
    if google_key:
        return GeminiClient(api_key=google_key, model=DEFAULT_GEMINI_MODEL, http_post=context.http_post)
    deepseek_key = context.env_value("DEEPSEEK_API_KEY")
    if deepseek_key:
        return OpenAICompatibleClient(
            api_key=deepseek_key, model=DEFAULT_DEEPSEEK_MODEL, base_url=DEEPSEEK_ENDPOINT, name="deepseek"
        )

    if "direct" in failed_modes:
        return None
    token = context.credentials.proxy_token()
    if token:
        primary = context.catalog.primary()
        model = primary.default_model if primary and primary.default_model else DEFAULT_ANTHROPIC_MODEL
        return AnthropicMessagesClient(api_key=token, model=model, proxy=True, http_post=context.http_post)
    return None


def build_state(
    mode: LLMMode,
    context: ResolverContext,
    *,
    failed_modes: frozenset[str] = frozenset(),
    last_error: str = "",
) -> ResolutionState:
    """Construct the client for *mode*. A ``fallback`` state with no client is terminal."""
    client: LLMClient | None
    if mode == "cli":
        command = context.which(context.agent_command) or context.agent_command
        client = AgentCliClient(command=command, agent=context.agent_name, timeout=context.agent_timeout_seconds)
    elif mode == "direct":
        client = ProviderRoutedClient(catalog=context.catalog, credentials=context.credentials, http_post=context.http_post)
    else:
        client = build_fallback_client(context, failed_modes)

    diagnostic = describe_credentials(context)
    if client is None:
        failed_modes = failed_modes | {mode}
    return ResolutionState(
        mode=mode, client=client, failed_modes=failed_modes, diagnostic=diagnostic, last_error=last_error
    )


def cascade(state: ResolutionState, context: ResolverContext, error: Exception | str) -> ResolutionState:
    """Return the state to use after a call in *state* failed with *error*."""
    message = str(error).split("\n", 1)[0]
    failed = state.failed_modes | {state.mode}

    if state.mode == "cli":
        if "direct" not in failed and has_usable_provider(context):
            return build_state("direct", context, failed_modes=failed, last_error=message)
        return build_state("fallback", context, failed_modes=failed, last_error=message)
    if state.mode == "direct":
        return build_state("fallback", context, failed_modes=failed, last_error=message)
    return ResolutionState(
        mode="fallback",
        client=None,
        failed_modes=failed,
        diagnostic=describe_credentials(context),
        last_error=message,
    )


def describe_mode(state: ResolutionState) -> str:
    if state.client is None:
        return f"{state.mode} (no usable backend)"
    return f"{state.mode} ({state.client.name})"


class LLMSession:
    """A caller-held resolution state plus the retry-on-cascade call loop."""

    def __init__(self, context: ResolverContext, *, mode: LLMMode | None = None) -> None:
        self.context = context
        initial = mode or detect_mode(context)
        self._state = build_state(initial, context)
        self.usage = UsageSummary()
        logger.info("LLM session resolved to %s", describe_mode(self._state))

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "LLMSession":
        return cls(ResolverContext.from_settings(settings))

    @property
    def state(self) -> ResolutionState:
        return self._state

    @property
    def mode(self) -> LLMMode:
        return self._state.mode

    @property
    def mode_description(self) -> str:
        return describe_mode(self._state)

    @property
    def last_diagnostic(self) -> str:
        return self._state.diagnostic

    def mark_failed(self, error: Exception | str) -> ResolutionState:
        """Cascade away from the current mode without making a call."""
        previous = self._state
        self._state = cascade(previous, self.context, error)
        logger.warning(
            "LLM %s mode failed (%s); now %s", previous.mode, str(error).split("\n", 1)[0], describe_mode(self._state)
        )
        return self._state

    def _terminal_error(self) -> ProviderResolutionError:
        state = self._state
        reason = f"; last error: {state.last_error}" if state.last_error else ""
        return ProviderResolutionError(
            f"No usable LLM backend ({state.diagnostic}){reason}",
            status_code=500 if state.last_error else 401,
            diagnostic=state.diagnostic,
        )

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        """Send *messages* through the current backend, cascading until one answers.

        Raises:
            ProviderResolutionError: When every mode has failed.
        """
        while True:
            client = self._state.client
            if client is None:
                raise self._terminal_error()
            try:
                response = client.chat(messages, options)
            except InvocationError as exc:
                self.mark_failed(exc)
                continue
            self.usage.add(response)
            return response

    def complete(self, prompt: str, options: LLMOptions | None = None) -> str:
        return self.chat(messages_from_prompt(prompt), options).content
