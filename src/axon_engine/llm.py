from __future__ import annotations

import json
import logging
import subprocess
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from .errors import InvocationError
from .pricing import calculate_cost
from .providers import PROXY_PROVIDER_TYPE, CredentialResolver, ProviderCatalog, ProviderProfile, clean_model_name

logger = logging.getLogger(__name__)

ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
PROXY_ENDPOINT = "https://api.antigravity.ai/v1"
GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta"
DEEPSEEK_ENDPOINT = "https://api.deepseek.com/v1"

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
DEFAULT_OPENAI_MODEL = "gpt-4o"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_DEEPSEEK_MODEL = "deepseek-chat"

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3

HttpPost = Callable[[str, dict[str, Any], dict[str, str], float], dict[str, Any]]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class LLMOptions:
    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 8000
    system: str | None = None
    timeout: float = _DEFAULT_TIMEOUT


class LLMClient(Protocol):
    """Anything that turns a message list into an ``LLMResponse``."""

    name: str

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        ...


def http_post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float) -> dict[str, Any]:
    """Send a JSON POST request and return the parsed JSON response.

    Raises:
        InvocationError: If the request fails or the response is not valid JSON.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json", **headers},
        data=json.dumps(payload).encode("utf-8"),
    )
    # Never log the query string; Gemini carries its key there.
    safe_url = url.split("?", 1)[0]
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = ""
        try:
            body = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        logger.error("HTTP %d from %s: %s", exc.code, safe_url, body)
        raise InvocationError(f"HTTP {exc.code} from {safe_url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", safe_url, exc.reason)
        raise InvocationError(f"Failed to reach {safe_url}: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", safe_url)
        raise InvocationError(f"Invalid JSON response from {safe_url}") from exc


def _split_system(messages: list[ChatMessage], options: LLMOptions) -> tuple[str | None, list[ChatMessage]]:
    system = next((message.content for message in messages if message.role == "system"), None)
    return system or options.system, [message for message in messages if message.role != "system"]


class AnthropicMessagesClient:
    """Anthropic messages protocol over HTTP.

    Also serves the universal proxy, which speaks the same protocol but takes
    the full ``namespace/model`` string. Pricing always uses the cleaned name.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        endpoint: str | None = None,
        proxy: bool = False,
        http_post: HttpPost = http_post_json,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.proxy = proxy
        self.endpoint = (endpoint or (PROXY_ENDPOINT if proxy else ANTHROPIC_ENDPOINT)).rstrip("/")
        self.name = "antigravity-proxy" if proxy else "anthropic"
        self._http_post = http_post

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        options = options or LLMOptions()
        raw_model = options.model or self.model
        wire_model = raw_model if self.proxy else clean_model_name(raw_model)
        priced_model = clean_model_name(raw_model)
        system, chat_messages = _split_system(messages, options)

        payload: dict[str, Any] = {
            "model": wire_model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": message.role, "content": message.content} for message in chat_messages],
        }
        if system:
            payload["system"] = system
        data = self._http_post(
            f"{self.endpoint}/messages",
            payload,
            {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
            options.timeout,
        )
        blocks = data.get("content") or []
        text = "".join(block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text")
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return LLMResponse(
            content=text,
            model=priced_model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(priced_model, input_tokens, output_tokens),
        )


class OpenAICompatibleClient:
    """OpenAI chat completions through ``langchain-openai``; ``base_url`` selects compatible vendors."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: str | None = None,
        name: str = "openai",
        max_retries: int = _DEFAULT_MAX_RETRIES,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.name = name
        self.max_retries = max_retries

    def _chat_model(self, model: str, options: LLMOptions) -> ChatOpenAI:
        kwargs: dict[str, Any] = {
            "model": model,
            "api_key": self.api_key,
            "temperature": options.temperature,
            "timeout": options.timeout,
            "max_retries": self.max_retries,
            "max_tokens": options.max_tokens,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return ChatOpenAI(**kwargs)

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        options = options or LLMOptions()
        model = clean_model_name(options.model or self.model)
        system, chat_messages = _split_system(messages, options)
        prompt: list[tuple[str, str]] = []
        if system:
            prompt.append(("system", system))
        prompt.extend((message.role, message.content) for message in chat_messages)
        try:
            result = self._chat_model(model, options).invoke(prompt)
        except Exception as exc:  # noqa: BLE001 - vendor SDK raises its own hierarchy.
            raise InvocationError(f"{self.name} chat completion failed: {exc}") from exc

        content = result.content if isinstance(result.content, str) else json.dumps(result.content)
        usage = getattr(result, "usage_metadata", None) or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        return LLMResponse(
            content=content,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(model, input_tokens, output_tokens),
        )


class GeminiClient:
    """Google ``generateContent`` over HTTP."""

    name = "google"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_GEMINI_MODEL,
        endpoint: str | None = None,
        http_post: HttpPost = http_post_json,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.endpoint = (endpoint or GEMINI_ENDPOINT).rstrip("/")
        self._http_post = http_post

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        options = options or LLMOptions()
        model = clean_model_name(options.model or self.model)
        system, chat_messages = _split_system(messages, options)
        payload: dict[str, Any] = {
            "contents": [
                {"role": "model" if message.role == "assistant" else "user", "parts": [{"text": message.content}]}
                for message in chat_messages
            ],
            "generationConfig": {"temperature": options.temperature, "maxOutputTokens": options.max_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        url = f"{self.endpoint}/models/{model}:generateContent?key={urllib.parse.quote(self.api_key)}"
        data = self._http_post(url, payload, {}, options.timeout)

        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or [{}]
        usage = data.get("usageMetadata") or {}
        input_tokens = int(usage.get("promptTokenCount") or 0)
        output_tokens = int(usage.get("candidatesTokenCount") or 0)
        return LLMResponse(
            content=parts[0].get("text", ""),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(model, input_tokens, output_tokens),
        )


class AgentCliClient:
    """Single-shot chat through the coding-agent executable's JSON output mode."""

    def __init__(self, *, command: str = "opencode", agent: str = "sisyphus", timeout: float = 600.0) -> None:
        self.command = command
        self.agent = agent
        self.timeout = timeout
        self.name = f"{command} --agent {agent}"

    @staticmethod
    def format_messages(messages: list[ChatMessage]) -> str:
        return "\n\n".join(f"<{message.role}>\n{message.content}\n</{message.role}>" for message in messages)

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        argv = [self.command, "--agent", self.agent, "--json-output"]
        try:
            completed = subprocess.run(
                argv,
                input=self.format_messages(messages),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except OSError as exc:
            raise InvocationError(f"Failed to start {self.command}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InvocationError(f"{self.command} did not answer within {self.timeout}s") from exc
        if completed.returncode != 0:
            raise InvocationError(f"{self.command} exited with code {completed.returncode}: {completed.stderr.strip()[:500]}")
        try:
            parsed = json.loads(completed.stdout)
        except json.JSONDecodeError as exc:
            raise InvocationError(f"{self.command} returned malformed JSON output") from exc
        if not isinstance(parsed, dict):
            raise InvocationError(f"{self.command} returned a non-object JSON payload")

        usage = parsed.get("usage") or {}
        return LLMResponse(
            content=str(parsed.get("response") or parsed.get("content") or completed.stdout),
            model=str(parsed.get("model_used") or parsed.get("model") or "unknown"),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            cost_usd=float(usage.get("cost_usd") or 0.0),
        )


class ProviderRoutedClient:
    """Dispatch each call on the primary configured provider's type.

    ``google`` and ``openai`` providers whose only credential is the proxy
    token are sent through the Anthropic-protocol proxy instead. Unknown
    types are treated as Anthropic-compatible.
    """

    def __init__(
        self,
        *,
        catalog: ProviderCatalog,
        credentials: CredentialResolver,
        http_post: HttpPost = http_post_json,
    ) -> None:
        self.catalog = catalog
        self.credentials = credentials
        self._http_post = http_post
        primary = catalog.primary()
        self.name = f"provider:{primary.name}" if primary else "provider:none"

    def client_for(self, provider: ProviderProfile) -> LLMClient:
        api_key = self.credentials.resolve(provider)
        if not api_key:
            raise InvocationError(f"No API key resolved for provider {provider.name}")
        provider_type = provider.type or provider.name
        proxied = provider_type in {"google", "openai"} and self.credentials.is_proxy_credential(provider)

        if provider_type == PROXY_PROVIDER_TYPE or proxied:
            return AnthropicMessagesClient(
                api_key=api_key,
                model=provider.default_model or DEFAULT_ANTHROPIC_MODEL,
                endpoint=provider.endpoint,
                proxy=True,
                http_post=self._http_post,
            )
        if provider_type == "google":
            return GeminiClient(
                api_key=api_key,
                model=provider.default_model or DEFAULT_GEMINI_MODEL,
                endpoint=provider.endpoint,
                http_post=self._http_post,
            )
        if provider_type == "openai":
            return OpenAICompatibleClient(
                api_key=api_key, model=provider.default_model or DEFAULT_OPENAI_MODEL, base_url=provider.endpoint
            )
        if provider_type == "deepseek":
            return OpenAICompatibleClient(
                api_key=api_key,
                model=provider.default_model or DEFAULT_DEEPSEEK_MODEL,
                base_url=provider.endpoint or DEEPSEEK_ENDPOINT,
                name="deepseek",
            )
        if provider_type != "anthropic":
            logger.warning("Unknown provider type %r; using the Anthropic-compatible protocol", provider_type)
        return AnthropicMessagesClient(
            api_key=api_key,
            model=provider.default_model or DEFAULT_ANTHROPIC_MODEL,
            endpoint=provider.endpoint,
            http_post=self._http_post,
        )

    def chat(self, messages: list[ChatMessage], options: LLMOptions | None = None) -> LLMResponse:
        provider = self.catalog.primary()
        if provider is None:
            raise InvocationError("No LLM provider configured")
        return self.client_for(provider).chat(messages, options)


def messages_from_prompt(prompt: str, *, system: str | None = None) -> list[ChatMessage]:
    messages: list[ChatMessage] = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=prompt))
    return messages


class UsageSummary(BaseModel):
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    models: list[str] = Field(default_factory=list)

    def add(self, response: LLMResponse) -> None:
        self.calls += 1
        self.input_tokens += response.input_tokens
        self.output_tokens += response.output_tokens
        self.cost_usd += response.cost_usd
        if response.model not in self.models:
            self.models.append(response.model)
