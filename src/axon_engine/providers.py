"""Provider profiles discovered from on-disk agent configuration.

Three file shapes are understood, checked in priority order:

* ``~/.omo/providers.yaml``: an explicit ``providers`` list with optional
  ``default_provider`` and ``fallback_chain``.
* ``~/.config/opencode/oh-my-opencode.json``: an ``agents`` map whose model
  strings carry the provider type as a ``type/`` prefix.
* ``~/.config/opencode/opencode.json``: a ``provider`` map keyed by type.

Each file is classified into a source, each source is parsed into a
``ProviderCatalog``, and the first catalog with providers wins.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

PROXY_PROVIDER_TYPE = "antigravity"
PRIMARY_TYPE_PRIORITY: tuple[str, ...] = ("antigravity", "anthropic", "openai", "google", "sisyphus")
_ENV_REFERENCE = re.compile(r"^\$\{(\w+)\}$")
_NAMESPACE_PREFIX = re.compile(r"^[^/]+/")


class ProviderProfile(BaseModel):
    name: str
    type: str = "unknown"
    models: list[str] = Field(default_factory=list)
    endpoint: str | None = None
    api_key: str | None = None

    @property
    def default_model(self) -> str | None:
        return self.models[0] if self.models else None


def config_paths(home: Path | None = None) -> list[Path]:
    base = home if home is not None else Path.home()
    return [
        base / ".omo" / "providers.yaml",
        base / ".config" / "opencode" / "oh-my-opencode.json",
        base / ".config" / "opencode" / "opencode.json",
    ]


def proxy_accounts_path(home: Path | None = None) -> Path:
    base = home if home is not None else Path.home()
    return base / ".config" / "opencode" / "antigravity-accounts.json"


def clean_model_name(model: str, *, provider_type: str = "") -> str:
    """Strip one leading ``namespace/`` segment unless the call is proxy-routed."""
    if provider_type == PROXY_PROVIDER_TYPE:
        return model
    return _NAMESPACE_PREFIX.sub("", model)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProvidersYamlSource:
    path: Path
    document: dict[str, Any]
    kind: Literal["providers_yaml"] = "providers_yaml"


@dataclass(frozen=True)
class AgentsJsonSource:
    path: Path
    agents: dict[str, Any]
    kind: Literal["agents_json"] = "agents_json"


@dataclass(frozen=True)
class ProviderMapJsonSource:
    path: Path
    providers: dict[str, Any]
    kind: Literal["provider_map_json"] = "provider_map_json"


ConfigSource = ProvidersYamlSource | AgentsJsonSource | ProviderMapJsonSource


@dataclass
class ProviderCatalog:
    providers: list[ProviderProfile] = field(default_factory=list)
    default_provider: str | None = None
    fallback_chain: list[str] = field(default_factory=list)
    source_path: Path | None = None

    def has_providers(self) -> bool:
        return bool(self.providers)

    def get(self, name: str) -> ProviderProfile | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def primary(self) -> ProviderProfile | None:
        """Pick the primary provider: default, then fallback chain, then type priority, then first."""
        if self.default_provider:
            provider = self.get(self.default_provider)
            if provider is not None:
                return provider
        for name in self.fallback_chain:
            provider = self.get(name)
            if provider is not None:
                return provider
        for name in PRIMARY_TYPE_PRIORITY:
            provider = self.get(name)
            if provider is not None:
                return provider
        return self.providers[0] if self.providers else None


def classify_source(path: Path, text: str) -> ConfigSource | None:
    """Classify a config file's contents into a source, or ``None`` if it declares no providers.

    Raises:
        ValueError: If the file cannot be parsed as YAML/JSON.
    """
    if path.suffix in {".yaml", ".yml"}:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML in {path}: {exc}") from exc
        if isinstance(document, dict) and document.get("providers"):
            return ProvidersYamlSource(path=path, document=document)
        return None

    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON in {path}: {exc}") from exc
    if not isinstance(document, dict):
        return None
    agents = document.get("agents")
    if isinstance(agents, dict) and agents:
        return AgentsJsonSource(path=path, agents=agents)
    provider_map = document.get("provider")
    if isinstance(provider_map, dict) and provider_map:
        return ProviderMapJsonSource(path=path, providers=provider_map)
    return None


def _parse_providers_yaml(source: ProvidersYamlSource) -> ProviderCatalog:
    providers: list[ProviderProfile] = []
    for raw in source.document.get("providers") or []:
        if not isinstance(raw, dict):
            continue
        try:
            profile = ProviderProfile.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Skipping malformed provider entry in %s: %s", source.path, exc)
            continue
        if profile.type == "unknown":
            profile.type = profile.name
        providers.append(profile)
    chain = source.document.get("fallback_chain") or []
    return ProviderCatalog(
        providers=providers,
        default_provider=source.document.get("default_provider"),
        fallback_chain=[str(name) for name in chain],
        source_path=source.path,
    )


def _parse_agents_json(source: AgentsJsonSource) -> ProviderCatalog:
    providers: list[ProviderProfile] = []
    for name, agent in source.agents.items():
        model = ""
        if isinstance(agent, dict):
            model = str(agent.get("model") or "")
        provider_type = model.split("/", 1)[0] if model else ""
        providers.append(
            ProviderProfile(name=name, type=provider_type or "unknown", models=[model or "unknown"])
        )
    default = "sisyphus" if "sisyphus" in source.agents else None
    return ProviderCatalog(providers=providers, default_provider=default, source_path=source.path)


def _parse_provider_map_json(source: ProviderMapJsonSource) -> ProviderCatalog:
    providers: list[ProviderProfile] = []
    for name, details in source.providers.items():
        details = details if isinstance(details, dict) else {}
        models = details.get("models") or {}
        providers.append(
            ProviderProfile(
                name=name,
                type=name,
                models=list(models.keys()) if isinstance(models, dict) else [],
                endpoint=details.get("endpoint"),
            )
        )
    return ProviderCatalog(providers=providers, source_path=source.path)


_PARSERS = {
    "providers_yaml": _parse_providers_yaml,
    "agents_json": _parse_agents_json,
    "provider_map_json": _parse_provider_map_json,
}


def parse_source(source: ConfigSource) -> ProviderCatalog:
    return _PARSERS[source.kind](source)


def merge_catalogs(catalogs: list[ProviderCatalog]) -> ProviderCatalog:
    """Return the first catalog with providers; an empty catalog if none has any."""
    for catalog in catalogs:
        if catalog.has_providers():
            return catalog
    return ProviderCatalog()


def load_provider_catalog(paths: list[Path] | None = None) -> ProviderCatalog:
    """Discover provider profiles from the config files in priority order.

    Unreadable or malformed files are logged and skipped.
    """
    catalogs: list[ProviderCatalog] = []
    for path in paths if paths is not None else config_paths():
        if not path.is_file():
            continue
        try:
            source = classify_source(path, path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Failed to parse provider config at %s: %s", path, exc)
            continue
        if source is None:
            continue
        catalog = parse_source(source)
        catalogs.append(catalog)
        if catalog.has_providers():
            logger.debug("Loaded %d provider(s) from %s", len(catalog.providers), path)
            break
    return merge_catalogs(catalogs)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialResolver:
    """Resolve provider credentials: explicit key, then ``<TYPE>_API_KEY``, then the proxy token."""

    def __init__(self, *, env: Mapping[str, str] | None = None, accounts_path: Path | None = None) -> None:
        self.env = env if env is not None else os.environ
        self.accounts_path = accounts_path if accounts_path is not None else proxy_accounts_path()

    def _env(self, name: str) -> str | None:
        value = (self.env.get(name) or "").strip()
        return value or None

    def explicit_key(self, provider: ProviderProfile) -> str | None:
        if not provider.api_key:
            return None
        match = _ENV_REFERENCE.match(provider.api_key)
        if match:
            return self._env(match.group(1))
        return provider.api_key.strip() or None

    def env_key(self, provider: ProviderProfile) -> str | None:
        provider_type = provider.type or provider.name
        return self._env(f"{provider_type.upper()}_API_KEY")

    def proxy_token(self) -> str | None:
        if not self.accounts_path.is_file():
            return None
        try:
            payload = json.loads(self.accounts_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.debug("Ignoring unreadable proxy accounts file %s: %s", self.accounts_path, exc)
            return None
        if not isinstance(payload, dict):
            return None
        accounts = payload.get("accounts")
        if not isinstance(accounts, list) or not accounts:
            return None
        index = payload.get("activeIndex", 0)
        if not isinstance(index, int) or not 0 <= index < len(accounts):
            return None
        account = accounts[index]
        if not isinstance(account, dict):
            return None
        token = account.get("token") or account.get("refreshToken")
        return str(token) if token else None

    def resolve(self, provider: ProviderProfile) -> str | None:
        return self.explicit_key(provider) or self.env_key(provider) or self.proxy_token()

    def is_proxy_credential(self, provider: ProviderProfile) -> bool:
        """True when the only credential available for *provider* is the proxy token."""
        return self.explicit_key(provider) is None and self.env_key(provider) is None and self.proxy_token() is not None

    def usable_providers(self, catalog: ProviderCatalog) -> list[ProviderProfile]:
        return [provider for provider in catalog.providers if self.resolve(provider)]
