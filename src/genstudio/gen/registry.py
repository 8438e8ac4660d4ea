from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import ConfigError, StudioConfig, configured_provider_names, find_config, load_config
from .errors import ProviderError
from .provider import GenerativeProvider
from .providers.gemini import GeminiProvider
from .providers.placeholder import PlaceholderProvider


class ProviderRegistry:
    def __init__(self, config: StudioConfig):
        self._config = config
        self._providers: dict[str, GenerativeProvider] = {}

    @classmethod
    def from_config_file(cls, config_path: Optional[Path] = None) -> "ProviderRegistry":
        if config_path is None:
            config_path = find_config()
        config = load_config(config_path)
        return cls(config)

    @property
    def config(self) -> StudioConfig:
        return self._config

    def get_provider(self, name: str) -> GenerativeProvider:
        if name in self._providers:
            return self._providers[name]

        provider = self._instantiate_provider(name)
        self._providers[name] = provider
        return provider

    def get_default_provider(self) -> GenerativeProvider:
        return self.get_provider(self._config.default_provider)

    def close(self) -> None:
        for provider in self._providers.values():
            provider.close()
        self._providers.clear()

    def _instantiate_provider(self, name: str) -> GenerativeProvider:
        if name == "placeholder":
            return PlaceholderProvider(self._config.providers.placeholder)

        if name == "gemini":
            if self._config.providers.gemini is None:
                raise ConfigError(
                    "Provider 'gemini' is not configured in studio.toml. "
                    "Add [providers.gemini] section."
                )
            try:
                return GeminiProvider(self._config.providers.gemini)
            except ProviderError as e:
                raise ConfigError(str(e)) from e

        available = configured_provider_names(self._config)
        raise ConfigError(
            f"Unknown provider: '{name}'. Available providers: {sorted(available)}"
        )
