"""Name-to-class registry for pluggable providers.

Extraction and validation backends are both chosen by a settings field
(``APP_EXTRACTION_PROVIDER``, ``APP_VALIDATION_PROVIDER``); each keeps one
``ProviderRegistry`` of the implementations it knows about. New backends
can be registered at runtime without touching the factories.
"""

import logging
from typing import Any, Generic, Protocol, TypeVar

from services.shared.config import Settings

logger = logging.getLogger(__name__)


class Provider(Protocol):
    def __init__(self, settings: Settings) -> None: ...

    def is_available(self) -> bool: ...


P = TypeVar("P", bound=Provider)


class ProviderRegistry(Generic[P]):
    """Registry of provider classes of one kind.

    Args:
        kind: Label used in log and error messages ("extraction", "validation")
        providers: Built-in providers by name
    """

    def __init__(self, kind: str, providers: dict[str, type[P]]) -> None:
        self.kind = kind
        self._providers: dict[str, type[P]] = dict(providers)

    def register(self, name: str, provider_class: type[P]) -> None:
        self._providers[name] = provider_class
        logger.info(f"Registered {self.kind} provider: {name}")

    def unregister(self, name: str) -> None:
        self._providers.pop(name, None)

    def get(self, name: str) -> type[P]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in self._providers:
            available = ", ".join(self._providers)
            raise ValueError(
                f"Unknown {self.kind} provider: '{name}'. Available providers: {available}"
            )
        return self._providers[name]

    def names(self) -> list[str]:
        return list(self._providers)

    def create(self, name: str, settings: Settings, **kwargs: Any) -> P:
        """Instantiate the named provider, warning if it is not configured.

        Args:
            name: Registered provider name
            settings: Application settings passed to the provider
            **kwargs: Extra constructor arguments

        Returns:
            Provider instance (returned even when unavailable)

        Raises:
            ValueError: If the name is unknown
        """
        provider = self.get(name)(settings, **kwargs)
        if not provider.is_available():
            logger.warning(
                f"{self.kind.capitalize()} provider '{name}' is not fully available. "
                f"Check configuration (e.g., API keys, server URL)."
            )
        logger.info(f"Created {self.kind} provider: {name}")
        return provider
