"""Registry of pluggable providers, keyed by family and name."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


@dataclass
class ProviderEntry:
    """Metadata about a registered provider."""

    family: str  # "storage"
    name: str  # "LOCAL", "S3", ...
    cls: type
    extras: list[str] = field(default_factory=list)  # pip extras needed


class ProviderRegistry:
    """Maps (family, name) to provider classes."""

    def __init__(self) -> None:
        self._providers: dict[str, dict[str, ProviderEntry]] = {}

    def register(
        self,
        family: str,
        name: str,
        cls: type,
        extras: list[str] | None = None,
    ) -> None:
        self._providers.setdefault(family, {})[name] = ProviderEntry(
            family=family, name=name, cls=cls, extras=extras or []
        )
        log.debug("Registered provider: %s/%s", family, name)

    def get_entry(self, family: str, name: str) -> ProviderEntry:
        """Look up a provider without instantiating it. Raises KeyError."""
        fam = self._providers.get(family)
        if fam is None:
            raise KeyError(f"Unknown provider family: {family!r}")
        entry = fam.get(name)
        if entry is None:
            raise KeyError(f"Unknown provider: {family}/{name!r}")
        return entry

    def get(self, family: str, name: str, config: dict | None = None) -> object:
        """Instantiate a provider, passing ``config`` when given."""
        entry = self.get_entry(family, name)
        if config is not None:
            return entry.cls(config)
        return entry.cls()

    def list_family(self, family: str) -> list[ProviderEntry]:
        return list(self._providers.get(family, {}).values())


# Global singleton
registry = ProviderRegistry()
