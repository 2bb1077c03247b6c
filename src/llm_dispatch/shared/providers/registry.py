"""In-memory registry of configured providers and their invocation handles."""

from __future__ import annotations

import dataclasses
import threading
from typing import Any

import structlog

from llm_dispatch.domain.exceptions import ProviderNotFoundError
from llm_dispatch.shared.providers.types import Capability, ProviderDescriptor

logger = structlog.get_logger(__name__)


@dataclasses.dataclass(frozen=True)
class RegistryEntry:
    descriptor: ProviderDescriptor
    handle: Any


class ProviderRegistry:
    """Thread-safe map of provider name → (descriptor, handle).

    Registration order is preserved and used as the stable tie-break by
    the selector.  Descriptors are replaced, never mutated.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()

    def register(self, descriptor: ProviderDescriptor, handle: Any = None) -> None:
        """Add a provider, or replace an existing one with the same name."""
        if not descriptor.name or not descriptor.name.strip():
            raise ValueError("provider name must not be empty")
        with self._lock:
            replaced = descriptor.name in self._entries
            self._entries[descriptor.name] = RegistryEntry(descriptor, handle)
        logger.info(
            "provider_registered",
            provider=descriptor.name,
            priority=descriptor.priority,
            replaced=replaced,
        )

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._entries.pop(name, None) is not None
        if removed:
            logger.info("provider_unregistered", provider=name)
        return removed

    def get(self, name: str) -> ProviderDescriptor | None:
        with self._lock:
            entry = self._entries.get(name)
        return entry.descriptor if entry else None

    def get_handle(self, name: str) -> Any:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise ProviderNotFoundError(name)
        return entry.handle

    def names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def entries(self) -> list[RegistryEntry]:
        with self._lock:
            return list(self._entries.values())

    def enabled_entries(self) -> list[RegistryEntry]:
        return [e for e in self.entries() if e.descriptor.enabled]

    def by_priority(self) -> list[ProviderDescriptor]:
        # sorted() is stable, so equal priorities keep registration order
        return sorted(
            (e.descriptor for e in self.enabled_entries()),
            key=lambda d: d.priority,
        )

    def find_by_capability(self, *capabilities: Capability) -> list[ProviderDescriptor]:
        return [
            e.descriptor
            for e in self.enabled_entries()
            if e.descriptor.supports(*capabilities)
        ]

    # ── Replace-on-update ────────────────────────────────────
    def set_enabled(self, name: str, enabled: bool) -> ProviderDescriptor:
        return self._update(name, enabled=enabled)

    def set_priority(self, name: str, priority: int) -> ProviderDescriptor:
        return self._update(name, priority=priority)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _update(self, name: str, **changes: Any) -> ProviderDescriptor:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                raise ProviderNotFoundError(name)
            descriptor = dataclasses.replace(entry.descriptor, **changes)
            self._entries[name] = RegistryEntry(descriptor, entry.handle)
        logger.info("provider_updated", provider=name, **changes)
        return descriptor
