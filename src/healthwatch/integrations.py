"""Integration records and the integration store contract.

The health monitor reads integration records to decide what to check and
writes them only to deactivate an integration after sustained failure.
Persistence itself lives outside this package; ``IntegrationStore`` is the
contract it must satisfy and ``InMemoryIntegrationStore`` is a thread-safe
reference implementation used by tests and local runs.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from healthwatch.types import IntegrationType


class IntegrationStoreError(Exception):
    """Raised when an integration record cannot be read or updated."""


@dataclass(frozen=True)
class Integration:
    """A user's connection to a calendar or video provider.

    Secrets are stored encrypted and only decrypted by the assessor right
    before a probe.

    Attributes:
        id: Integration identifier, unique within its integration type.
        user_id: Owner of the integration.
        provider: Provider name as stored (see ``healthwatch.types.Provider``).
        is_active: Whether the integration is in use and being monitored.
        name: Display name chosen by the user.
        base_url: Server URL for self-hosted providers.
        username: Login for CalDAV-style providers.
        calendar_paths: Calendar collection paths for CalDAV-style providers.
        encrypted_api_key: Encrypted API key for API-key providers.
        encrypted_password: Encrypted password for CalDAV-style providers.
        encrypted_access_token: Encrypted OAuth access token.
        encrypted_refresh_token: Encrypted OAuth refresh token.
        token_expires_at: Expiry of the OAuth access token.
        oauth_scope: Granted OAuth scope.
    """

    id: int
    user_id: int
    provider: str
    is_active: bool = True
    name: str = ""
    base_url: str | None = None
    username: str | None = None
    calendar_paths: tuple[str, ...] = ()
    encrypted_api_key: str | None = None
    encrypted_password: str | None = None
    encrypted_access_token: str | None = None
    encrypted_refresh_token: str | None = None
    token_expires_at: datetime | None = None
    oauth_scope: str | None = None


_INTEGRATION_FIELDS = frozenset(f.name for f in fields(Integration))


@runtime_checkable
class IntegrationStore(Protocol):
    """Read/deactivate access to integration records."""

    def list_active(self, integration_type: IntegrationType) -> list[Integration]:
        """Return all active integrations of a type."""
        ...  # pragma: no cover

    def list_for_user(self, integration_type: IntegrationType, user_id: int) -> list[Integration]:
        """Return every integration of a type owned by a user, active or not."""
        ...  # pragma: no cover

    def get(self, integration_type: IntegrationType, integration_id: int) -> Integration | None:
        """Return an integration, or None if it does not exist."""
        ...  # pragma: no cover

    def update(
        self,
        integration_type: IntegrationType,
        integration: Integration,
        attrs: Mapping[str, Any],
    ) -> Integration:
        """Persist attribute changes and return the updated record.

        Raises:
            IntegrationStoreError: If the record cannot be updated.
        """
        ...  # pragma: no cover


class InMemoryIntegrationStore:
    """Thread-safe in-memory ``IntegrationStore``."""

    def __init__(
        self,
        integrations: Mapping[IntegrationType, Iterable[Integration]] | None = None,
    ) -> None:
        self._records: dict[IntegrationType, dict[int, Integration]] = {
            integration_type: {} for integration_type in IntegrationType
        }
        self._lock = threading.Lock()
        for integration_type, records in (integrations or {}).items():
            for integration in records:
                self.add(integration_type, integration)

    def add(self, integration_type: IntegrationType, integration: Integration) -> Integration:
        """Insert or replace an integration record."""
        with self._lock:
            self._records[IntegrationType(integration_type)][integration.id] = integration
        return integration

    def delete(self, integration_type: IntegrationType, integration_id: int) -> None:
        with self._lock:
            self._records[IntegrationType(integration_type)].pop(integration_id, None)

    def list_active(self, integration_type: IntegrationType) -> list[Integration]:
        with self._lock:
            records = self._records[IntegrationType(integration_type)].values()
            return [record for record in records if record.is_active]

    def list_for_user(self, integration_type: IntegrationType, user_id: int) -> list[Integration]:
        with self._lock:
            records = self._records[IntegrationType(integration_type)].values()
            return [record for record in records if record.user_id == user_id]

    def get(self, integration_type: IntegrationType, integration_id: int) -> Integration | None:
        with self._lock:
            return self._records[IntegrationType(integration_type)].get(integration_id)

    def update(
        self,
        integration_type: IntegrationType,
        integration: Integration,
        attrs: Mapping[str, Any],
    ) -> Integration:
        unknown = set(attrs) - _INTEGRATION_FIELDS
        if unknown:
            raise IntegrationStoreError(f"Unknown integration attributes: {sorted(unknown)}")
        if "id" in attrs:
            raise IntegrationStoreError("Integration id cannot be changed")

        with self._lock:
            records = self._records[IntegrationType(integration_type)]
            current = records.get(integration.id)
            if current is None:
                raise IntegrationStoreError(
                    f"{integration_type} integration {integration.id} not found"
                )
            updated = replace(current, **attrs)
            records[integration.id] = updated
            return updated


__all__ = [
    "InMemoryIntegrationStore",
    "Integration",
    "IntegrationStore",
    "IntegrationStoreError",
]
