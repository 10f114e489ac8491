"""Registry of clients connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime
import threading
from typing import TypedDict

from signalrelay.session import Session


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


class EntrySummary(TypedDict):
    """JSON serializable summary of a registry entry."""

    clientId: str  # noqa: N815
    address: str
    platform: str | None
    version: str | None
    connectedAt: str  # noqa: N815


@dataclasses.dataclass(frozen=True, eq=False)
class RegistryEntry:
    """Record binding an identifier to a client session.

    Attributes:
        identifier: Identifier chosen by the client.
        session: Session handle of the client connection.
        origin_address: Address the client connected from.
        platform: Optional platform declared by the client.
        version: Optional client version declared by the client.
        connected_at: Time the client registered at.
    """

    identifier: str
    session: Session
    origin_address: str
    platform: str | None = None
    version: str | None = None
    connected_at: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        connected_at = self.connected_at.strftime('%Y-%m-%d %H:%M:%S %Z')
        return (
            f'{self.__class__.__name__}(identifier={self.identifier}, '
            f'address={self.origin_address}, platform={self.platform}, '
            f'version={self.version}, connected_at={connected_at})'
        )

    def summary(self) -> EntrySummary:
        """Summarize the entry for status reporting."""
        return {
            'clientId': self.identifier,
            'address': self.origin_address,
            'platform': self.platform,
            'version': self.version,
            'connectedAt': self.connected_at.isoformat(),
        }


class SessionRegistry:
    """Mapping of client identifiers to registry entries.

    At most one entry exists per identifier. All operations are serialized
    by a single lock so the registry can be shared between connection
    handlers and the periodic reaper. No transport I/O happens while the
    lock is held.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RegistryEntry] = {}

    def __len__(self) -> int:
        return self.size()

    def register(
        self,
        identifier: str,
        session: Session,
        *,
        origin_address: str,
        platform: str | None = None,
        version: str | None = None,
    ) -> RegistryEntry | None:
        """Insert or replace the entry for an identifier.

        Registration always succeeds. A later registration of an identifier
        replaces the prior entry.

        Args:
            identifier: Identifier chosen by the client.
            session: Session handle of the client.
            origin_address: Address the client connected from.
            platform: Optional platform declared by the client.
            version: Optional client version declared by the client.

        Returns:
            The entry that was replaced or `None` if the identifier was not \
            registered.
        """
        entry = RegistryEntry(
            identifier=identifier,
            session=session,
            origin_address=origin_address,
            platform=platform,
            version=version,
        )
        with self._lock:
            previous = self._entries.get(identifier)
            self._entries[identifier] = entry
        return previous

    def unregister(
        self,
        identifier: str,
        session: Session | None = None,
    ) -> bool:
        """Remove the entry for an identifier if present.

        Args:
            identifier: Identifier to remove.
            session: Only remove the entry if it is bound to this session.
                Used when a session closes so that a session which was
                superseded by a newer registration does not remove the
                newer entry.

        Returns:
            If an entry was removed.
        """
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None:
                return False
            if session is not None and entry.session is not session:
                return False
            del self._entries[identifier]
            return True

    def lookup(self, identifier: str) -> RegistryEntry | None:
        """Get the entry for an identifier."""
        with self._lock:
            return self._entries.get(identifier, None)

    def size(self) -> int:
        """Get the number of registered identifiers."""
        with self._lock:
            return len(self._entries)

    def entries(self) -> list[RegistryEntry]:
        """Get a list of all entries."""
        with self._lock:
            return list(self._entries.values())

    def snapshot(self) -> list[EntrySummary]:
        """Get a summary of every entry sorted by identifier."""
        entries = sorted(self.entries(), key=lambda e: e.identifier)
        return [entry.summary() for entry in entries]

    def reap_closed(self) -> list[str]:
        """Remove entries whose session is no longer open.

        Returns:
            Identifiers that were removed. Empty if every registered \
            session is still open.
        """
        with self._lock:
            closed = [
                identifier
                for identifier, entry in self._entries.items()
                if not entry.session.is_open()
            ]
            for identifier in closed:
                del self._entries[identifier]
        return closed
