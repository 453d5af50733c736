"""Session manager owning the single active backend and its pool lifecycle."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .backends import ConnectionBackend, create_backend
from .models import ConnectionConfig

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]
BackendFactory = Callable[[ConnectionConfig], ConnectionBackend]


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active connection + health)."""

    config: ConnectionConfig | None
    connected: bool
    refreshed_at: datetime
    status: str = "Connected"
    latency_ms: int | None = None


class SessionManager:
    """Creates backends on first use and closes them when the connection changes."""

    def __init__(self, *, backend_factory: BackendFactory = create_backend) -> None:
        self._backend_factory = backend_factory
        self._backend: ConnectionBackend | None = None
        self._listeners: set[SessionListener] = set()
        self._state: SessionState | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SessionState | None:
        """Current session state."""

        return self._state

    @property
    def backend(self) -> ConnectionBackend | None:
        """Backend for the active connection, if one is open."""

        return self._backend

    async def backend_for(self, config: ConnectionConfig) -> ConnectionBackend:
        """Return a connected backend for ``config``, replacing the active one if needed."""

        async with self._lock:
            current = self._backend
            if current is not None and current.config == config and current.connected:
                return current
            if current is not None:
                self._backend = None
                await current.close()
            backend = self._backend_factory(config)
            started = time.perf_counter()
            try:
                await backend.connect()
            except Exception:
                self._update_state(config, connected=False, status="Connection failed")
                raise
            latency_ms = int((time.perf_counter() - started) * 1000)
            self._backend = backend
            self._update_state(config, connected=True, latency_ms=latency_ms)
            return backend

    async def disconnect(self) -> None:
        """Close the active backend (bounded by its close deadline)."""

        async with self._lock:
            backend = self._backend
            self._backend = None
            if backend is None:
                return
            await backend.close()
            self._update_state(None, connected=False, status="Disconnected")

    async def shutdown(self) -> None:
        """Disconnect and drop every listener; used on process exit."""

        await self.disconnect()
        self._listeners.clear()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        if self._state:
            listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _update_state(
        self,
        config: ConnectionConfig | None,
        *,
        connected: bool,
        status: str = "Connected",
        latency_ms: int | None = None,
    ) -> None:
        self._state = SessionState(
            config=config,
            connected=connected,
            refreshed_at=datetime.now(tz=timezone.utc),
            status=status,
            latency_ms=latency_ms,
        )
        LOG.debug("Session state: %s", status)
        for listener in tuple(self._listeners):
            listener(self._state)


__all__ = ["BackendFactory", "SessionListener", "SessionManager", "SessionState"]
