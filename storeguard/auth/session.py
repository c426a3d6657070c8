"""
Session Controller Module

Owns the lifecycle of the current principal:

    UNINITIALIZED -> INITIALIZING -> {AUTHENTICATED, ANONYMOUS} -> UNINITIALIZED

- One initialization per activation, shared by concurrent callers
- Session-change notifications consumed from a channel, one at a time
- Generation counter: results computed for a closed activation are
  dropped at apply time
- Role flags derived from the cached principal (advisory only, use
  AdminAccessGuard before privileged mutations)
- Idle-timeout helpers for session expiry warnings
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from ..config import SecuritySettings, get_settings
from ..exceptions import BackendError
from .models import Principal, Session


logger = logging.getLogger(__name__)

PROFILE_LOAD_FAILED = "Failed to load user profile"
SESSION_LOAD_FAILED = "Session validation failed"


class SessionEvent(str, Enum):
    """Session-change notifications recognized by the controller."""

    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"


@dataclass(frozen=True)
class SessionChange:
    """One notification from the identity provider."""
    event: str
    session: Optional[Session] = None


_CLOSED = object()


class SessionSubscription:
    """
    Channel of SessionChange messages.

    The provider publishes, the controller iterates. Closing the channel
    is unsubscribing: iteration stops and later publishes are dropped.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, change: SessionChange) -> bool:
        """
        Deliver a change to the subscriber.

        Returns:
            False if the subscription is already closed
        """
        if self._closed:
            return False
        self._queue.put_nowait(change)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> SessionChange:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise StopAsyncIteration
        return item


class IdentityProvider(Protocol):
    """External session/identity backend."""

    async def get_session(self) -> Optional[Session]: ...

    async def fetch_profile(self, principal_id: str) -> Principal: ...

    def subscribe_session_changes(self) -> SessionSubscription: ...


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the controller, replaced on every transition."""
    state: SessionState = SessionState.UNINITIALIZED
    principal: Optional[Principal] = None
    loading: bool = False
    initialized: bool = False
    error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None

    @property
    def is_admin(self) -> bool:
        return self.principal is not None and self.principal.is_admin

    @property
    def is_super_admin(self) -> bool:
        return self.principal is not None and self.principal.is_super_admin

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'principal': self.principal,
            'loading': self.loading,
            'initialized': self.initialized,
            'error': self.error,
            'is_authenticated': self.is_authenticated,
            'is_admin': self.is_admin,
            'is_super_admin': self.is_super_admin,
        }


class SessionController:
    """
    Tracks the current principal for one application context.

    Example:
        >>> controller = SessionController(provider)
        >>> await controller.initialize()
        >>> controller.snapshot.is_authenticated
        True
        >>> await controller.aclose()
    """

    def __init__(self, provider: IdentityProvider):
        """
        Args:
            provider: Session lookup, profile fetch and change notifications
        """
        self._provider = provider
        self._snapshot = SessionSnapshot()
        self._generation = 0
        self._init_task: Optional[asyncio.Task] = None
        self._subscription: Optional[SessionSubscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[SessionSnapshot], None]] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def principal(self) -> Optional[Principal]:
        return self._snapshot.principal

    @property
    def is_authenticated(self) -> bool:
        return self._snapshot.is_authenticated

    @property
    def is_admin(self) -> bool:
        return self._snapshot.is_admin

    @property
    def is_super_admin(self) -> bool:
        return self._snapshot.is_super_admin

    def add_listener(self, listener: Callable[[SessionSnapshot], None]) -> None:
        """Call `listener` with every new snapshot."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SessionSnapshot], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> SessionSnapshot:
        """
        Resolve the current session and start listening for changes.

        Repeated or concurrent calls share the same initialization.

        Returns:
            Snapshot after initialization settled
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize(self._generation))
        await asyncio.shield(self._init_task)
        return self._snapshot

    async def _initialize(self, generation: int) -> None:
        self._apply(generation, state=SessionState.INITIALIZING, loading=True)

        principal, error = None, None
        try:
            session = await self._provider.get_session()
        except BackendError as exc:
            logger.error("Session lookup failed: %s", exc.message)
            session = None
            error = None if exc.is_suppressed else SESSION_LOAD_FAILED
        except Exception:
            logger.exception("Session lookup failed")
            session = None
            error = SESSION_LOAD_FAILED

        if session is not None and not session.is_expired():
            principal, error = await self._load_principal(session)
        else:
            logger.debug("No existing session")

        if not self._apply(
            generation,
            state=SessionState.AUTHENTICATED if principal else SessionState.ANONYMOUS,
            principal=principal,
            loading=False,
            initialized=True,
            error=error,
        ):
            return

        self._subscription = self._provider.subscribe_session_changes()
        self._consumer = asyncio.ensure_future(self._consume(self._subscription, generation))

    async def _load_principal(self, session: Session) -> Tuple[Optional[Principal], Optional[str]]:
        try:
            return await self._provider.fetch_profile(session.principal_id), None
        except BackendError as exc:
            if exc.is_suppressed:
                logger.warning("Profile fetch failed with suppressed error %s", exc.code)
                return None, None
            logger.error("Profile fetch failed: %s", exc.message)
            return None, PROFILE_LOAD_FAILED
        except Exception:
            logger.exception("Profile fetch failed")
            return None, PROFILE_LOAD_FAILED

    async def _consume(self, subscription: SessionSubscription, generation: int) -> None:
        async for change in subscription:
            if generation != self._generation:
                break
            await self._handle_change(change, generation)

    async def _handle_change(self, change: SessionChange, generation: int) -> None:
        logger.debug("Session change: %s", change.event)

        if change.event == SessionEvent.SIGNED_IN and change.session is not None:
            self._apply(generation, loading=True)
            principal, error = await self._load_principal(change.session)
            self._apply(
                generation,
                state=SessionState.AUTHENTICATED if principal else SessionState.ANONYMOUS,
                principal=principal,
                loading=False,
                error=error,
            )
        elif change.event == SessionEvent.SIGNED_OUT:
            self._apply(generation, state=SessionState.ANONYMOUS, principal=None,
                        loading=False, error=None)
        elif change.event == SessionEvent.TOKEN_REFRESHED and change.session is not None:
            principal, _ = await self._load_principal(change.session)
            if principal is not None:
                self._apply(generation, state=SessionState.AUTHENTICATED,
                            principal=principal, error=None)
        # anything else is a no-op

    def close(self) -> None:
        """
        Tear down: unsubscribe and drop every in-flight result.

        The controller returns to UNINITIALIZED and can be initialized
        again.
        """
        self._generation += 1
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self._init_task = None
        self._set(SessionSnapshot())

    async def aclose(self) -> None:
        """close() and wait for the change consumer to stop."""
        consumer = self._consumer
        self.close()
        if consumer is not None:
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "SessionController":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------

    def _apply(self, generation: int, **changes) -> bool:
        """Apply changes computed under `generation`; stale ones are dropped."""
        if generation != self._generation:
            logger.debug("Discarding stale session update")
            return False
        self._set(dataclasses.replace(self._snapshot, **changes))
        return True

    def _set(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Session listener failed")


# ============================================================================
# Idle timeout
# ============================================================================

def is_session_expired(last_activity: float, now: Optional[float] = None,
                       settings: Optional[SecuritySettings] = None) -> bool:
    """True once the idle timeout has passed since `last_activity`."""
    settings = settings or get_settings()
    if now is None:
        now = time.time()
    return now - last_activity > settings.session_timeout_seconds


def should_show_warning(last_activity: float, now: Optional[float] = None,
                        settings: Optional[SecuritySettings] = None) -> bool:
    """True inside the warning period just before the idle timeout."""
    settings = settings or get_settings()
    if now is None:
        now = time.time()
    time_left = settings.session_timeout_seconds - (now - last_activity)
    return 0 < time_left <= settings.session_warning_seconds
