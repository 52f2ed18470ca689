"""
Subscription manager.

One Subscription exists per scope, shared by reference-counted handles. A
subscription starts with a full scan (the first snapshot), then applies every
mutation event to the delivered list incrementally. When its channel is lost
it keeps the last-known list, reconnects with backoff and reconciles with a
fresh full scan that replaces the list wholesale.
"""
import asyncio
import bisect
import logging
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set

from pydantic import BaseModel
from starlette.requests import HTTPConnection
from sqlalchemy.exc import SQLAlchemyError

from portal.config import settings
from portal.exceptions import TransportError
from portal.realtime.feed import Channel, ChangeFeed, MutationEvent, MutationKind
from portal.realtime.scopes import Scope
from portal.schemas.announcements import AnnouncementRecord

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    OPENING = "opening"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ChangeType(str, Enum):
    SNAPSHOT = "snapshot"
    INSERT = "insert"
    REPLACE = "replace"
    REMOVE = "remove"
    STALE = "stale"


class FeedUpdate(BaseModel):
    """What a consumer receives: the change that happened and the full ordered list after it."""
    change: ChangeType
    announcement_id: Optional[str] = None
    position: Optional[int] = None
    announcements: List[AnnouncementRecord]
    stale: bool = False


Consumer = Callable[[FeedUpdate], None]

_RECOVERABLE = (TransportError, SQLAlchemyError, OSError)


def _older(candidate: AnnouncementRecord, held: AnnouncementRecord) -> bool:
    """True if ``candidate`` predates the edit already held for the same announcement."""
    if held.edited_at is None:
        return False
    return candidate.edited_at is None or candidate.edited_at < held.edited_at


class ReconnectPolicy(BaseModel):
    attempts: int = settings.REALTIME_RECONNECT_ATTEMPTS
    backoff: float = settings.REALTIME_RECONNECT_BACKOFF_SECONDS
    max_backoff: float = settings.REALTIME_RECONNECT_MAX_BACKOFF_SECONDS

    def delays(self) -> Iterator[float]:
        """Wait before each attempt, doubling up to max_backoff."""
        delay = self.backoff
        for _ in range(self.attempts):
            yield delay
            delay = min(delay * 2, self.max_backoff)


class Subscription:
    def __init__(
        self,
        scope: Scope,
        store,
        feed: ChangeFeed,
        policy: Optional[ReconnectPolicy] = None,
    ):
        self.scope = scope
        self.state = SubscriptionState.OPENING
        self.stale = False
        self._store = store
        self._feed = feed
        self._policy = policy or ReconnectPolicy()
        self._announcements: List[AnnouncementRecord] = []
        self._consumers: List[Consumer] = []
        self._buffer: List[MutationEvent] = []
        self._channel: Optional[Channel] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._opened = asyncio.Event()
        # Ids never come back once deleted; late events for them are dropped
        self._deleted: Set[str] = set()

    @property
    def announcements(self) -> List[AnnouncementRecord]:
        return list(self._announcements)

    async def open(self) -> None:
        """
        Open the channel, then deliver the initial full scan.

        A transport or database failure is retried on the reconnect policy;
        only when every attempt failed does the error reach the caller. A
        failed or cancelled open leaves nothing registered on the feed.
        """
        logger.debug(f"Opening subscription {self.scope}")
        try:
            await self._open_with_retry()
        except BaseException:
            self.close()
            raise
        finally:
            self._opened.set()

    async def _open_with_retry(self) -> None:
        delays = self._policy.delays()
        attempt = 1
        while True:
            try:
                if self._channel is None:
                    self._channel = await self._feed.open_channel(self._on_event, self._on_lost, name=str(self.scope))
                await self._load_snapshot()
                return
            except _RECOVERABLE as e:
                delay = next(delays, None)
                if delay is None:
                    logger.error(f"Opening {self.scope} failed after {attempt} attempt(s): {str(e)}")
                    raise
                logger.warning(f"Opening {self.scope} failed (attempt {attempt}), retrying in {delay}s: {str(e)}")
                attempt += 1
                await asyncio.sleep(delay)

    async def wait_opened(self) -> None:
        await self._opened.wait()
        if self.state == SubscriptionState.CLOSED:
            raise TransportError(f"Subscription {self.scope} failed to open")

    async def wait_reconnect(self) -> None:
        """Wait for a pending reconnect to finish, whether it succeeded or gave up."""
        task = self._reconnect_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    def add_consumer(self, consumer: Consumer) -> None:
        self._consumers.append(consumer)
        if self._opened.is_set():
            self._deliver(consumer, self._update(ChangeType.SNAPSHOT))

    def remove_consumer(self, consumer: Consumer) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    async def resume(self) -> None:
        """Retry reconciliation after reconnect attempts were exhausted."""
        if self.state != SubscriptionState.RECONNECTING:
            return
        self._start_reconnect()
        await self.wait_reconnect()

    def close(self) -> None:
        if self.state == SubscriptionState.CLOSED:
            return
        self.state = SubscriptionState.CLOSED
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._channel is not None:
            self._channel.close()
        self._consumers = []
        self._buffer = []
        logger.info(f"Subscription {self.scope} closed")

    # Snapshot and reconcile

    async def _load_snapshot(self) -> None:
        self._buffer = []
        records = await self._store.scan(self.scope)
        if self.state == SubscriptionState.CLOSED:
            return

        self._announcements = records
        buffered, self._buffer = self._buffer, []
        for event in buffered:
            self._apply(event, notify=False)

        if self._channel is not None and self._channel.connected:
            self.state = SubscriptionState.ACTIVE
            self.stale = False
        logger.info(f"Subscription {self.scope} snapshot: {len(self._announcements)} announcements")
        self._push(self._update(ChangeType.SNAPSHOT))

    async def _reconnect(self) -> None:
        attempts = self._policy.attempts
        for attempt, delay in enumerate(self._policy.delays(), start=1):
            await asyncio.sleep(delay)
            if self.state == SubscriptionState.CLOSED:
                return
            try:
                await self._channel.reconnect()
                await self._load_snapshot()
                if self.state == SubscriptionState.ACTIVE:
                    logger.info(f"Subscription {self.scope} reconciled after {attempt} attempt(s)")
                    return
            except _RECOVERABLE as e:
                logger.warning(f"Reconnect attempt {attempt}/{attempts} for {self.scope} failed: {str(e)}")

        if self.state == SubscriptionState.CLOSED:
            return
        self.stale = True
        logger.error(f"Subscription {self.scope} gave up reconnecting; view may be stale")
        self._push(self._update(ChangeType.STALE))

    # Channel callbacks

    def _on_event(self, event: MutationEvent) -> None:
        if self.state == SubscriptionState.CLOSED:
            return
        if self.state in (SubscriptionState.OPENING, SubscriptionState.RECONNECTING):
            self._buffer.append(event)
            return
        self._apply(event, notify=True)

    def _on_lost(self, error: TransportError) -> None:
        if self.state == SubscriptionState.CLOSED:
            return
        was_opening = self.state == SubscriptionState.OPENING
        self.state = SubscriptionState.RECONNECTING
        logger.warning(f"Subscription {self.scope} lost its channel: {error.detail}")
        if was_opening:
            # open() is still running its initial scan; it will hand over below
            self._opened_handover()
            return
        self._start_reconnect()

    def _opened_handover(self) -> None:
        async def _after_open():
            await self._opened.wait()
            if self.state == SubscriptionState.RECONNECTING:
                await self._reconnect()
        self._reconnect_task = asyncio.get_running_loop().create_task(_after_open())

    def _start_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    # Incremental maintenance

    def _index_of(self, announcement_id: str) -> Optional[int]:
        for index, record in enumerate(self._announcements):
            if record.id == announcement_id:
                return index
        return None

    def _apply(self, event: MutationEvent, notify: bool) -> None:
        if event.kind == MutationKind.DELETE:
            self._deleted.add(event.announcement_id)
        elif event.announcement_id in self._deleted:
            logger.debug(f"Subscription {self.scope}: dropped late {event.kind.value} for deleted {event.announcement_id}")
            return

        index = self._index_of(event.announcement_id)
        if index is not None and event.kind != MutationKind.DELETE and _older(event.record, self._announcements[index]):
            logger.debug(f"Subscription {self.scope}: dropped out-of-date {event.kind.value} for {event.announcement_id}")
            return

        if event.kind == MutationKind.DELETE or not self.scope.matches(event.record):
            if index is None:
                return
            del self._announcements[index]
            change = ChangeType.REMOVE
        elif index is not None:
            # Edits keep their place
            self._announcements[index] = event.record
            change = ChangeType.REPLACE
        else:
            keys = [record.sort_key for record in self._announcements]
            index = bisect.bisect_right(keys, event.record.sort_key)
            self._announcements.insert(index, event.record)
            change = ChangeType.INSERT

        logger.debug(f"Subscription {self.scope}: {change.value} {event.announcement_id} at {index}")
        if notify:
            self._push(self._update(change, event.announcement_id, index))

    def _update(self, change: ChangeType, announcement_id: Optional[str] = None, position: Optional[int] = None) -> FeedUpdate:
        return FeedUpdate(
            change=change,
            announcement_id=announcement_id,
            position=position,
            announcements=list(self._announcements),
            stale=self.stale,
        )

    def _push(self, update: FeedUpdate) -> None:
        for consumer in list(self._consumers):
            self._deliver(consumer, update)

    def _deliver(self, consumer: Consumer, update: FeedUpdate) -> None:
        try:
            consumer(update)
        except Exception as e:
            logger.error(f"Consumer of {self.scope} failed and was detached: {str(e)}", exc_info=True)
            self.remove_consumer(consumer)


class SubscriptionHandle:
    """A single consumer's share of a subscription. Close it when the view goes away."""

    def __init__(self, manager: "SubscriptionManager", subscription: Subscription, consumer: Optional[Consumer]):
        self._manager = manager
        self._subscription = subscription
        self._consumer = consumer
        self.closed = False

    @property
    def scope(self) -> Scope:
        return self._subscription.scope

    @property
    def state(self) -> SubscriptionState:
        return self._subscription.state

    @property
    def stale(self) -> bool:
        return self._subscription.stale

    @property
    def announcements(self) -> List[AnnouncementRecord]:
        return self._subscription.announcements

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._manager._release(self)


class SubscriptionManager:
    def __init__(
        self,
        store,
        feed: Optional[ChangeFeed] = None,
        policy: Optional[ReconnectPolicy] = None,
    ):
        self.store = store
        self.feed = feed if feed is not None else store.feed
        self.policy = policy or ReconnectPolicy()
        self._subscriptions: Dict[Scope, Subscription] = {}
        self._refcounts: Dict[Scope, int] = {}

    async def open(self, scope: Scope, consumer: Optional[Consumer] = None) -> SubscriptionHandle:
        """
        Subscribe to ``scope``. Returns once the first snapshot has been
        delivered; consumers of an existing scope share its subscription.
        """
        subscription = self._subscriptions.get(scope)
        if subscription is None:
            subscription = Subscription(
                scope,
                self.store,
                self.feed,
                self.policy,
            )
            self._subscriptions[scope] = subscription
            self._refcounts[scope] = 0
            try:
                await subscription.open()
            except BaseException:
                self._forget(scope, subscription)
                raise
        else:
            await subscription.wait_opened()

        self._refcounts[scope] += 1
        if consumer is not None:
            subscription.add_consumer(consumer)
        logger.debug(f"Scope {scope} now has {self._refcounts[scope]} consumer(s)")
        return SubscriptionHandle(self, subscription, consumer)

    def _release(self, handle: SubscriptionHandle) -> None:
        scope = handle.scope
        subscription = self._subscriptions.get(scope)
        if subscription is not handle.subscription:
            return
        if handle._consumer is not None:
            subscription.remove_consumer(handle._consumer)
        self._refcounts[scope] -= 1
        if self._refcounts[scope] <= 0:
            subscription.close()
            self._forget(scope, subscription)

    def _forget(self, scope: Scope, subscription: Subscription) -> None:
        if self._subscriptions.get(scope) is subscription:
            del self._subscriptions[scope]
            self._refcounts.pop(scope, None)

    def get(self, scope: Scope) -> Optional[Subscription]:
        return self._subscriptions.get(scope)

    def consumer_count(self, scope: Scope) -> int:
        return self._refcounts.get(scope, 0)

    def active_scopes(self) -> List[Scope]:
        return list(self._subscriptions)

    def close_all(self) -> None:
        for scope, subscription in list(self._subscriptions.items()):
            subscription.close()
            self._forget(scope, subscription)
        logger.info("All subscriptions closed")


def get_subscription_manager(connection: HTTPConnection) -> SubscriptionManager:
    """Dependency returning the application's subscription manager."""
    return connection.app.state.subscriptions
