"""
Real-time reconciliation for topicfeed.

A topic-scoped subscription delivers change events for stories, slides and
the topic itself. Events are delivered at least once, so everything done in
response is idempotent: reloads are debounced into a single slot and
ownership answers are remembered.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from topicfeed.core.models import Topic
from topicfeed.errors import RemoteError
from topicfeed.utils.http import with_ceiling
from topicfeed.utils.tasks import DebouncedTask

logger = logging.getLogger(__name__)

RELOAD_DEBOUNCE = 1.0  # seconds

# Change event kinds
STORY_INSERT = 'story_insert'
STORY_UPDATE = 'story_update'
SLIDE_UPDATE = 'slide_update'
TOPIC_UPDATE = 'topic_update'

Handler = Callable[['ChangeEvent'], Awaitable[None]]


@dataclass(frozen=True)
class ChangeEvent:
    """
    One change notification.

    Story and slide events carry the affected story id; ``topic_id`` is set
    when the notification itself names the owning topic.
    """
    kind: str
    story_id: Optional[str] = None
    topic_id: Optional[str] = None


class Subscription:
    """
    Handle for an active subscription; closing it is idempotent.
    """
    def __init__(self, channel: 'ChangeChannel', topic_id: str, handler: Handler):
        self.channel = channel
        self.topic_id = topic_id
        self.handler = handler
        self.active = True

    async def close(self):
        if not self.active:
            return
        self.active = False
        await self.channel.unsubscribe(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class ChangeChannel(ABC):
    """Push channel emitting change events for one topic per subscription."""

    @abstractmethod
    async def subscribe(self, topic_id: str, handler: Handler) -> Subscription:
        """Start delivering the topic's events to handler."""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription):
        """Stop delivering events to a subscription."""


class LocalChangeChannel(ChangeChannel):
    """
    In-process channel; publishers push events directly to subscribers.
    """
    def __init__(self):
        self._subscriptions: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, topic_id, handler):
        subscription = Subscription(self, topic_id, handler)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to changes for topic {topic_id}")
        return subscription

    async def unsubscribe(self, subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Unsubscribed from changes for topic {subscription.topic_id}")

    async def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscription it is in scope for.

        Events that name a topic only reach that topic's subscriptions.

        Returns:
            Number of handlers called
        """
        delivered = 0
        for subscription in list(self._subscriptions):
            if event.topic_id is not None and event.topic_id != subscription.topic_id:
                continue
            await subscription.handler(event)
            delivered += 1
        return delivered


class RealtimeReconciler:
    """
    Turns change events into debounced reloads for the current topic.
    """
    def __init__(
        self,
        source,
        channel: ChangeChannel,
        known_ids: Callable[[], Set[str]],
        on_reload: Callable[[], Awaitable],
        on_topic_change: Callable[[], Awaitable],
        on_new_story: Optional[Callable[[str], bool]] = None,
        debounce: float = RELOAD_DEBOUNCE,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the RealtimeReconciler.

        Args:
            source: ContentSource answering ownership queries
            channel: Channel to subscribe to
            known_ids: Returns the story ids currently loaded for the topic
            on_reload: Full unfiltered reload of the feed
            on_topic_change: Reload of the topic entity only
            on_new_story: Called with the id of an inserted story; returning
                True means the reload was deferred and must not run now
            debounce: Seconds to wait for further events before reloading
            timeout: Ceiling for ownership queries, in seconds
        """
        self.source = source
        self.channel = channel
        self.timeout = timeout
        self.topic: Optional[Topic] = None
        self._known_ids = known_ids
        self._on_reload = on_reload
        self._on_topic_change = on_topic_change
        self._on_new_story = on_new_story
        self._ownership: Dict[str, bool] = {}
        self._subscription: Optional[Subscription] = None
        self._reload_slot = DebouncedTask(debounce, name="realtime reload")
        self._topic_slot = DebouncedTask(debounce, name="topic reload")

    @property
    def is_live(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self, topic: Topic):
        """Subscribe to a topic, tearing down any existing subscription first."""
        await self.stop()
        self.topic = topic
        self._ownership = {}
        self._subscription = await self.channel.subscribe(topic.id, self.handle)
        logger.info(f"Listening for changes to {topic.slug}")

    async def stop(self):
        self._reload_slot.cancel()
        self._topic_slot.cancel()
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def belongs(self, story_id: str, topic_id: Optional[str] = None) -> bool:
        """
        Whether a story belongs to the current topic.

        Loaded ids answer first; otherwise the remote source is asked once per
        story and the answer is remembered. A failed query counts as "no" and
        is not remembered.
        """
        if self.topic is None:
            return False
        if topic_id is not None:
            return topic_id == self.topic.id
        if story_id in self._known_ids():
            return True
        if story_id in self._ownership:
            return self._ownership[story_id]

        logger.debug(f"Checking ownership of story {story_id}")
        try:
            owner = await with_ceiling(self.source.story_topic(story_id), self.timeout, "ownership check")
        except RemoteError as e:
            logger.warning(f"Ownership check for story {story_id} failed: {e}")
            return False
        owned = owner is not None and owner == self.topic.id
        self._ownership[story_id] = owned
        return owned

    async def handle(self, event: ChangeEvent):
        """React to one change event."""
        if self.topic is None:
            return

        if event.kind == TOPIC_UPDATE:
            if event.topic_id == self.topic.id:
                logger.info(f"Topic {self.topic.slug} changed, reloading topic")
                self._topic_slot.schedule(self._on_topic_change)
            return

        if not event.story_id:
            logger.debug(f"Ignoring {event.kind} event without story id")
            return
        if not await self.belongs(event.story_id, event.topic_id):
            logger.debug(f"Ignoring {event.kind} for story {event.story_id} of another topic")
            return

        if event.kind == STORY_INSERT and self._on_new_story is not None:
            self._ownership[event.story_id] = True
            if self._on_new_story(event.story_id):
                return
        logger.debug(f"Scheduling reload after {event.kind} for story {event.story_id}")
        self._reload_slot.schedule(self._on_reload)

    @property
    def pending(self) -> bool:
        return self._reload_slot.pending or self._topic_slot.pending

    async def wait(self):
        await self._reload_slot.wait()
        await self._topic_slot.wait()
