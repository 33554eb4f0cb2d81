#!/usr/bin/env python3
"""
Bean Source for StreamSentry

The bean source is the management connection to a domain: it answers
instance descriptor and resource metric queries and pushes instance
notifications (status changes, deletion) to subscribed handlers.

RedisBeanSource reads what a management bridge publishes into Redis:
    <ns>:domains:<domain>:instances:<instance>             hash (status, start_time)
    <ns>:domains:<domain>:instances:<instance>:resources   hash (resource -> JSON metric map)
    <ns>:notifications:<domain>:<instance>                 pub/sub channel (JSON notifications)
"""

import time
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

import redis

from streamsentry.common.errors import MalformedEndpointError, TransportError

logger = logging.getLogger("BeanSource")

# Seconds the listener waits when no message is pending
LISTENER_POLL_INTERVAL = 0.1

InstanceRef = Tuple[str, str]  # (domain, instance)


class NotificationType(Enum):
    """Types of instance notifications"""
    ATTRIBUTE_CHANGE = "attribute.change"
    INSTANCE_DELETED = "instance.deleted"
    OTHER = "other"

    @classmethod
    def from_value(cls, value) -> 'NotificationType':
        for member in cls:
            if member.value == value or member.name == value:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class Notification:
    """A notification pushed by the management connection"""
    type: NotificationType
    attribute: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            type=NotificationType.from_value(data.get("type")),
            attribute=data.get("attribute"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            timestamp=data.get("timestamp") or time.time(),
        )


@dataclass
class NotificationFilter:
    """Set of notification types a subscriber wants delivered"""
    enabled_types: Set[NotificationType] = field(default_factory=set)

    def enable_type(self, notification_type: NotificationType):
        self.enabled_types.add(notification_type)

    def disable_all_types(self):
        self.enabled_types.clear()

    def is_enabled(self, notification: Notification) -> bool:
        return notification.type in self.enabled_types


@dataclass(frozen=True)
class InstanceDescriptor:
    """Management view of an instance"""
    name: str
    status: Optional[str] = None
    start_time: Optional[float] = None


NotificationHandler = Callable[[Notification], None]


class BeanSource(ABC):
    """Management connection consumed by the instance trackers"""

    def __init__(self):
        self.interruption_listeners = []  # List[Callable[[BeanSource], None]]
        self.listeners_lock = threading.RLock()

    @abstractmethod
    def get_instance_descriptor(self, domain_name: str, instance_name: str) -> Optional[InstanceDescriptor]:
        """
        Look up an instance

        Returns:
            The descriptor, or None if the instance does not exist

        Raises:
            TransportError: the connection failed
            MalformedEndpointError: the connection URL is unusable
        """

    @abstractmethod
    def subscribe(self, instance_ref: InstanceRef, notification_filter: NotificationFilter,
                  handler: NotificationHandler):
        """Deliver notifications for an instance to handler"""

    @abstractmethod
    def unsubscribe(self, instance_ref: InstanceRef, handler: NotificationHandler):
        """Stop delivering notifications to handler"""

    @abstractmethod
    def get_resource_metrics(self, domain_name: str, instance_name: str) -> Dict[str, Dict[str, int]]:
        """Resource name -> (metric name -> value) for every resource of the instance"""

    def add_interruption_listener(self, callback: Callable[['BeanSource'], None]) -> bool:
        with self.listeners_lock:
            if callback not in self.interruption_listeners:
                self.interruption_listeners.append(callback)
                return True
            return False

    def remove_interruption_listener(self, callback: Callable[['BeanSource'], None]) -> bool:
        with self.listeners_lock:
            if callback in self.interruption_listeners:
                self.interruption_listeners.remove(callback)
                return True
            return False

    def _notify_interrupted(self):
        with self.listeners_lock:
            listeners = list(self.interruption_listeners)
        for callback in listeners:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Error in interruption listener: {e}")


class RedisBeanSource(BeanSource):
    """BeanSource reading management state published into Redis"""

    def __init__(self, url: str, namespace: str = "streams", socket_timeout: float = 10.0):
        """
        Initialize the bean source; the connection is opened on first use

        Args:
            url: Redis URL (redis://, rediss:// or unix://)
            namespace: Key prefix used by the management bridge
            socket_timeout: Seconds before a Redis call is abandoned
        """
        super().__init__()
        self.url = url
        self.namespace = namespace
        self.socket_timeout = socket_timeout

        self.redis_client = None
        self.pubsub = None
        self.client_lock = threading.RLock()

        self.handlers = {}  # Dict[channel, List[Tuple[NotificationFilter, handler]]]
        self.handlers_lock = threading.RLock()

        self.running = False
        self.listener_thread = None

    def _client(self) -> redis.Redis:
        with self.client_lock:
            if self.redis_client is None:
                try:
                    self.redis_client = redis.Redis.from_url(
                        self.url,
                        socket_timeout=self.socket_timeout,
                        decode_responses=True,
                    )
                except ValueError as e:
                    raise MalformedEndpointError(f"Invalid bean source URL {self.url}: {e}") from e
                logger.info(f"Bean source using Redis at {self.url}")
            return self.redis_client

    def _instance_key(self, domain_name: str, instance_name: str) -> str:
        return f"{self.namespace}:domains:{domain_name}:instances:{instance_name}"

    def _channel(self, instance_ref: InstanceRef) -> str:
        domain_name, instance_name = instance_ref
        return f"{self.namespace}:notifications:{domain_name}:{instance_name}"

    def get_instance_descriptor(self, domain_name: str, instance_name: str) -> Optional[InstanceDescriptor]:
        try:
            data = self._client().hgetall(self._instance_key(domain_name, instance_name))
        except redis.RedisError as e:
            raise TransportError(f"Reading instance {instance_name} failed: {e}") from e

        if not data:
            return None

        start_time = data.get("start_time")
        try:
            start_time = float(start_time) if start_time not in (None, "") else None
        except ValueError:
            logger.warning(f"Ignoring invalid start_time {start_time!r} for instance {instance_name}")
            start_time = None

        return InstanceDescriptor(name=instance_name, status=data.get("status"), start_time=start_time)

    def get_resource_metrics(self, domain_name: str, instance_name: str) -> Dict[str, Dict[str, int]]:
        key = f"{self._instance_key(domain_name, instance_name)}:resources"
        try:
            data = self._client().hgetall(key)
        except redis.RedisError as e:
            raise TransportError(f"Reading resource metrics of {instance_name} failed: {e}") from e

        resource_metrics = {}
        for resource_name, metrics_json in data.items():
            try:
                metrics = json.loads(metrics_json)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON in resource metrics for {resource_name}")
                continue
            if isinstance(metrics, dict):
                resource_metrics[resource_name] = metrics
        return resource_metrics

    def subscribe(self, instance_ref: InstanceRef, notification_filter: NotificationFilter,
                  handler: NotificationHandler):
        channel = self._channel(instance_ref)
        with self.handlers_lock:
            entries = self.handlers.setdefault(channel, [])
            entries.append((notification_filter, handler))
            try:
                with self.client_lock:
                    if self.pubsub is None:
                        self.pubsub = self._client().pubsub(ignore_subscribe_messages=True)
                    self.pubsub.subscribe(channel)
            except redis.RedisError as e:
                entries.remove((notification_filter, handler))
                raise TransportError(f"Subscribing to {channel} failed: {e}") from e

        self._start_listener()
        logger.debug(f"Subscribed to {channel}")

    def unsubscribe(self, instance_ref: InstanceRef, handler: NotificationHandler):
        channel = self._channel(instance_ref)
        with self.handlers_lock:
            entries = self.handlers.get(channel, [])
            self.handlers[channel] = [(f, h) for f, h in entries if h != handler]
            if self.handlers[channel]:
                return
            del self.handlers[channel]

        with self.client_lock:
            if self.pubsub is not None:
                try:
                    self.pubsub.unsubscribe(channel)
                except redis.RedisError as e:
                    raise TransportError(f"Unsubscribing from {channel} failed: {e}") from e
        logger.debug(f"Unsubscribed from {channel}")

    def _start_listener(self):
        if self.running:
            return
        self.running = True
        self.listener_thread = threading.Thread(target=self._notification_listener, daemon=True)
        self.listener_thread.start()

    def _notification_listener(self):
        """Deliver published notifications to subscribed handlers"""
        logger.info("Notification listener started")

        while self.running:
            try:
                message = self.poll_message()
                if message is None:
                    time.sleep(LISTENER_POLL_INTERVAL)
                elif message["type"] == "message":
                    self.dispatch(message["channel"], message["data"])
            except redis.ConnectionError as e:
                logger.error(f"Notification listener lost its connection: {e}")
                self._notify_interrupted()
                time.sleep(1)
            except Exception as e:
                logger.error(f"Error in notification listener: {e}")
                time.sleep(1)

        logger.info("Notification listener stopped")

    def poll_message(self) -> Optional[Dict[str, Any]]:
        """
        Read one pending pub/sub message without blocking

        The PubSub connection is shared with subscribe() and unsubscribe(),
        so it is only touched under client_lock.

        Returns:
            The message, or None when nothing is pending or the source is closed
        """
        with self.client_lock:
            if self.pubsub is None:
                return None
            return self.pubsub.get_message(timeout=0)

    def dispatch(self, channel: str, data: str):
        """Decode one published message and hand it to the channel's handlers"""
        try:
            notification = Notification.from_dict(json.loads(data))
        except (json.JSONDecodeError, AttributeError):
            logger.warning(f"Received invalid notification on {channel}")
            return

        with self.handlers_lock:
            entries = list(self.handlers.get(channel, []))

        for notification_filter, handler in entries:
            if not notification_filter.is_enabled(notification):
                continue
            try:
                handler(notification)
            except Exception as e:
                logger.error(f"Notification handler for {channel} failed: {e}")

    def close(self):
        """Stop the listener and release the connection"""
        self.running = False
        if self.listener_thread and self.listener_thread.is_alive():
            self.listener_thread.join(timeout=5.0)

        with self.client_lock:
            if self.pubsub is not None:
                self.pubsub.close()
                self.pubsub = None
            if self.redis_client is not None:
                self.redis_client.close()
                self.redis_client = None
