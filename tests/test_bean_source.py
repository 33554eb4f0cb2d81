import json
import threading
import unittest
from unittest import mock

import redis

from streamsentry.common.errors import MalformedEndpointError, TransportError
from streamsentry.monitoring.bean_source import (
    Notification,
    NotificationFilter,
    NotificationType,
    RedisBeanSource,
)

from support import DOMAIN, INSTANCE

CHANNEL = f"streams:notifications:{DOMAIN}:{INSTANCE}"


class TestRedisBeanSource(unittest.TestCase):
    def setUp(self):
        self.source = RedisBeanSource("redis://localhost:6379/0")
        self.client = mock.Mock()
        self.source.redis_client = self.client

    def test_instance_descriptor(self):
        self.client.hgetall.return_value = {"status": "running", "start_time": "1700000000.5"}

        descriptor = self.source.get_instance_descriptor(DOMAIN, INSTANCE)

        self.client.hgetall.assert_called_once_with(f"streams:domains:{DOMAIN}:instances:{INSTANCE}")
        self.assertEqual(descriptor.name, INSTANCE)
        self.assertEqual(descriptor.status, "running")
        self.assertEqual(descriptor.start_time, 1700000000.5)

    def test_missing_instance(self):
        self.client.hgetall.return_value = {}
        self.assertIsNone(self.source.get_instance_descriptor(DOMAIN, INSTANCE))

    def test_not_started_instance(self):
        self.client.hgetall.return_value = {"status": "stopped", "start_time": ""}
        self.assertIsNone(self.source.get_instance_descriptor(DOMAIN, INSTANCE).start_time)

    def test_connection_error_is_transport_error(self):
        self.client.hgetall.side_effect = redis.ConnectionError("refused")
        with self.assertRaises(TransportError):
            self.source.get_instance_descriptor(DOMAIN, INSTANCE)

    def test_resource_metrics(self):
        self.client.hgetall.return_value = {
            "host1": json.dumps({"cpuSpeed": 2400, "loadAverage": 3}),
            "host2": "{broken",
        }

        metrics = self.source.get_resource_metrics(DOMAIN, INSTANCE)

        self.client.hgetall.assert_called_once_with(f"streams:domains:{DOMAIN}:instances:{INSTANCE}:resources")
        self.assertEqual(metrics, {"host1": {"cpuSpeed": 2400, "loadAverage": 3}})

    def test_malformed_url(self):
        source = RedisBeanSource("notaurl://localhost")
        with self.assertRaises(MalformedEndpointError):
            source.get_instance_descriptor(DOMAIN, INSTANCE)

    def test_dispatch_respects_filter(self):
        received = []
        notification_filter = NotificationFilter()
        notification_filter.enable_type(NotificationType.ATTRIBUTE_CHANGE)
        self.source.pubsub = mock.Mock()
        self.source.running = True  # keep the listener thread out of the test

        self.source.subscribe((DOMAIN, INSTANCE), notification_filter, received.append)
        self.source.dispatch(CHANNEL, json.dumps({
            "type": "attribute.change", "attribute": "Status", "old_value": "running", "new_value": "stopped"}))
        self.source.dispatch(CHANNEL, json.dumps({"type": "instance.deleted"}))
        self.source.dispatch(CHANNEL, "{broken")

        self.source.pubsub.subscribe.assert_called_once_with(CHANNEL)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].type, NotificationType.ATTRIBUTE_CHANGE)
        self.assertEqual(received[0].new_value, "stopped")

    def test_unsubscribe_stops_delivery(self):
        received = []
        notification_filter = NotificationFilter({NotificationType.INSTANCE_DELETED})
        self.source.pubsub = mock.Mock()
        self.source.running = True

        self.source.subscribe((DOMAIN, INSTANCE), notification_filter, received.append)
        self.source.unsubscribe((DOMAIN, INSTANCE), received.append)
        self.source.dispatch(CHANNEL, json.dumps({"type": "instance.deleted"}))

        self.assertEqual(received, [])
        self.source.pubsub.unsubscribe.assert_called_once_with(CHANNEL)

    def test_poll_message_holds_client_lock(self):
        lock_free_elsewhere = []

        def get_message(timeout=None):
            def try_lock():
                acquired = self.source.client_lock.acquire(blocking=False)
                if acquired:
                    self.source.client_lock.release()
                lock_free_elsewhere.append(acquired)
            other = threading.Thread(target=try_lock)
            other.start()
            other.join()
            return {"type": "message", "channel": CHANNEL, "data": "{}"}

        self.source.pubsub = mock.Mock()
        self.source.pubsub.get_message.side_effect = get_message

        message = self.source.poll_message()

        self.assertEqual(message["channel"], CHANNEL)
        self.assertEqual(lock_free_elsewhere, [False])
        self.source.pubsub.get_message.assert_called_once_with(timeout=0)

    def test_poll_message_after_close(self):
        self.source.pubsub = mock.Mock()
        self.source.close()

        self.assertIsNone(self.source.poll_message())

    def test_interruption_listeners(self):
        interrupted = []
        self.assertTrue(self.source.add_interruption_listener(interrupted.append))
        self.assertFalse(self.source.add_interruption_listener(interrupted.append))

        self.source._notify_interrupted()

        self.assertEqual(interrupted, [self.source])

    def test_notification_from_dict(self):
        notification = Notification.from_dict({"type": "something.else", "timestamp": 5})
        self.assertEqual(notification.type, NotificationType.OTHER)
        self.assertEqual(notification.timestamp, 5)


if __name__ == "__main__":
    unittest.main()
