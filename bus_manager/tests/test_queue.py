import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from bus_manager.queue import InMemoryJobQueue, RedisJobQueue


class InMemoryJobQueueTests(unittest.TestCase):
    def test_fifo_and_depth(self):
        queue = InMemoryJobQueue()
        self.assertIsNone(queue.dequeue(block=False))
        queue.enqueue("job-1")
        queue.enqueue("job-2")
        self.assertEqual(queue.depth(), 2)
        self.assertEqual(queue.dequeue(), "job-1")
        self.assertEqual(queue.dequeue(), "job-2")
        self.assertEqual(queue.depth(), 0)


@patch("bus_manager.queue.redis.Redis.from_url")
class RedisJobQueueTests(unittest.TestCase):
    def test_enqueue_and_blocking_dequeue(self, from_url):
        client = from_url.return_value
        client.blpop.return_value = ("bus_manager:jobs", "job-1")
        queue = RedisJobQueue(url="redis://localhost:6379/0")

        queue.enqueue("job-1")
        self.assertEqual(queue.dequeue(timeout=5), "job-1")

        from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
        client.rpush.assert_called_once_with("bus_manager:jobs", "job-1")
        client.blpop.assert_called_once_with(["bus_manager:jobs"], timeout=5)

    def test_blocking_dequeue_times_out(self, from_url):
        from_url.return_value.blpop.return_value = None
        self.assertIsNone(RedisJobQueue(url="redis://x").dequeue(timeout=1))

    def test_non_blocking_dequeue_and_depth(self, from_url):
        client = from_url.return_value
        client.lpop.return_value = None
        client.llen.return_value = 3
        queue = RedisJobQueue(url="redis://x", queue_key="buses:test")
        self.assertIsNone(queue.dequeue(block=False))
        client.lpop.assert_called_once_with("buses:test")
        self.assertEqual(queue.depth(), 3)

    def test_reconnects_after_connection_loss(self, from_url):
        broken = MagicMock()
        broken.blpop.side_effect = redis_exceptions.ConnectionError("reset")
        healthy = MagicMock()
        healthy.blpop.return_value = ("bus_manager:jobs", "job-2")
        from_url.side_effect = [broken, healthy]

        queue = RedisJobQueue(url="redis://x")
        with self.assertLogs("bus_manager.queue", level="WARNING"):
            self.assertIsNone(queue.dequeue())
        self.assertEqual(queue.dequeue(), "job-2")
        self.assertEqual(from_url.call_count, 2)


if __name__ == "__main__":
    unittest.main()
