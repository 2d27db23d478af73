import asyncio
import json
import unittest
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError

from chatfeed.core.errors import RateLimited
from chatfeed.dependencies import build_services
from chatfeed.main import CompressionMiddleware, create_app
from chatfeed.models import CurrentUser
from chatfeed.repositories import dynamo
from chatfeed.repositories.dynamo import DynamoRateLimiter
from chatfeed.responses import interaction_error_handler
from chatfeed.routers import posts
from chatfeed.services.rate_limit import InMemoryRateLimiter, rate_limit_or_429


def conditional_failure():
    return ClientError({"Error": {"Code": "ConditionalCheckFailedException", "Message": "x"}}, "UpdateItem")


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


class TestInMemoryRateLimiter(unittest.TestCase):
    def test_limit_applies_per_user_and_action(self):
        limiter = InMemoryRateLimiter(max_requests=2, window_seconds=60, clock=FakeClock())

        self.assertTrue(limiter.hit("alice", "like"))
        self.assertTrue(limiter.hit("alice", "like"))
        self.assertFalse(limiter.hit("alice", "like"))
        self.assertTrue(limiter.hit("alice", "comment"))
        self.assertTrue(limiter.hit("bob", "like"))

    def test_new_window_resets_the_count(self):
        clock = FakeClock(now=120)
        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock)

        self.assertTrue(limiter.hit("alice", "like"))
        self.assertFalse(limiter.hit("alice", "like"))
        clock.now = 180
        self.assertTrue(limiter.hit("alice", "like"))

    def test_zero_disables(self):
        limiter = InMemoryRateLimiter(max_requests=0, window_seconds=60)
        self.assertTrue(all(limiter.hit("alice", "like") for _ in range(500)))

    def test_rate_limit_or_429(self):
        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        rate_limit_or_429(limiter, "alice", "create_post")
        with self.assertRaises(RateLimited) as ctx:
            rate_limit_or_429(limiter, "alice", "create_post")

        resp = asyncio.run(interaction_error_handler(Mock(method="POST"), ctx.exception))
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(json.loads(resp.body)["message"], "Too many requests; try again shortly")


class TestDynamoRateLimiter(unittest.TestCase):
    def setUp(self):
        clock = patch.object(dynamo, "now_ts", return_value=600)
        clock.start()
        self.addCleanup(clock.stop)

    def test_first_request_in_window_resets_counter(self):
        table = Mock()
        limiter = DynamoRateLimiter(table, max_requests=5, window_seconds=60)

        self.assertTrue(limiter.hit("alice", "like"))

        kwargs = table.update_item.call_args.kwargs
        self.assertEqual(kwargs["Key"], {"user_id": "alice", "bucket": "rl#like"})
        self.assertEqual(kwargs["ExpressionAttributeNames"], {"#w": "window", "#n": "count"})
        self.assertEqual(kwargs["ExpressionAttributeValues"][":w"], 10)
        self.assertEqual(kwargs["ExpressionAttributeValues"][":exp"], 720)

    def test_same_window_increments_under_limit(self):
        table = Mock()
        table.update_item.side_effect = [conditional_failure(), {}]
        limiter = DynamoRateLimiter(table, max_requests=5, window_seconds=60)

        self.assertTrue(limiter.hit("alice", "like"))
        second = table.update_item.call_args_list[1].kwargs
        self.assertEqual(second["UpdateExpression"], "ADD #n :one")
        self.assertEqual(second["ExpressionAttributeValues"][":limit"], 5)

    def test_exhausted_window_is_rejected(self):
        table = Mock()
        table.update_item.side_effect = [conditional_failure(), conditional_failure()]
        limiter = DynamoRateLimiter(table, max_requests=5, window_seconds=60)

        self.assertFalse(limiter.hit("alice", "like"))


class TestWriteRoutes(unittest.TestCase):
    def test_mutating_routes_carry_the_limit(self):
        limited = {}
        for route in posts.router.routes:
            for method in route.methods:
                limited[(method, route.path)] = bool(route.dependencies)

        self.assertFalse(limited[("GET", "/posts")])
        self.assertFalse(limited[("GET", "/posts/{post_id}")])
        self.assertTrue(limited[("POST", "/posts")])
        self.assertTrue(limited[("POST", "/posts/{post_id}/like")])
        self.assertTrue(limited[("POST", "/posts/{post_id}/comments")])
        self.assertTrue(limited[("DELETE", "/posts/{post_id}")])

    def test_limit_dependency_rejects_over_quota(self):
        check = posts.limit_writes("like")
        limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        alice = CurrentUser(user_id="alice", full_name="Alice")

        check(user=alice, limiter=limiter)
        with self.assertRaises(RateLimited):
            check(user=alice, limiter=limiter)


def run_asgi(middleware, path, accept_encoding="gzip"):
    messages = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        messages.append(message)

    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [(b"accept-encoding", accept_encoding.encode())],
    }
    asyncio.run(middleware(scope, receive, send))
    return dict(messages[0]["headers"])


async def large_body_app(scope, receive, send):
    body = b"x" * 5000
    await send({
        "type": "http.response.start",
        "status": 200,
        "headers": [(b"content-type", b"application/json"), (b"content-length", str(len(body)).encode())],
    })
    await send({"type": "http.response.body", "body": body})


class TestCompression(unittest.TestCase):
    def test_large_responses_are_gzipped(self):
        headers = run_asgi(CompressionMiddleware(large_body_app, minimum_size=1000), "/posts")
        self.assertEqual(headers.get(b"content-encoding"), b"gzip")

    def test_event_stream_is_never_gzipped(self):
        headers = run_asgi(CompressionMiddleware(large_body_app, minimum_size=1000), "/events")
        self.assertNotIn(b"content-encoding", headers)

    def test_app_installs_compression(self):
        app = create_app(build_services(backend="memory"))
        self.assertIn(CompressionMiddleware, [m.cls for m in app.user_middleware])
