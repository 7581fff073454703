"""
Unit Tests - Rate Limit Middleware
"""
from fastapi import Request
from fastapi.responses import JSONResponse

from src.serving.api.middleware import RateLimitMiddleware


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def noop_app(scope, receive, send):
    pass


async def call_next(request):
    return JSONResponse({"ok": True})


def make_request(user_id: str, path: str = "/cart") -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [(b"x-user-id", user_id.encode())],
        "client": ("10.0.0.1", 5000),
        "server": ("testserver", 80),
        "scheme": "http",
    })


class TestRateLimitBuckets:

    async def test_limit_applies_per_shopper(self):
        clock = FakeClock()
        middleware = RateLimitMiddleware(noop_app, max_requests=2, window_seconds=60, clock=clock)

        for _ in range(2):
            assert (await middleware.dispatch(make_request("u1"), call_next)).status_code == 200
        assert (await middleware.dispatch(make_request("u1"), call_next)).status_code == 429
        assert (await middleware.dispatch(make_request("u2"), call_next)).status_code == 200

    async def test_window_expiry_lets_shopper_back_in(self):
        clock = FakeClock()
        middleware = RateLimitMiddleware(noop_app, max_requests=1, window_seconds=60, clock=clock)

        await middleware.dispatch(make_request("u1"), call_next)
        clock.now += 61

        response = await middleware.dispatch(make_request("u1"), call_next)

        assert response.status_code == 200
        assert middleware.bucket_count == 1

    async def test_idle_buckets_are_dropped(self):
        clock = FakeClock()
        middleware = RateLimitMiddleware(noop_app, max_requests=5, window_seconds=60, clock=clock)

        for i in range(50):
            await middleware.dispatch(make_request(f"shopper-{i}"), call_next)
        assert middleware.bucket_count == 50

        clock.now += 120
        await middleware.dispatch(make_request("latecomer"), call_next)

        assert middleware.bucket_count == 1

    async def test_exempt_paths_leave_no_bucket(self):
        middleware = RateLimitMiddleware(noop_app, max_requests=1, window_seconds=60, clock=FakeClock())

        await middleware.dispatch(make_request("u1", path="/webhooks/stripe"), call_next)

        assert middleware.bucket_count == 0
