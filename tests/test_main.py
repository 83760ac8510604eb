from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from app.clients.image_provider import ImageProviderError
from app.config import Settings
from app.counters import InMemoryCounterStore, StoreUnavailableError
from app.rate_limit import RateLimiter, build_policies
from main import app, get_image_provider, get_rate_limiter

PHOTO = {"image": ("me.jpg", b"\xff\xd8\xff\xe0fake-jpeg", "image/jpeg")}


class FakeImageProvider:
    def __init__(self) -> None:
        self.calls = []
        self.error: Exception | None = None

    def generate_variants(self, image, *, style=None, count=None):  # noqa: D401
        """Record the call and return canned variants."""

        self.calls.append((image, style))
        if self.error:
            raise self.error
        return [f"data:image/png;base64,variant{index}" for index in range(3)]


class DownStore:
    def check_and_record(self, entries, now):
        raise StoreUnavailableError("timed out")


@pytest.fixture()
def api_client(clock):
    fake = FakeImageProvider()
    limiter = RateLimiter(
        InMemoryCounterStore(), build_policies(Settings(image_api_key="dummy")), clock=clock
    )
    app.dependency_overrides[get_image_provider] = lambda: fake
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    client = TestClient(app)
    try:
        yield client, fake, clock
    finally:
        app.dependency_overrides.pop(get_image_provider, None)
        app.dependency_overrides.pop(get_rate_limiter, None)


def test_generate_returns_three_variants(api_client):
    client, fake, _ = api_client

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 200
    assert len(response.json()["images"]) == 3
    assert response.headers["X-RateLimit-Limit"] == "3"
    assert response.headers["X-RateLimit-Remaining"] == "2"
    image, style = fake.calls[0]
    assert image.filename == "me.jpg"
    assert style is None


def test_style_reference_is_forwarded(api_client):
    client, fake, _ = api_client
    files = dict(PHOTO, style=("ref.png", b"\x89PNGref", "image/png"))

    response = client.post("/api/generate", files=files)

    assert response.status_code == 200
    assert fake.calls[0][1].content == b"\x89PNGref"


def test_fourth_request_in_a_minute_is_throttled(api_client):
    client, fake, clock = api_client
    for _ in range(3):
        assert client.post("/api/generate", files=PHOTO).status_code == 200

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 429
    body = response.json()
    assert set(body) == {"error", "scope", "limit", "remaining", "reset"}
    assert body["scope"] == "minute"
    assert body["limit"] == 3
    assert body["remaining"] == 0
    assert body["reset"] == int(clock.now + 60)
    assert "Retry-After" in response.headers
    assert len(fake.calls) == 3


def test_daily_cap_reports_day_scope(api_client):
    client, fake, clock = api_client
    for _ in range(20):
        assert client.post("/api/generate", files=PHOTO).status_code == 200
        clock.advance(61)

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 429
    assert response.json()["scope"] == "day"
    assert "tomorrow" in response.json()["error"]
    assert len(fake.calls) == 20


def test_forwarded_addresses_get_separate_quotas(api_client):
    client, _, _ = api_client
    for _ in range(3):
        client.post("/api/generate", files=PHOTO, headers={"X-Forwarded-For": "198.51.100.1"})

    blocked = client.post(
        "/api/generate", files=PHOTO, headers={"X-Forwarded-For": "198.51.100.1"}
    )
    other = client.post(
        "/api/generate", files=PHOTO, headers={"X-Forwarded-For": "198.51.100.2, 10.0.0.1"}
    )

    assert blocked.status_code == 429
    assert other.status_code == 200


def test_missing_image_is_rejected_without_charging_quota(api_client):
    client, fake, _ = api_client

    response = client.post("/api/generate", data={"note": "nothing"})

    assert response.status_code == 400
    assert response.json() == {"error": "No image uploaded"}
    assert fake.calls == []
    ok = client.post("/api/generate", files=PHOTO)
    assert ok.headers["X-RateLimit-Remaining"] == "2"


def test_non_image_upload_is_rejected(api_client):
    client, _, _ = api_client

    response = client.post("/api/generate", files={"image": ("a.txt", b"hello", "text/plain")})

    assert response.status_code == 400


def test_provider_error_maps_to_bad_gateway(api_client):
    client, fake, _ = api_client
    fake.error = ImageProviderError("Image service error (500).")

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 502
    assert "Image service error" in response.json()["error"]


def test_unexpected_error_is_generic(api_client):
    client, fake, _ = api_client
    fake.error = KeyError("boom")

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 500
    assert response.json() == {"error": "Generation failed"}


def test_store_outage_fails_closed(api_client, clock):
    client, fake, _ = api_client
    limiter = RateLimiter(
        DownStore(), build_policies(Settings(image_api_key="dummy")), clock=clock
    )
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    response = client.post("/api/generate", files=PHOTO)

    assert response.status_code == 503
    assert response.json()["scope"] is None
    assert fake.calls == []
    assert limiter.store_faults == 1


def test_index_serves_upload_page(api_client):
    client, _, _ = api_client

    response = client.get("/")

    assert response.status_code == 200
    assert "upload-form" in response.text
