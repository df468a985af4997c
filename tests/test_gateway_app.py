from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from blackroad_cdn.common.settings import GatewaySettings
from blackroad_cdn.gateway.app import OUTCOME_COUNTER, create_app
from blackroad_cdn.gateway.side_cache import CachedMetadata
from blackroad_cdn.gateway.store import LocalObjectStore


CORS = {
    "access-control-allow-origin": "*",
    "access-control-expose-headers": "ETag, Content-Length, Content-Type",
}


def assert_cors(response) -> None:
    for name, value in CORS.items():
        assert response.headers.get(name) == value


def test_root_describes_service(client: TestClient, store) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {
        "service": "BlackRoad CDN",
        "bucket": "blackroad-media",
        "usage": "GET /<asset-key>",
    }
    assert_cors(response)
    assert store.get_calls == []


def test_root_describes_service_without_store(unbound_client: TestClient) -> None:
    response = unbound_client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "BlackRoad CDN"
    assert_cors(response)


@pytest.mark.parametrize("key", ["missing.png", "models/llama/weights.safetensors", "a"])
def test_unbound_store_degrades(unbound_client: TestClient, key: str) -> None:
    response = unbound_client.get(f"/{key}")
    assert response.status_code == 503
    body = response.json()
    assert body["key"] == key
    assert body["error"] == "Media bucket not bound"
    assert "BLACKROAD_CDN_S3_BUCKET" in body["hint"]
    assert_cors(response)


def test_missing_key_is_not_found(client: TestClient, store) -> None:
    response = client.get("/missing-key")
    assert response.status_code == 404
    assert response.text == "Not found"
    assert response.headers["content-type"].startswith("text/plain")
    assert_cors(response)
    assert store.get_calls == [("missing-key", None)]


def test_present_key_streams_asset(client: TestClient, store) -> None:
    payload = b"fake-png-bytes-" * 10
    etag = store.put("images/hero.png", payload, content_type="image/png")

    response = client.get("/images/hero.png")
    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-length"] == str(len(payload))
    assert response.headers["etag"] == etag
    assert response.headers["cache-control"] == "public, max-age=2592000, stale-while-revalidate=5184000"
    assert response.headers["x-blackroad-cdn"] == "1"
    assert_cors(response)
    assert store.released == ["images/hero.png"]


@pytest.mark.parametrize(
    ("path", "key"),
    [("/a%3Fb.png", "a?b.png"), ("/a%23b.png", "a#b.png"), ("/dir%2Fname%3Fv%3D2.png", "dir/name?v=2.png")],
)
def test_encoded_reserved_characters_stay_in_key(client: TestClient, store, path: str, key: str) -> None:
    store.put("a", b"other-object", content_type="image/png")
    store.put(key, b"right-object", content_type="image/png")

    response = client.get(path)
    assert response.status_code == 200
    assert response.content == b"right-object"
    assert store.get_calls == [(key, None)]


@pytest.mark.parametrize(("path", "key"), [("/x%23y", "x#y"), ("/x%3Fy", "x?y")])
def test_unbound_store_reports_full_encoded_key(unbound_client: TestClient, path: str, key: str) -> None:
    response = unbound_client.get(path)
    assert response.status_code == 503
    assert response.json()["key"] == key


def test_query_string_is_not_part_of_key(client: TestClient, store) -> None:
    store.put("images/hero.png", b"hero", content_type="image/png")

    response = client.get("/images/hero.png?v=3")
    assert response.status_code == 200
    assert store.get_calls == [("images/hero.png", None)]


def test_local_store_rejects_nul_key(settings: GatewaySettings, media_dir) -> None:
    app = create_app(settings=settings, store=LocalObjectStore(media_dir))
    with TestClient(app) as test_client:
        response = test_client.get("/bad%00key")
        assert response.status_code == 404
        assert_cors(response)
        assert test_client.get("/images/logo.png").content == b"\x89PNG-fake"


def test_matching_validator_returns_not_modified(client: TestClient, store) -> None:
    etag = store.put("clips/intro.mp4", b"video", content_type="video/mp4")

    response = client.get("/clips/intro.mp4", headers={"If-None-Match": etag})
    assert response.status_code == 304
    assert response.content == b""
    assert_cors(response)
    assert store.get_calls == [("clips/intro.mp4", etag)]


def test_stale_validator_returns_full_content(client: TestClient, store) -> None:
    etag = store.put("clips/intro.webm", b"new-video", content_type="video/webm")

    response = client.get("/clips/intro.webm", headers={"If-None-Match": '"stale"'})
    assert response.status_code == 200
    assert response.content == b"new-video"
    assert response.headers["etag"] == etag
    assert response.headers["cache-control"] == "public, max-age=604800, stale-while-revalidate=1209600"


def test_untyped_object_uses_side_cache_content_type(client: TestClient, store, side_cache) -> None:
    store.put("tracks/theme", b"mp3-bytes")
    side_cache.entries["tracks/theme"] = CachedMetadata(size=9, content_type="audio/mpeg")

    response = client.get("/tracks/theme")
    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["cache-control"] == "public, max-age=1209600, stale-while-revalidate=2419200"
    assert side_cache.lookups == ["tracks/theme"]


def test_untyped_object_defaults_to_octet_stream(client: TestClient, store, side_cache) -> None:
    store.put("weights/model.bin", b"\x00\x01\x02")

    response = client.get("/weights/model.bin")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["cache-control"] == "public, max-age=31536000, stale-while-revalidate=63072000"


def test_typed_object_skips_side_cache(client: TestClient, store, side_cache) -> None:
    store.put("docs/readme.txt", b"hello", content_type="text/plain")

    response = client.get("/docs/readme.txt")
    assert response.status_code == 200
    assert response.headers["content-type"] == "text/plain"
    assert response.headers["cache-control"] == "public, max-age=3600, stale-while-revalidate=7200"
    assert side_cache.lookups == []


@pytest.mark.parametrize("path", ["/", "/some/asset.png", "/_cdn/metrics"])
def test_preflight_on_any_path(client: TestClient, store, path: str) -> None:
    response = client.options(path)
    assert response.status_code == 200
    assert response.content == b""
    assert_cors(response)
    assert store.get_calls == []


def test_preflight_without_store(unbound_client: TestClient) -> None:
    response = unbound_client.options("/anything")
    assert response.status_code == 200
    assert response.content == b""
    assert_cors(response)


def test_store_failure_is_reported_as_unavailable(client: TestClient, store) -> None:
    store.unavailable = True

    response = client.get("/images/hero.png")
    assert response.status_code == 503
    body = response.json()
    assert body["error"] == "Object store unavailable"
    assert body["key"] == "images/hero.png"
    assert "hint" in body
    assert_cors(response)


def test_head_answered_from_side_cache(client: TestClient, store, side_cache) -> None:
    side_cache.entries["images/cached.webp"] = CachedMetadata(size=2048, content_type="image/webp")

    response = client.head("/images/cached.webp")
    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["content-length"] == "2048"
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["cache-control"] == "public, max-age=2592000, stale-while-revalidate=5184000"
    assert "etag" not in response.headers
    assert store.head_calls == []
    assert store.get_calls == []


def test_head_falls_back_to_store(client: TestClient, store, side_cache) -> None:
    etag = store.put("clips/short.mp4", b"12345", content_type="video/mp4")

    response = client.head("/clips/short.mp4")
    assert response.status_code == 200
    assert response.headers["etag"] == etag
    assert response.headers["content-length"] == "5"
    assert response.headers["x-blackroad-cdn"] == "1"
    assert store.head_calls == [("clips/short.mp4", None)]
    assert store.get_calls == []


def test_conditional_head_bypasses_side_cache(client: TestClient, store, side_cache) -> None:
    etag = store.put("images/a.gif", b"gif", content_type="image/gif")
    side_cache.entries["images/a.gif"] = CachedMetadata(size=3, content_type="image/gif")

    response = client.head("/images/a.gif", headers={"If-None-Match": etag})
    assert response.status_code == 304
    assert side_cache.lookups == []
    assert store.head_calls == [("images/a.gif", etag)]


def test_head_missing_key(client: TestClient) -> None:
    response = client.head("/nope")
    assert response.status_code == 404
    assert_cors(response)


def test_every_outcome_carries_cors(client: TestClient, store) -> None:
    etag = store.put("k.png", b"x", content_type="image/png")
    responses = [
        client.get("/"),
        client.get("/k.png"),
        client.get("/k.png", headers={"If-None-Match": etag}),
        client.get("/absent"),
        client.options("/k.png"),
        client.head("/k.png"),
        client.post("/k.png"),
    ]
    for response in responses:
        assert_cors(response)


def test_outcomes_are_counted(client: TestClient, store) -> None:
    before = OUTCOME_COUNTER.value("not_found")
    client.get("/absent-one")
    client.get("/absent-two")
    assert OUTCOME_COUNTER.value("not_found") == before + 2


def test_self_description_reports_configured_bucket(store) -> None:
    settings = GatewaySettings(_env_file=None, s3_bucket="media-prod")
    app = create_app(settings=settings, store=store)
    with TestClient(app) as test_client:
        assert test_client.get("/").json()["bucket"] == "media-prod"


def test_healthz_reports_store(client: TestClient) -> None:
    response = client.get("/_cdn/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["backend"] == "fake"
    assert body["checks"]["side_cache"] is True


def test_healthz_unhealthy_without_store(unbound_client: TestClient) -> None:
    response = unbound_client.get("/_cdn/healthz")
    assert response.status_code == 503
    assert response.json()["detail"]["checks"] == {"store": "unbound"}


def test_metrics_require_token(client: TestClient, store) -> None:
    store.put("m.png", b"abc", content_type="image/png")
    client.get("/m.png")

    assert client.get("/_cdn/metrics").status_code == 401
    response = client.get("/_cdn/metrics", headers={"Authorization": "Bearer metrics-secret"})
    assert response.status_code == 200
    assert "blackroad_cdn_responses_total" in response.text
    assert 'outcome="served"' in response.text
    assert "blackroad_cdn_bytes_served_total" in response.text


def test_side_cache_closed_on_shutdown(settings, store, side_cache) -> None:
    app = create_app(settings=settings, store=store, side_cache=side_cache)
    with TestClient(app):
        assert side_cache.closed is False
    assert side_cache.closed is True
