"""End-to-end tests for the proxy app against a mocked origin."""

import io
from contextlib import ExitStack

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from bwhero import __version__
from bwhero.config import MAX_PIXELS, USER_AGENT, VIA_MARKER, TranscoderConfig
from bwhero.proxy.server import ProxyConfig, create_app

URL = "https://images.example.com/photo.png"


@pytest.fixture
def proxy_client(origin_recorder):
    """Start the app against a responder and yield (client, recorder)."""
    with ExitStack() as stack:

        def start(responder, max_pixels=MAX_PIXELS):
            recorder = origin_recorder(responder)
            transcoder = TranscoderConfig(workers=2, chunk_size=4096, max_pixels=max_pixels)
            config = ProxyConfig(transcoder=transcoder)
            app = create_app(config, transport=recorder.transport)
            client = stack.enter_context(TestClient(app))
            return client, recorder

        yield start


def get(client, params=None, headers=None):
    return client.get("/", params=params, headers=headers, follow_redirects=False)


class TestIdentification:
    def test_missing_url(self, proxy_client):
        client, recorder = proxy_client(lambda request: httpx.Response(200))

        response = get(client)

        assert response.status_code == 200
        assert response.text == "bandwidth-hero-proxy"
        assert recorder.calls == 0

    @pytest.mark.parametrize("url", ["not-a-url", "ftp://example.com/a.png"])
    def test_invalid_url(self, proxy_client, url):
        client, recorder = proxy_client(lambda request: httpx.Response(200))

        response = get(client, {"url": url})

        assert response.status_code == 400
        assert recorder.calls == 0

    def test_health(self, proxy_client):
        client, _ = proxy_client(lambda request: httpx.Response(200))

        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["config"]["transcoder_workers"] == 2
        assert data["config"]["default_quality"] == 40


class TestCompressPath:
    def test_large_png_is_compressed(self, proxy_client, png_bytes):
        """Default parameters and a 500000 byte PNG yield a grayscale JPEG."""
        client, recorder = proxy_client(
            lambda request: httpx.Response(
                200,
                headers={"content-type": "image/png", "content-length": "500000"},
                content=png_bytes,
            )
        )

        response = get(client, {"url": URL})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["content-encoding"] == "identity"
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["x-original-size"] == "500000"
        assert "x-proxy-bypass" not in response.headers

        length = int(response.headers["content-length"])
        saved = int(response.headers["x-bytes-saved"])
        assert len(response.content) == length
        assert 500000 - saved == length

        with Image.open(io.BytesIO(response.content)) as image:
            assert image.format == "JPEG"
            assert image.mode == "L"
        assert recorder.calls == 1

    def test_color_output_with_bw_zero(self, proxy_client, jpeg_bytes):
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "image/jpeg"}, content=jpeg_bytes
            )
        )

        response = get(client, {"url": URL, "bw": "0", "l": "80"})

        assert response.status_code == 200
        with Image.open(io.BytesIO(response.content)) as image:
            assert image.mode == "RGB"

    def test_outbound_headers(self, proxy_client, png_bytes):
        client, recorder = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "image/png"}, content=png_bytes
            )
        )

        get(
            client,
            {"url": URL},
            headers={
                "cookie": "session=1",
                "authorization": "Bearer secret",
                "user-agent": "Mozilla/5.0",
            },
        )

        sent = recorder.requests[0].headers
        assert sent["user-agent"] == USER_AGENT
        assert sent["via"] == VIA_MARKER
        assert sent["x-forwarded-for"] == "testclient"
        assert sent["cookie"] == "session=1"
        assert "authorization" not in sent

    def test_redirects_are_followed(self, proxy_client, png_bytes):
        def responder(request):
            if request.url.path == "/start.png":
                return httpx.Response(302, headers={"location": "/final.png"})
            return httpx.Response(200, headers={"content-type": "image/png"}, content=png_bytes)

        client, recorder = proxy_client(responder)

        response = get(client, {"url": "https://images.example.com/start.png"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert [r.url.path for r in recorder.requests] == ["/start.png", "/final.png"]

    def test_oversized_image_redirects(self, proxy_client, make_flat_image):
        """An image over the pixel cap is never decoded; the client fetches it directly."""
        data = make_flat_image(300, 200)
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200,
                headers={"content-type": "image/png", "content-length": "500000"},
                content=data,
            ),
            max_pixels=50_000,
        )

        response = get(client, {"url": URL})

        assert response.status_code == 302
        assert response.headers["location"] == URL
        assert response.headers["content-length"] == "0"

    def test_corrupt_image_redirects(self, proxy_client):
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200,
                headers={
                    "content-type": "image/jpeg",
                    "etag": '"abc"',
                    "cache-control": "max-age=3600",
                },
                content=b"not really a jpeg" * 200,
            )
        )

        response = get(client, {"url": URL})

        assert response.status_code == 302
        assert response.headers["location"] == URL
        assert response.headers["content-length"] == "0"
        assert "etag" not in response.headers
        assert "cache-control" not in response.headers


class TestBypassPath:
    def test_small_png_with_jpeg_output(self, proxy_client, png_bytes):
        """jpeg=1&bw=0 and a PNG under 100 KiB pass through byte for byte."""
        assert len(png_bytes) < 102400
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "image/png"}, content=png_bytes
            )
        )

        response = get(client, {"url": URL, "jpeg": "1", "bw": "0"})

        assert response.status_code == 200
        assert response.content == png_bytes
        assert response.headers["x-proxy-bypass"] == "1"
        assert response.headers["content-type"] == "image/png"
        assert response.headers["content-length"] == str(len(png_bytes))

    def test_non_image(self, proxy_client):
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "text/html"}, content=b"<html></html>"
            )
        )

        response = get(client, {"url": URL})

        assert response.status_code == 200
        assert response.content == b"<html></html>"
        assert response.headers["x-proxy-bypass"] == "1"

    def test_missing_content_length(self, proxy_client, png_bytes):
        client, _ = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "image/png"}, stream=httpx.ByteStream(png_bytes)
            )
        )

        response = get(client, {"url": URL})

        assert response.status_code == 200
        assert response.content == png_bytes
        assert response.headers["x-proxy-bypass"] == "1"

    def test_range_request(self, proxy_client, png_bytes):
        def responder(request):
            assert request.headers["range"] == "bytes=0-99"
            return httpx.Response(
                206,
                headers={"content-type": "image/png", "content-range": "bytes 0-99/500000"},
                content=png_bytes[:100],
            )

        client, recorder = proxy_client(responder)

        response = get(client, {"url": URL}, headers={"range": "bytes=0-99"})

        assert response.status_code == 206
        assert response.content == png_bytes[:100]
        assert response.headers["content-range"] == "bytes 0-99/500000"
        assert response.headers["x-proxy-bypass"] == "1"
        assert recorder.calls == 1


class TestRedirectPath:
    @pytest.mark.parametrize("status", [403, 404, 500])
    def test_origin_error_status(self, proxy_client, status):
        client, _ = proxy_client(lambda request: httpx.Response(status, content=b"nope"))

        response = get(client, {"url": URL})

        assert response.status_code == 302
        assert response.headers["location"] == URL
        assert response.headers["content-length"] == "0"
        assert response.content == b""

    def test_network_error(self, proxy_client):
        def responder(request):
            raise httpx.ConnectError("connection refused")

        client, _ = proxy_client(responder)

        response = get(client, {"url": URL})

        assert response.status_code == 302
        assert response.headers["location"] == URL

    def test_redirect_bound_exceeded(self, proxy_client):
        def responder(request):
            hop = int(request.url.path.strip("/r") or 0)
            return httpx.Response(302, headers={"location": f"/r{hop + 1}"})

        client, recorder = proxy_client(responder)

        response = get(client, {"url": "https://images.example.com/r0"})

        assert response.status_code == 302
        assert response.headers["location"] == "https://images.example.com/r0"
        assert recorder.calls == 5

    def test_loop_is_redirected_without_fetch(self, proxy_client):
        client, recorder = proxy_client(lambda request: httpx.Response(200))

        response = get(
            client, {"url": URL}, headers={"via": VIA_MARKER, "x-forwarded-for": "127.0.0.1"}
        )

        assert response.status_code == 302
        assert response.headers["location"] == URL
        assert recorder.calls == 0

    def test_chained_proxy_is_served(self, proxy_client, png_bytes):
        client, recorder = proxy_client(
            lambda request: httpx.Response(
                200, headers={"content-type": "image/png"}, content=png_bytes
            )
        )

        response = get(
            client, {"url": URL}, headers={"via": VIA_MARKER, "x-forwarded-for": "203.0.113.5"}
        )

        assert response.status_code == 200
        assert recorder.calls == 1
