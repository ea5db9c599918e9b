import json

import httpx
import pytest

from src.domain.errors import UpstreamRateLimited
from src.domain.rate_limiter import RateLimiter
from src.providers.resend.client import AttachmentTooLarge, ResendProviderError, download_attachment, send_email


BASE_URL = "https://api.resend.test"


def _http(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _download(handler, *, max_bytes=1024, sleeps=None):
    return download_attachment(
        email_id="email_1",
        attachment_id="att_1",
        api_key="re_key",
        max_bytes=max_bytes,
        rate_limiter=RateLimiter(),
        min_interval_seconds=0.0,
        max_retries=2,
        base_url=BASE_URL,
        http_client=_http(handler),
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def test_download_attachment_returns_bytes():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"%PDF-1.4 data")

    assert _download(handler) == b"%PDF-1.4 data"
    assert seen[0].url.path == "/emails/email_1/attachments/att_1"
    assert seen[0].headers["Authorization"] == "Bearer re_key"


def test_declared_length_over_limit_is_refused():
    def handler(request):
        return httpx.Response(200, content=b"x" * 2048)

    with pytest.raises(AttachmentTooLarge) as exc:
        _download(handler, max_bytes=1024)

    assert exc.value.size == 2048
    assert exc.value.limit == 1024


def test_undeclared_length_is_enforced_while_streaming():
    def handler(request):
        return httpx.Response(200, content=iter([b"a" * 600, b"b" * 600]))

    with pytest.raises(AttachmentTooLarge) as exc:
        _download(handler, max_bytes=1000)

    assert exc.value.size == 1200


class _ResetMidBody(httpx.SyncByteStream):
    def __iter__(self):
        yield b"abc"
        raise httpx.ReadError("connection reset mid-body")


def test_transport_error_while_streaming_raises_provider_error():
    def handler(request):
        return httpx.Response(200, stream=_ResetMidBody())

    with pytest.raises(ResendProviderError) as exc:
        _download(handler)

    assert "connection reset mid-body" in str(exc.value)
    assert exc.value.retryable is True


def test_unparseable_content_length_is_treated_as_undeclared():
    def handler(request):
        return httpx.Response(200, headers={"content-length": "abc"}, content=b"%PDF-1.4 data")

    assert _download(handler) == b"%PDF-1.4 data"


def test_unparseable_content_length_still_caps_streamed_bytes():
    def handler(request):
        return httpx.Response(200, headers={"content-length": "abc"}, content=b"x" * 2048)

    with pytest.raises(AttachmentTooLarge) as exc:
        _download(handler, max_bytes=1024)

    assert exc.value.size == 2048


def test_rate_limited_download_is_retried():
    responses = [httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(200, content=b"ok")]
    sleeps = []

    def handler(request):
        return responses.pop(0)

    assert _download(handler, sleeps=sleeps) == b"ok"
    assert sleeps == [2.0]


def test_exhausted_rate_limit_raises_retryable_error():
    sleeps = []

    def handler(request):
        return httpx.Response(429)

    with pytest.raises(UpstreamRateLimited):
        _download(handler, sleeps=sleeps)

    assert sleeps == [1.0, 2.0]


def test_missing_attachment_raises_provider_error():
    def handler(request):
        return httpx.Response(404, json={"message": "not found"})

    with pytest.raises(ResendProviderError):
        _download(handler)


def test_send_email_posts_message():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "sent_1"})

    result = send_email(
        api_key="re_key",
        from_email="alerts@example.com",
        to="ops-chat@example.com",
        subject="Fwd: hello",
        html="<p>hello</p>",
        rate_limiter=RateLimiter(),
        min_interval_seconds=0.0,
        base_url=BASE_URL,
        http_client=_http(handler),
    )

    assert result == {"id": "sent_1"}
    body = json.loads(seen[0].content)
    assert body == {
        "from": "alerts@example.com",
        "to": ["ops-chat@example.com"],
        "subject": "Fwd: hello",
        "html": "<p>hello</p>",
    }


def test_send_email_with_bad_key_is_terminal():
    def handler(request):
        return httpx.Response(401, json={"message": "invalid"})

    with pytest.raises(ResendProviderError) as exc:
        send_email(
            api_key="bad",
            from_email="alerts@example.com",
            to="ops-chat@example.com",
            subject="s",
            html="h",
            rate_limiter=RateLimiter(),
            base_url=BASE_URL,
            http_client=_http(handler),
        )

    assert exc.value.category == "terminal"
