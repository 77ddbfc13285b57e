import pytest
import requests

from transcript_hub.clients.transcripts import TranscriptClient, validate_ticker
from transcript_hub.core.errors import NotAvailable, RemoteError, TransientRemoteError, ValidationError


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.headers = {}
        self.response = response
        self.exc = exc
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append({"url": url, "params": params, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def _client(session, **kw):
    return TranscriptClient(
        api_key="k",
        base_url="https://example.test/v1/",
        timeout=7,
        min_interval=0,
        demo=False,
        session=session,
        **kw,
    )


def test_success_shapes_payload_and_sends_key():
    session = FakeSession(FakeResponse(200, {"date": "2024-07-30", "transcript": "hello"}))
    out = _client(session).fetch("aapl", 2024, 3)

    assert out == {"ticker": "AAPL", "year": 2024, "quarter": 3, "date": "2024-07-30", "transcript": "hello"}
    assert session.headers["X-Api-Key"] == "k"
    req = session.requests[0]
    assert req["url"] == "https://example.test/v1/earningstranscript"
    assert req["params"] == {"ticker": "AAPL", "year": 2024, "quarter": 3}
    assert req["timeout"] == 7


@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(404), NotAvailable),
        (FakeResponse(200, {}), NotAvailable),
        (FakeResponse(200, []), NotAvailable),
        (FakeResponse(200, {"transcript": "  "}), NotAvailable),
        (FakeResponse(429), TransientRemoteError),
        (FakeResponse(503), TransientRemoteError),
        (FakeResponse(400, text="bad"), ValidationError),
        (FakeResponse(403, text="premium only"), RemoteError),
        (FakeResponse(200, ValueError("no json")), RemoteError),
    ],
)
def test_status_classification(response, error):
    with pytest.raises(error):
        _client(FakeSession(response)).fetch("AAPL", 2024, 1)


def test_403_is_not_transient():
    with pytest.raises(RemoteError) as exc:
        _client(FakeSession(FakeResponse(403))).fetch("AAPL", 2024, 1)
    assert not isinstance(exc.value, TransientRemoteError)


@pytest.mark.parametrize(
    "exc, error",
    [
        (requests.Timeout("slow"), TransientRemoteError),
        (requests.ConnectionError("down"), TransientRemoteError),
        (requests.RequestException("weird"), RemoteError),
    ],
)
def test_transport_errors(exc, error):
    with pytest.raises(error):
        _client(FakeSession(exc=exc)).fetch("AAPL", 2024, 1)


def test_input_validation_happens_before_the_call():
    session = FakeSession(FakeResponse(200, {"transcript": "x"}))
    with pytest.raises(ValidationError):
        _client(session).fetch("NOT A TICKER", 2024, 1)
    with pytest.raises(ValidationError):
        _client(session).fetch("AAPL", 2024, 5)
    assert session.requests == []
    assert validate_ticker(" brk.b ") == "BRK.B"


def test_demo_mode_skips_network():
    session = FakeSession(exc=AssertionError("network used"))
    client = TranscriptClient(api_key="", demo=True, session=session)
    out = client.fetch("MSFT", 2024, 2)
    assert out["ticker"] == "MSFT"
    assert "MSFT Q2 2024" in out["transcript"]
    assert session.requests == []


def test_requests_are_paced():
    sleeps = []
    clock = iter([0.0, 0.0, 0.05, 0.1])
    client = _client(
        FakeSession(FakeResponse(200, {"transcript": "x"})),
        clock=lambda: next(clock),
        sleep=sleeps.append,
    )
    client.min_interval = 0.1
    client._last_request = -1.0
    client.fetch("AAPL", 2024, 1)
    client.fetch("AAPL", 2024, 2)
    assert sleeps == [pytest.approx(0.05)]
