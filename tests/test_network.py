"""Tests for the network module."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from guestcache.models import InterceptedRequest
from guestcache.network import USER_AGENT, Network, NetworkError

ORIGIN = "http://guests.test"
UPSTREAM = "http://localhost:5000"


def make_upstream_response(
    status: int = 200, content: bytes = b"", headers: dict | None = None, history: list | None = None
) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status
    mock_response.reason = "OK" if status == 200 else "Error"
    mock_response.content = content
    mock_response.headers = CaseInsensitiveDict(headers or {})
    mock_response.history = history or []
    return mock_response


@pytest.fixture
def session() -> requests.Session:
    return requests.Session()


@pytest.fixture
def network(session: requests.Session) -> Network:
    return Network(ORIGIN, UPSTREAM + "/", timeout=3, session=session)


class TestResolve:
    """Tests for Network.resolve."""

    def test_same_origin_goes_upstream(self, network: Network) -> None:
        """Origin is replaced by the upstream base URL."""
        assert network.resolve(f"{ORIGIN}/api/guests") == f"{UPSTREAM}/api/guests"

    def test_query_is_kept(self, network: Network) -> None:
        """Query strings are forwarded."""
        assert network.resolve(f"{ORIGIN}/api/guests?page=2&q=ann") == f"{UPSTREAM}/api/guests?page=2&q=ann"

    def test_root_path(self, network: Network) -> None:
        """A bare origin resolves to the upstream root."""
        assert network.resolve(ORIGIN) == f"{UPSTREAM}/"

    def test_cross_origin_is_unchanged(self, network: Network) -> None:
        """Cross-origin URLs are fetched directly."""
        assert network.resolve("https://cdn.test/lib.js") == "https://cdn.test/lib.js"


class TestFetch:
    """Tests for Network.fetch."""

    def test_sets_user_agent(self, network: Network, session: requests.Session) -> None:
        """The session identifies itself."""
        assert session.headers["User-Agent"] == USER_AGENT

    def test_successful_fetch(self, network: Network, session: requests.Session) -> None:
        """Status, headers and body are copied into the Response."""
        upstream = make_upstream_response(200, b'{"status":"ok"}', {"Content-Type": "application/json"})
        with patch.object(session, "request", return_value=upstream) as mock_request:
            response = network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/health"))

        mock_request.assert_called_once()
        args, kwargs = mock_request.call_args
        assert args == ("GET", f"{UPSTREAM}/api/health")
        assert kwargs["timeout"] == 3
        assert kwargs["allow_redirects"] is True

        assert response.status == 200
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"status": "ok"}
        assert response.url == f"{ORIGIN}/api/health"
        assert response.type == "basic"
        assert response.redirected is False

    def test_error_status_is_not_a_network_error(self, network: Network, session: requests.Session) -> None:
        """HTTP errors come back as responses."""
        with patch.object(session, "request", return_value=make_upstream_response(500, b"boom")):
            response = network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/guests"))
        assert response.status == 500
        assert not response.ok

    def test_forwards_method_and_body(self, network: Network, session: requests.Session) -> None:
        """Non-GET requests keep their method and body."""
        with patch.object(session, "request", return_value=make_upstream_response(201)) as mock_request:
            network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/guests", method="POST", body=b'{"name":"Ann"}'))

        args, kwargs = mock_request.call_args
        assert args[0] == "POST"
        assert kwargs["data"] == b'{"name":"Ann"}'

    def test_strips_hop_by_hop_request_headers(self, network: Network, session: requests.Session) -> None:
        """Connection-level and Host headers are not forwarded."""
        request = InterceptedRequest(
            url=f"{ORIGIN}/",
            headers={"Host": "guests.test", "Connection": "keep-alive", "Accept": "text/html"},
        )
        with patch.object(session, "request", return_value=make_upstream_response()) as mock_request:
            network.fetch(request)

        assert mock_request.call_args.kwargs["headers"] == {"Accept": "text/html"}

    def test_strips_decoded_body_headers(self, network: Network, session: requests.Session) -> None:
        """Encoding and length headers are dropped from responses."""
        upstream = make_upstream_response(
            200,
            b"body",
            {"Content-Encoding": "gzip", "Content-Length": "20", "Transfer-Encoding": "chunked", "ETag": "x"},
        )
        with patch.object(session, "request", return_value=upstream):
            response = network.fetch(InterceptedRequest(url=f"{ORIGIN}/app.js"))
        assert dict(response.headers) == {"ETag": "x"}

    def test_head_keeps_length_headers(self, network: Network, session: requests.Session) -> None:
        """HEAD replies keep the length of the body they describe."""
        upstream = make_upstream_response(200, b"", {"Content-Length": "2048", "Transfer-Encoding": "chunked"})
        with patch.object(session, "request", return_value=upstream):
            response = network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/export.csv", method="HEAD"))
        assert dict(response.headers) == {"Content-Length": "2048"}

    def test_cross_origin_response_type(self, network: Network, session: requests.Session) -> None:
        """Cross-origin responses are typed cors."""
        with patch.object(session, "request", return_value=make_upstream_response()):
            response = network.fetch(InterceptedRequest(url="https://cdn.test/lib.js"))
        assert response.type == "cors"

    def test_redirect_is_flagged(self, network: Network, session: requests.Session) -> None:
        """Responses reached through redirects are marked redirected."""
        upstream = make_upstream_response(200, b"", history=[make_upstream_response(302)])
        with patch.object(session, "request", return_value=upstream):
            response = network.fetch(InterceptedRequest(url=f"{ORIGIN}/login"))
        assert response.redirected is True

    def test_timeout_raises_network_error(self, network: Network, session: requests.Session) -> None:
        """Timeouts become NetworkError."""
        with patch.object(session, "request", side_effect=requests.Timeout("read timed out")):
            with pytest.raises(NetworkError, match="Timed out"):
                network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/guests"))

    def test_connection_error_raises_network_error(self, network: Network, session: requests.Session) -> None:
        """Connection failures become NetworkError."""
        with patch.object(session, "request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(NetworkError, match="Failed to fetch"):
                network.fetch(InterceptedRequest(url=f"{ORIGIN}/api/guests"))


def test_close_closes_session(session: requests.Session) -> None:
    """close() releases the session."""
    network = Network(ORIGIN, UPSTREAM, session=session)
    with patch.object(session, "close") as mock_close:
        network.close()
    mock_close.assert_called_once()
