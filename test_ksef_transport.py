"""
Unit Tests for the requests-backed KSeF transport

Run with: pytest test_ksef_transport.py -v
"""

import pytest
import requests
from unittest.mock import MagicMock

from ksef_errors import TransportFailure
from ksef_transport import RequestsTransport, TransportResponse


@pytest.fixture
def mock_session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


class TestRequestsTransport:
    """HTTP exchange through requests.Session."""

    def test_returns_raw_response(self, mock_session):
        mock_session.request.return_value = MagicMock(
            status_code=200, content=b"<ok/>", headers={"Content-Type": "application/xml"}
        )
        transport = RequestsTransport("https://ksef-test.mf.gov.pl/api/", timeout=5, session=mock_session)

        response = transport.request("GET", "/online/Invoice/Get/REF-1", headers={"SessionToken": "tok"})

        assert response == TransportResponse(200, b"<ok/>", {"Content-Type": "application/xml"})
        mock_session.request.assert_called_once_with(
            "GET",
            "https://ksef-test.mf.gov.pl/api/online/Invoice/Get/REF-1",
            data=None,
            headers={"SessionToken": "tok"},
            params=None,
            timeout=5
        )

    def test_error_status_is_not_raised(self, mock_session):
        mock_session.request.return_value = MagicMock(status_code=500, content=b"", headers={})
        transport = RequestsTransport("https://example.test", session=mock_session)

        response = transport.request("POST", "/x", body=b"{}")

        assert response.status_code == 500
        assert not response.ok

    def test_timeout_becomes_transport_failure(self, mock_session):
        mock_session.request.side_effect = requests.Timeout("read timed out")
        transport = RequestsTransport("https://example.test", timeout=3, session=mock_session)

        with pytest.raises(TransportFailure, match="timed out after 3s"):
            transport.request("GET", "/x")

    def test_connection_error_becomes_transport_failure(self, mock_session):
        mock_session.request.side_effect = requests.ConnectionError("refused")
        transport = RequestsTransport("https://example.test", session=mock_session)

        with pytest.raises(TransportFailure, match="refused"):
            transport.request("GET", "/x")
