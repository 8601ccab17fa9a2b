"""
HTTP Transport for the KSeF API

A thin request/response primitive over requests.Session. It never raises
for HTTP error statuses; callers inspect TransportResponse.status_code and
hand failures to ErrorTranslator. Network-level problems (timeouts,
connection errors) surface as TransportFailure.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Any

import requests

from ksef_errors import ErrorTranslator, KsefError, TransportFailure

logger = logging.getLogger(__name__)


@dataclass
class TransportResponse:
    """Raw outcome of one HTTP exchange."""
    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class RequestsTransport:
    """
    requests-backed transport bound to one KSeF base URL.

    Usage:
        transport = RequestsTransport("https://ksef-test.mf.gov.pl/api")
        response = transport.request("GET", "/online/Invoice/Get/REF")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json, application/xml",
        })

    def request(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        """
        Send one request and return the raw response.

        Raises:
            TransportFailure: On timeouts and connection-level errors
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"KSeF request: {method} {url}")

        try:
            response = self.session.request(
                method,
                url,
                data=body,
                headers=headers or {},
                params=params,
                timeout=self.timeout
            )
        except requests.Timeout as e:
            raise TransportFailure(f"Request timed out after {self.timeout}s: {method} {path}") from e
        except requests.RequestException as e:
            raise TransportFailure(str(e)) from e

        return TransportResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )


def execute(
    transport,
    translator: ErrorTranslator,
    method: str,
    path: str,
    **kwargs
) -> TransportResponse:
    """
    Send a request and return the response only when it succeeded.

    Raises:
        KsefError: Translated from a transport failure or an error response
    """
    try:
        response = transport.request(method, path, **kwargs)
    except KsefError:
        raise
    except (TransportFailure, requests.RequestException, OSError) as e:
        # OSError covers TimeoutError and ConnectionError from custom transports
        raise translator.translate_failure(e) from e

    if not response.ok:
        raise translator.translate_response(response)
    return response
