"""
Shared pytest fixtures: scripted KSeF transport, controllable clock,
in-memory key provider and throwaway signing keys.
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from ksef_key_manager import KeyNotFoundError
from ksef_session import KsefCredentials
from ksef_transport import TransportResponse

VALID_NIP = "1234563218"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class MemoryKeyProvider:
    """Key provider backed by a dict; counts lookups."""

    def __init__(self, keys=None):
        self.keys = dict(keys or {})
        self.calls = 0

    def get_private_key(self, key_reference: str) -> bytes:
        self.calls += 1
        if key_reference not in self.keys:
            raise KeyNotFoundError(f"Signing key not found for: {key_reference}")
        return self.keys[key_reference]


class StubTransport:
    """
    Records every request and answers from a route function.

    The route receives (method, path, kwargs) and returns a
    TransportResponse or raises.
    """

    def __init__(self, route):
        self.route = route
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, path, body=None, headers=None, params=None):
        with self._lock:
            self.calls.append({
                "method": method,
                "path": path,
                "body": body,
                "headers": dict(headers or {}),
                "params": params,
            })
        return self.route(method, path, {"body": body, "headers": headers or {}, "params": params})

    def paths(self):
        return [call["path"] for call in self.calls]

    def count(self, fragment: str) -> int:
        return sum(1 for call in self.calls if fragment in call["path"])


def json_response(data, status_code=200) -> TransportResponse:
    return TransportResponse(status_code=status_code, body=json.dumps(data).encode("utf-8"))


def ksef_exception(code: int, description: str = "", status_code: int = 400) -> TransportResponse:
    return json_response({
        "exception": {
            "serviceCtx": "srvTEMFB",
            "exceptionDetailList": [
                {"exceptionCode": code, "exceptionDescription": description}
            ]
        }
    }, status_code=status_code)


def challenge_response(clock: FakeClock, challenge: str = "abc123") -> TransportResponse:
    return json_response({
        "timestamp": clock().strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        "challenge": challenge,
    })


def init_response(token: str) -> TransportResponse:
    return json_response({
        "timestamp": "2025-01-01T10:00:00.000Z",
        "referenceNumber": f"REF-{token}",
        "sessionToken": {"token": token, "context": {}},
    })


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def rsa_private_key_pem():
    """Throwaway 2048-bit RSA key (PKCS#8 PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def ec_private_key_pem():
    """Throwaway P-256 EC key (PKCS#8 PEM)."""
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def credentials():
    return KsefCredentials(auth_token="LONG-TERM-TOKEN-0001", key_reference="user_certs/1")


@pytest.fixture
def key_provider(rsa_private_key_pem):
    return MemoryKeyProvider({"user_certs/1": rsa_private_key_pem})


@pytest.fixture
def session_route(clock):
    """
    Route answering challenge and init requests; tokens are numbered
    tok-1, tok-2, ... per initialised session. Other paths return 404.
    """
    state = {"sessions": 0}

    def route(method, path, kwargs):
        if path.endswith("/AuthorisationChallenge"):
            return challenge_response(clock)
        if path.endswith("/InitSessionSigned"):
            state["sessions"] += 1
            return init_response(f"tok-{state['sessions']}")
        return TransportResponse(status_code=404)

    return route
