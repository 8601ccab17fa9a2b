"""
KSeF Session Management

Owns the only mutable cross-call state of the client: the session token
of one taxpayer identity (NIP). Establishing a session is a three-step
exchange:

    1. POST /online/Session/AuthorisationChallenge -> {challenge, timestamp}
    2. Build an InitSessionRequest carrying the challenge, the NIP, the
       document type and the long-lived KSeF token; sign it (XML-DSig)
       with the user's private key
    3. POST /online/Session/InitSessionSigned -> {sessionToken: {token}}

States:
    NO_SESSION -> CHALLENGE_REQUESTED -> SIGNED -> ACTIVE
    ACTIVE -> EXPIRED (lazily, on next use) | INVALIDATED (auth error) -> NO_SESSION

Concurrent callers that find no usable session share one in-flight
authentication attempt and all observe its outcome.
"""

import json
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Optional, TypeVar

from lxml import etree

from ksef_errors import ErrorKind, ErrorTranslator, KsefError, KeyUnavailableError
from ksef_signer import XmlSigner
from ksef_transport import execute

logger = logging.getLogger(__name__)

T = TypeVar("T")

# XML Namespaces of the session initialisation schema
NAMESPACES = {
    'ns2': 'http://ksef.mf.gov.pl/schema/gt/dfl/2021/10/01/0001',
    'ns3': 'http://ksef.mf.gov.pl/schema/gt/sbs/2021/10/01/0001',
    'xsi': 'http://www.w3.org/2001/XMLSchema-instance',
}

INIT_SESSION_XPATH = "//*[local-name()='InitSessionRequest']"
MIN_SAFETY_MARGIN = timedelta(seconds=60)


class SessionState(Enum):
    """Authentication state machine states."""
    NO_SESSION = "NO_SESSION"
    CHALLENGE_REQUESTED = "CHALLENGE_REQUESTED"
    SIGNED = "SIGNED"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    INVALIDATED = "INVALIDATED"


@dataclass(frozen=True)
class KsefCredentials:
    """Long-lived credentials of one taxpayer identity."""
    auth_token: str       # KSeF authorization token (never logged)
    key_reference: str    # Opaque reference passed to the key provider

    def __repr__(self) -> str:
        return f"KsefCredentials(auth_token='***', key_reference={self.key_reference!r})"


@dataclass(frozen=True)
class AuthChallenge:
    """Server-issued nonce, consumed by one signed exchange."""
    challenge: str
    issued_at: datetime


@dataclass(frozen=True)
class Session:
    """Active KSeF session."""
    token: str
    expires_at: datetime
    reference_number: Optional[str] = None

    def is_usable(self, now: datetime, safety_margin: timedelta) -> bool:
        return now < self.expires_at - safety_margin

    def __repr__(self) -> str:
        return f"Session(token='***', expires_at={self.expires_at.isoformat()})"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp such as 2024-01-15T10:30:00.000Z."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SessionManager:
    """
    Session holder and authentication state machine for one NIP.

    Usage:
        manager = SessionManager(
            nip="1234563218",
            credentials=KsefCredentials(auth_token="...", key_reference="user_certs/1"),
            transport=RequestsTransport(KSEF_API_TEST_URL),
            key_provider=FileKeyProvider("/srv/keys"),
        )
        session = manager.ensure_active()
        result = manager.call_authenticated(lambda s: fetch(s.token))
    """

    CHALLENGE_PATH = "/online/Session/AuthorisationChallenge"
    INIT_SIGNED_PATH = "/online/Session/InitSessionSigned"

    def __init__(
        self,
        nip: str,
        credentials: KsefCredentials,
        transport,
        key_provider,
        signer: Optional[XmlSigner] = None,
        translator: Optional[ErrorTranslator] = None,
        session_lifetime: timedelta = timedelta(hours=10),
        safety_margin: timedelta = MIN_SAFETY_MARGIN,
        system_code: str = "FA (2)",
        schema_version: str = "1-0E",
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            nip: Taxpayer identity (10 digits)
            credentials: KSeF token and key reference of that identity
            transport: Object with request(method, path, body=, headers=, params=)
            key_provider: Object with get_private_key(key_reference) -> PEM bytes
            signer: XML signer (default: XmlSigner)
            translator: Remote error translator (default: ErrorTranslator)
            session_lifetime: Session validity counted from the challenge timestamp
            safety_margin: Sessions are dropped this long before expiry (>= 60 s)
            system_code: Requested document type form code
            schema_version: Requested document type schema version
            clock: Returns the current UTC time (injectable for tests)
        """
        if safety_margin < MIN_SAFETY_MARGIN:
            raise ValueError("Session safety margin must be at least 60 seconds")

        self.nip = nip
        self.credentials = credentials
        self.transport = transport
        self.key_provider = key_provider
        self.signer = signer or XmlSigner()
        self.translator = translator or ErrorTranslator()
        self.session_lifetime = session_lifetime
        self.safety_margin = safety_margin
        self.system_code = system_code
        self.schema_version = schema_version
        self.clock = clock or utc_now

        self._lock = Lock()
        self._session: Optional[Session] = None
        self._state = SessionState.NO_SESSION
        self._inflight: Optional[Future] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> SessionState:
        with self._lock:
            if self._session is not None:
                if self._session.is_usable(self.clock(), self.safety_margin):
                    return SessionState.ACTIVE
                return SessionState.EXPIRED
            return self._state

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self._state = state

    def invalidate(self, session: Optional[Session] = None) -> None:
        """
        Drop the held session.

        When a session is given, it is dropped only if it is still the one
        held, so a session freshly established by another caller survives.
        """
        with self._lock:
            if self._session is None:
                return
            if session is not None and self._session.token != session.token:
                return
            self._session = None
            self._state = SessionState.INVALIDATED
        logger.info(f"KSeF session invalidated for NIP {self.nip}")

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def ensure_active(self) -> Session:
        """
        Return a usable session, authenticating first when needed.

        Raises:
            KsefError: KEY_UNAVAILABLE, SIGNING_ERROR, AUTHENTICATION,
                TRANSPORT, VALIDATION or UNKNOWN_REMOTE
        """
        with self._lock:
            if self._session is not None:
                if self._session.is_usable(self.clock(), self.safety_margin):
                    return self._session
                logger.info(f"KSeF session expired for NIP {self.nip}, re-authenticating")
                self._session = None
                self._state = SessionState.NO_SESSION

            if self._inflight is not None:
                future = self._inflight
                leader = False
            else:
                future = Future()
                self._inflight = future
                leader = True

        if not leader:
            return future.result()

        try:
            session = self._authenticate()
        except BaseException as e:
            with self._lock:
                self._state = SessionState.NO_SESSION
                self._inflight = None
            future.set_exception(e)
            raise

        with self._lock:
            self._session = session
            self._state = SessionState.ACTIVE
            self._inflight = None
        future.set_result(session)
        return session

    def call_authenticated(self, operation: Callable[[Session], T]) -> T:
        """
        Run operation(session) with an active session.

        A session-class authentication error invalidates the session and the
        operation is retried exactly once on a fresh session. A second
        failure of that class is raised to the caller.
        """
        session = self.ensure_active()
        try:
            return operation(session)
        except KsefError as e:
            if e.kind is not ErrorKind.AUTHENTICATION:
                raise
            self.invalidate(session)
            if not e.is_session_error:
                raise
            logger.warning(f"KSeF rejected session for NIP {self.nip} "
                           f"(code {e.remote_code}), re-authenticating once")

        session = self.ensure_active()
        try:
            return operation(session)
        except KsefError as e:
            if e.kind is ErrorKind.AUTHENTICATION:
                self.invalidate(session)
            raise

    # =========================================================================
    # AUTHENTICATION CYCLE
    # =========================================================================

    def _authenticate(self) -> Session:
        logger.info(f"Initialising new KSeF session for NIP {self.nip}...")
        private_key = self._load_private_key()

        self._set_state(SessionState.CHALLENGE_REQUESTED)
        challenge = self._request_challenge()

        document = self.build_init_session_request(challenge)
        signed = self.signer.sign(document, INIT_SESSION_XPATH, private_key)
        self._set_state(SessionState.SIGNED)

        session = self._init_session(signed, challenge)
        logger.info(f"KSeF session initialised for NIP {self.nip}, "
                    f"valid until {session.expires_at.isoformat()}")
        return session

    def _load_private_key(self) -> bytes:
        try:
            return self.key_provider.get_private_key(self.credentials.key_reference)
        except KsefError:
            raise
        except Exception as e:
            logger.error(f"Signing key unavailable for NIP {self.nip}: {e}")
            raise KeyUnavailableError(
                f"Could not load the private key for NIP {self.nip}: {e}"
            ) from e

    def _request_challenge(self) -> AuthChallenge:
        body = json.dumps({
            "contextIdentifier": {"type": "onip", "identifier": self.nip}
        }).encode("utf-8")

        response = execute(
            self.transport,
            self.translator,
            "POST",
            self.CHALLENGE_PATH,
            body=body,
            headers={"Content-Type": "application/json"}
        )
        data = _load_json(response.body, "authorisation challenge")

        challenge = data.get("challenge")
        if not challenge:
            raise KsefError(ErrorKind.UNKNOWN_REMOTE, "Authorisation challenge response has no challenge")

        issued_at = parse_timestamp(data.get("timestamp")) or self.clock()
        return AuthChallenge(challenge=str(challenge), issued_at=issued_at)

    def build_init_session_request(self, challenge: AuthChallenge) -> bytes:
        """Build the unsigned InitSessionRequest document."""
        ns2, ns3 = NAMESPACES['ns2'], NAMESPACES['ns3']
        root = etree.Element("{%s}InitSessionRequest" % ns3, nsmap={
            'ns2': ns2,
            'ns3': ns3,
        })

        context = etree.SubElement(root, "{%s}Context" % ns3)
        etree.SubElement(context, "{%s}Challenge" % ns3).text = challenge.challenge

        identifier = etree.SubElement(
            context, "{%s}Identifier" % ns3, nsmap={'xsi': NAMESPACES['xsi']}
        )
        identifier.set("{%s}type" % NAMESPACES['xsi'], "ns2:SubjectIdentifierByCompanyType")
        etree.SubElement(identifier, "{%s}Identifier" % ns2).text = self.nip

        document_type = etree.SubElement(context, "{%s}DocumentType" % ns3)
        etree.SubElement(document_type, "{%s}Service" % ns2).text = "KSeF"
        form_code = etree.SubElement(document_type, "{%s}FormCode" % ns2)
        etree.SubElement(form_code, "{%s}SystemCode" % ns2).text = self.system_code
        etree.SubElement(form_code, "{%s}SchemaVersion" % ns2).text = self.schema_version

        etree.SubElement(context, "{%s}Token" % ns3).text = self.credentials.auth_token

        return etree.tostring(root, xml_declaration=True, encoding="UTF-8")

    def _init_session(self, signed: bytes, challenge: AuthChallenge) -> Session:
        response = execute(
            self.transport,
            self.translator,
            "POST",
            self.INIT_SIGNED_PATH,
            body=signed,
            headers={"Content-Type": "application/octet-stream"}
        )
        data = _load_json(response.body, "session initialisation")

        token_info = data.get("sessionToken") or {}
        token = token_info.get("token") if isinstance(token_info, dict) else None
        if not token:
            raise KsefError(ErrorKind.UNKNOWN_REMOTE, "Session initialisation response has no session token")

        return Session(
            token=str(token),
            expires_at=challenge.issued_at + self.session_lifetime,
            reference_number=data.get("referenceNumber"),
        )


def _load_json(body: bytes, what: str) -> dict:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Malformed {what} response: {e}") from e
    if not isinstance(data, dict):
        raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Malformed {what} response")
    return data
