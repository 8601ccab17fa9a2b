"""
KSeF Error Taxonomy and Remote Error Translation

Every failure that leaves the KSeF client is a single KsefError carrying
one ErrorKind from a closed set. Raw transport exceptions and raw remote
exception payloads never cross the client boundary; ErrorTranslator turns
them into KsefError values.

Remote error payload (KSeF JSON):
    {
        "exception": {
            "serviceCtx": "...",
            "exceptionDetailList": [
                {"exceptionCode": 21301, "exceptionDescription": "..."}
            ]
        }
    }

The same structure is accepted as XML (elements matched by local name).
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Any, Tuple

from lxml import etree

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR KINDS
# =============================================================================

class ErrorKind(Enum):
    """Closed set of error kinds produced by the KSeF client."""
    KEY_UNAVAILABLE = "KEY_UNAVAILABLE"
    SIGNING_ERROR = "SIGNING_ERROR"
    AUTHENTICATION = "AUTHENTICATION"
    VALIDATION = "VALIDATION"
    TRANSPORT = "TRANSPORT"
    UNKNOWN_REMOTE = "UNKNOWN_REMOTE"

    @property
    def http_status(self) -> int:
        """Status code hint for the calling HTTP layer."""
        return _HTTP_STATUS[self]


_HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.KEY_UNAVAILABLE: 500,
    ErrorKind.SIGNING_ERROR: 500,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.VALIDATION: 400,
    ErrorKind.TRANSPORT: 503,
    ErrorKind.UNKNOWN_REMOTE: 500,
}


class AuthErrorClass(Enum):
    """Subdivision of AUTHENTICATION errors."""
    SESSION = "SESSION"          # token missing/terminated, re-auth once
    CREDENTIALS = "CREDENTIALS"  # authentication negative, never retried


# =============================================================================
# EXCEPTIONS
# =============================================================================

class KsefError(Exception):
    """The only error shape raised across the KSeF client boundary."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retriable: bool = False,
        auth_class: Optional[AuthErrorClass] = None,
        remote_code: Optional[int] = None
    ):
        self.kind = kind
        self.message = message
        self.retriable = retriable
        self.auth_class = auth_class
        self.remote_code = remote_code
        super().__init__(f"KSeF Error [{kind.value}]: {message}")

    @property
    def is_session_error(self) -> bool:
        """True when a fresh session may fix the failure."""
        return (
            self.kind is ErrorKind.AUTHENTICATION
            and self.auth_class is AuthErrorClass.SESSION
        )

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retriable": self.retriable,
            "authClass": self.auth_class.value if self.auth_class else None,
            "remoteCode": self.remote_code,
        }


class SigningError(KsefError):
    """Raised by the XML signer on malformed documents or keys."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.SIGNING_ERROR, message)


class KeyUnavailableError(KsefError):
    """Raised when the signing key cannot be obtained for an identity."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.KEY_UNAVAILABLE, message)


class TransportFailure(Exception):
    """Network-level failure reported by a transport (no remote body)."""
    pass


@dataclass
class RemoteException:
    """Exception detail as received from KSeF. Never persisted."""
    code: int
    description: str


@dataclass(frozen=True)
class ErrorMapping:
    """Target of one remote code in the translation table."""
    kind: ErrorKind
    message: str
    retriable: bool = False
    auth_class: Optional[AuthErrorClass] = None


# =============================================================================
# TRANSLATOR
# =============================================================================

class ErrorTranslator:
    """
    Maps raw transport outcomes to KsefError values.

    Usage:
        translator = ErrorTranslator()
        error = translator.translate_response(response)
        error = translator.translate_failure(exc)
    """

    DEFAULT_CODES: Dict[int, ErrorMapping] = {
        21301: ErrorMapping(
            ErrorKind.AUTHENTICATION,
            "Session token does not exist or has expired",
            retriable=True,
            auth_class=AuthErrorClass.SESSION,
        ),
        21305: ErrorMapping(
            ErrorKind.AUTHENTICATION,
            "Session has been terminated",
            retriable=True,
            auth_class=AuthErrorClass.SESSION,
        ),
        21326: ErrorMapping(
            ErrorKind.AUTHENTICATION,
            "Authentication negative: check the KSeF token and the signing key",
            retriable=False,
            auth_class=AuthErrorClass.CREDENTIALS,
        ),
        21101: ErrorMapping(
            ErrorKind.VALIDATION,
            "Context identifier (NIP) does not match the required pattern",
        ),
    }

    def __init__(self, extra_codes: Optional[Dict[int, ErrorMapping]] = None):
        """
        Args:
            extra_codes: Additional or overriding code mappings for newer
                protocol versions
        """
        self.codes: Dict[int, ErrorMapping] = dict(self.DEFAULT_CODES)
        if extra_codes:
            self.codes.update(extra_codes)

    def translate_remote(self, remote: RemoteException) -> KsefError:
        """Map one remote exception to a KsefError."""
        mapping = self.codes.get(remote.code)
        if mapping is None:
            logger.error(f"Unmapped KSeF exception {remote.code}: {remote.description}")
            return KsefError(
                ErrorKind.UNKNOWN_REMOTE,
                f"KSeF error {remote.code}: {remote.description}",
                retriable=False,
                remote_code=remote.code,
            )

        logger.error(f"KSeF exception {remote.code} mapped to {mapping.kind.value}: "
                     f"{remote.description}")
        return KsefError(
            mapping.kind,
            f"{mapping.message} ({remote.description})" if remote.description else mapping.message,
            retriable=mapping.retriable,
            auth_class=mapping.auth_class,
            remote_code=remote.code,
        )

    def translate_response(self, response) -> KsefError:
        """
        Translate an unsuccessful transport response.

        A body carrying a KSeF exception structure is mapped through the code
        table; anything else is treated as a transport-level failure.
        """
        remote = self.parse_remote_exception(response.body)
        if remote is not None:
            return self.translate_remote(remote)

        logger.error(f"KSeF returned HTTP {response.status_code} without exception details")
        return KsefError(
            ErrorKind.TRANSPORT,
            f"KSeF server responded with HTTP {response.status_code}",
            retriable=True,
        )

    def translate_failure(self, failure: Exception) -> KsefError:
        """Translate a network-level failure (timeout, DNS, TLS...)."""
        if isinstance(failure, KsefError):
            return failure
        logger.error(f"KSeF transport failure: {failure}")
        return KsefError(
            ErrorKind.TRANSPORT,
            f"Connection to KSeF failed: {failure}",
            retriable=True,
        )

    # =========================================================================
    # BODY PARSING
    # =========================================================================

    @classmethod
    def parse_remote_exception(cls, body: Optional[bytes]) -> Optional[RemoteException]:
        """Extract the first exception detail from a JSON or XML error body."""
        if not body:
            return None

        text = body.decode("utf-8", errors="replace").strip() if isinstance(body, bytes) else str(body).strip()
        if text.startswith("{"):
            return cls._parse_json(text)
        if text.startswith("<"):
            return cls._parse_xml(body if isinstance(body, bytes) else text.encode("utf-8"))
        return None

    @staticmethod
    def _parse_json(text: str) -> Optional[RemoteException]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None

        exception = data.get("exception") if isinstance(data, dict) else None
        if not isinstance(exception, dict):
            return None

        details = exception.get("exceptionDetailList") or []
        if isinstance(details, dict):
            details = [details]
        if not details or not isinstance(details[0], dict):
            return None

        code, ok = _parse_code(details[0].get("exceptionCode"))
        if not ok:
            return None
        return RemoteException(code=code, description=str(details[0].get("exceptionDescription") or ""))

    @staticmethod
    def _parse_xml(body: bytes) -> Optional[RemoteException]:
        try:
            root = etree.fromstring(body)
        except etree.XMLSyntaxError:
            return None

        code_elems = root.xpath("//*[local-name()='exceptionCode']")
        if not code_elems:
            return None
        code, ok = _parse_code(code_elems[0].text)
        if not ok:
            return None

        desc_elems = root.xpath("//*[local-name()='exceptionDescription']")
        description = (desc_elems[0].text or "").strip() if desc_elems else ""
        return RemoteException(code=code, description=description)


def _parse_code(raw: Any) -> Tuple[int, bool]:
    try:
        return int(str(raw).strip()), True
    except (TypeError, ValueError):
        return 0, False
