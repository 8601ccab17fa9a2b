"""
KSeF (Krajowy System e-Faktur) API Client

Entry point for the rest of the application. Authenticates a taxpayer
identity (NIP) with a signed challenge-response exchange, keeps one
session per identity, lists incoming invoice headers and imports single
FA(2) invoices into the flat Invoice / LineItem / VatBreakdownRow model.

Every public operation either returns a complete result or raises a
single KsefError (see ksef_errors.ErrorKind).

API Documentation: https://ksef.mf.gov.pl/
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional, Any, Tuple, Union

from ksef_errors import ErrorKind, ErrorTranslator, KsefError
from ksef_mapper import Invoice, InvoiceXmlMapper, LineItem, VatBreakdownRow, derive_vat_breakdown
from ksef_query import InvoiceHeader, InvoiceQueryClient
from ksef_session import KsefCredentials, SessionManager
from ksef_signer import XmlSigner
from ksef_transport import RequestsTransport
from ksef_validators import is_valid_nip, normalize_nip

logger = logging.getLogger(__name__)

# KSeF API environments
KSEF_API_URLS = {
    "test": "https://ksef-test.mf.gov.pl/api",
    "demo": "https://ksef-demo.mf.gov.pl/api",
    "prod": "https://ksef.mf.gov.pl/api",
}

# Largest PageSize accepted by the incremental query
MAX_PAGE_SIZE = 100


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class KsefConfig:
    """KSeF client configuration."""
    environment: str = "test"
    request_timeout: float = 30  # seconds
    # Counted from the challenge timestamp; KSeF does not return an expiry
    session_lifetime_seconds: int = 10 * 60 * 60
    session_safety_margin_seconds: int = 60
    page_size: int = 100
    system_code: str = "FA (2)"
    schema_version: str = "1-0E"
    base_url: Optional[str] = field(default=None)

    def __post_init__(self):
        if self.base_url is None:
            if self.environment not in KSEF_API_URLS:
                raise ValueError(f"Unknown environment: {self.environment}. "
                                 f"Available: {list(KSEF_API_URLS)}")
            self.base_url = KSEF_API_URLS[self.environment]
        if self.session_safety_margin_seconds < 60:
            raise ValueError("Session safety margin must be at least 60 seconds")
        if self.session_lifetime_seconds <= self.session_safety_margin_seconds:
            raise ValueError("Session lifetime must exceed the safety margin")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"Page size must be between 1 and {MAX_PAGE_SIZE}")

    @classmethod
    def from_env(cls) -> "KsefConfig":
        """Build configuration from KSEF_* environment variables."""
        return cls(
            environment=os.environ.get("KSEF_ENVIRONMENT", "test"),
            request_timeout=float(os.environ.get("KSEF_REQUEST_TIMEOUT", "30")),
            session_lifetime_seconds=int(os.environ.get("KSEF_SESSION_LIFETIME_SECONDS", str(10 * 60 * 60))),
            session_safety_margin_seconds=int(os.environ.get("KSEF_SESSION_SAFETY_MARGIN_SECONDS", "60")),
            page_size=int(os.environ.get("KSEF_PAGE_SIZE", "100")),
            base_url=os.environ.get("KSEF_BASE_URL") or None,
        )

    @property
    def session_lifetime(self) -> timedelta:
        return timedelta(seconds=self.session_lifetime_seconds)

    @property
    def safety_margin(self) -> timedelta:
        return timedelta(seconds=self.session_safety_margin_seconds)


ImportResult = Tuple[Invoice, List[LineItem], List[VatBreakdownRow]]


# =============================================================================
# CLIENT
# =============================================================================

class KsefClient:
    """
    KSeF integration facade.

    Usage:
        client = KsefClient(
            config=KsefConfig(environment="test"),
            key_provider=FileKeyProvider("/srv/ksef-keys"),
        )
        credentials = KsefCredentials(auth_token="...", key_reference="user_certs/1")

        client.test_session("1234563218", credentials)
        headers = client.list_invoices_since("1234563218", credentials, "2024-01-01")
        invoice, items, breakdown = client.import_invoice(
            "1234563218", credentials, headers[0].reference
        )
    """

    def __init__(
        self,
        config: KsefConfig,
        key_provider,
        transport=None,
        signer: Optional[XmlSigner] = None,
        translator: Optional[ErrorTranslator] = None,
        mapper: Optional[InvoiceXmlMapper] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            config: Client configuration
            key_provider: Object with get_private_key(key_reference) -> PEM bytes
            transport: Request/response primitive (default: RequestsTransport)
            signer: XML signer (default: XmlSigner)
            translator: Remote error translator (default: ErrorTranslator)
            mapper: FA(2) mapper (default: InvoiceXmlMapper)
            clock: Current UTC time provider (default: datetime.now(timezone.utc))
        """
        self.config = config
        self.key_provider = key_provider
        self.transport = transport or RequestsTransport(config.base_url, timeout=config.request_timeout)
        self.signer = signer or XmlSigner()
        self.translator = translator or ErrorTranslator()
        self.mapper = mapper or InvoiceXmlMapper()
        self.clock = clock

        self._managers: Dict[str, SessionManager] = {}
        self._managers_lock = Lock()

    # =========================================================================
    # SESSION REGISTRY
    # =========================================================================

    def _session_manager(self, nip: str, credentials: KsefCredentials) -> SessionManager:
        """One SessionManager per NIP; replaced when its credentials change."""
        normalized = normalize_nip(nip)
        if not is_valid_nip(normalized):
            raise KsefError(ErrorKind.VALIDATION, f"Invalid NIP: {nip}")
        if not credentials or not credentials.auth_token or not credentials.key_reference:
            raise KsefError(ErrorKind.VALIDATION,
                            "Incomplete KSeF credentials: token and key reference are required")

        with self._managers_lock:
            manager = self._managers.get(normalized)
            if manager is None or manager.credentials != credentials:
                if manager is not None:
                    logger.info(f"KSeF credentials changed for NIP {normalized}, dropping session")
                manager = SessionManager(
                    nip=normalized,
                    credentials=credentials,
                    transport=self.transport,
                    key_provider=self.key_provider,
                    signer=self.signer,
                    translator=self.translator,
                    session_lifetime=self.config.session_lifetime,
                    safety_margin=self.config.safety_margin,
                    system_code=self.config.system_code,
                    schema_version=self.config.schema_version,
                    clock=self.clock,
                )
                self._managers[normalized] = manager
            return manager

    def _query_client(self, manager: SessionManager) -> InvoiceQueryClient:
        return InvoiceQueryClient(
            manager,
            self.transport,
            translator=self.translator,
            page_size=self.config.page_size
        )

    # =========================================================================
    # PUBLIC API METHODS
    # =========================================================================

    def test_session(self, nip: str, credentials: KsefCredentials) -> Dict[str, Any]:
        """
        Check that a session can be established for the identity.

        Returns:
            {"success": True, "message": ...}

        Raises:
            KsefError: If authentication fails
        """
        manager = self._session_manager(nip, credentials)
        self._guard(manager.ensure_active)
        return {"success": True, "message": "KSeF session initialised successfully."}

    def list_invoices_since(
        self,
        nip: str,
        credentials: KsefCredentials,
        since: Union[date, str]
    ) -> List[InvoiceHeader]:
        """
        List headers of invoices acquired by KSeF since a day.

        Args:
            nip: Taxpayer identity
            credentials: KSeF token and key reference
            since: datetime.date or YYYY-MM-DD

        Raises:
            KsefError: On validation, authentication, transport or remote errors
        """
        manager = self._session_manager(nip, credentials)
        query = self._query_client(manager)
        return self._guard(lambda: query.list_headers_since(since))

    def import_invoice(self, nip: str, credentials: KsefCredentials, reference: str) -> ImportResult:
        """
        Fetch one invoice and map it to (Invoice, [LineItem], [VatBreakdownRow]).

        Nothing is returned unless the whole triple was built.

        Raises:
            KsefError: On validation, authentication, transport or remote errors
        """
        manager = self._session_manager(nip, credentials)
        query = self._query_client(manager)

        def fetch_and_map() -> ImportResult:
            document = query.fetch_full(reference)
            invoice, items = self.mapper.map(document, reference=reference)
            return invoice, items, derive_vat_breakdown(items)

        invoice, items, breakdown = self._guard(fetch_and_map)
        logger.info(f"Imported KSeF invoice {reference}: {len(items)} line items, "
                    f"{len(breakdown)} VAT rates")
        return invoice, items, breakdown

    def _guard(self, operation: Callable[[], Any]) -> Any:
        """Run operation, letting only KsefError escape."""
        try:
            return operation()
        except KsefError:
            raise
        except Exception as e:
            logger.exception("Unexpected failure in KSeF client")
            raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Unexpected KSeF client failure: {e}") from e


# =============================================================================
# USAGE EXAMPLE
# =============================================================================

if __name__ == "__main__":
    """
    Example usage of KsefClient.

    Before running:
    1. Generate a KSeF authorization token in the KSeF portal
    2. Place the signing key at <KSEF_KEY_ROOT>/<KSEF_KEY_REFERENCE>/private_key.pem
    3. Set environment variables below
    """
    from ksef_key_manager import FileKeyProvider

    logging.basicConfig(level=logging.INFO)

    client = KsefClient(
        config=KsefConfig.from_env(),
        key_provider=FileKeyProvider(os.getenv("KSEF_KEY_ROOT", "user_certs")),
    )
    nip = os.getenv("KSEF_NIP", "1234563218")
    credentials = KsefCredentials(
        auth_token=os.getenv("KSEF_TOKEN", "your_ksef_token"),
        key_reference=os.getenv("KSEF_KEY_REFERENCE", "1"),
    )

    try:
        print("Testing KSeF session...")
        client.test_session(nip, credentials)
        print("✓ Session established!")

        since = (datetime.now() - timedelta(days=30)).strftime("%Y-%m-%d")
        headers = client.list_invoices_since(nip, credentials, since)
        print(f"\n✓ Found {len(headers)} invoices since {since}:")
        for header in headers[:5]:
            print(f"  - {header.reference}: {header.counterparty_name} ({header.net_amount:,.2f} net)")

        if headers:
            invoice, items, breakdown = client.import_invoice(nip, credentials, headers[0].reference)
            print(f"\n✓ Imported {invoice.number}: {len(items)} items, gross {invoice.gross_total:,.2f}")
            for row in breakdown:
                print(f"  VAT {row.vat_rate}: net {row.net_amount:,.2f}, vat {row.vat_amount:,.2f}")

    except KsefError as e:
        print(f"✗ KSeF Error: {e}")
        print(f"  Suggested HTTP status: {e.http_status}")
