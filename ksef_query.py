"""
KSeF Invoice Queries

Two operations over an active session:
- list_headers_since(date): incremental query of invoice headers whose
  acquisition timestamp is at or after the given day (paged)
- fetch_full(reference): the complete invoice XML for one KSeF reference

Every call carries the session token in the SessionToken header and goes
through SessionManager.call_authenticated, so a rejected session is
re-established and the call retried once.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Any, Union

from lxml import etree

from ksef_errors import ErrorKind, ErrorTranslator, KsefError
from ksef_mapper import to_date, to_number
from ksef_session import Session, SessionManager
from ksef_transport import execute

logger = logging.getLogger(__name__)


@dataclass
class InvoiceHeader:
    """One entry of the incremental invoice query."""
    reference: str
    number: Optional[str]
    counterparty_name: Optional[str]
    net_amount: float
    gross_amount: Optional[float] = None
    issue_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "number": self.number,
            "counterpartyName": self.counterparty_name,
            "netAmount": self.net_amount,
            "grossAmount": self.gross_amount,
            "issueDate": self.issue_date.isoformat() if self.issue_date else None,
        }


class InvoiceQueryClient:
    """
    Invoice header listing and single invoice retrieval.

    Usage:
        query = InvoiceQueryClient(session_manager, transport)
        headers = query.list_headers_since("2024-01-01")
        xml_bytes = query.fetch_full(headers[0].reference)
    """

    QUERY_PATH = "/online/Query/Invoice/Sync"
    INVOICE_PATH = "/online/Invoice/Get/{reference}"

    def __init__(
        self,
        session_manager: SessionManager,
        transport,
        translator: Optional[ErrorTranslator] = None,
        page_size: int = 100
    ):
        self.session_manager = session_manager
        self.transport = transport
        self.translator = translator or session_manager.translator
        self.page_size = page_size

    # =========================================================================
    # HEADER QUERY
    # =========================================================================

    def list_headers_since(self, since: Union[date, str]) -> List[InvoiceHeader]:
        """
        List headers of invoices acquired by KSeF since the given day.

        Args:
            since: datetime.date or YYYY-MM-DD string

        Raises:
            KsefError: VALIDATION on a bad date, otherwise as raised by KSeF calls
        """
        body = self.build_query_request(self._validate_date(since))

        headers: List[InvoiceHeader] = []
        previous_raw: Optional[List[Any]] = None
        offset = 0
        while True:
            params = {"PageSize": self.page_size, "PageOffset": offset}
            page_body = self.session_manager.call_authenticated(
                lambda session: self._post_query(session, body, params)
            )
            raw_headers = self._raw_headers(page_body)
            page = self._to_headers(raw_headers)

            if offset > 0 and raw_headers == previous_raw:
                logger.warning(f"KSeF returned page {offset + 1} unchanged, stopping pagination")
                break
            headers.extend(page)

            # a short page is judged on raw entries, skipped ones still occupy slots
            if len(raw_headers) < self.page_size:
                break
            previous_raw = raw_headers
            offset += 1
            logger.info(f"Fetching invoice header page {offset + 1}...")

        logger.info(f"KSeF query returned {len(headers)} invoice headers")
        return headers

    def _post_query(self, session: Session, body: bytes, params: Dict[str, Any]) -> bytes:
        response = execute(
            self.transport,
            self.translator,
            "POST",
            self.QUERY_PATH,
            body=body,
            headers={
                "Content-Type": "application/octet-stream",
                "SessionToken": session.token,
            },
            params=params
        )
        return response.body

    @staticmethod
    def build_query_request(since: date) -> bytes:
        """Query document with a single lower bound on the acquisition timestamp."""
        root = etree.Element("QueryCriteria")
        etree.SubElement(root, "SubjectType").text = "subject2"
        etree.SubElement(root, "Type").text = "incremental"
        etree.SubElement(root, "AcquisitionTimestampThresholdFrom").text = (
            f"{since.isoformat()}T00:00:00Z"
        )
        return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)

    @staticmethod
    def _validate_date(since: Union[date, str]) -> date:
        if isinstance(since, datetime):
            return since.date()
        if isinstance(since, date):
            return since
        try:
            return datetime.strptime(str(since), "%Y-%m-%d").date()
        except ValueError:
            raise KsefError(ErrorKind.VALIDATION, f"Invalid date format: {since}. Expected YYYY-MM-DD")

    # =========================================================================
    # RESPONSE PARSING
    # =========================================================================

    @classmethod
    def parse_query_response(cls, body: bytes) -> List[InvoiceHeader]:
        """Parse a JSON or XML query response into headers."""
        return cls._to_headers(cls._raw_headers(body))

    @staticmethod
    def _raw_headers(body: bytes) -> List[Any]:
        """Header entries of a JSON or XML query response, before filtering."""
        text = body.decode("utf-8", errors="replace").strip() if body else ""
        if not text:
            return []

        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Malformed invoice query response: {e}") from e
            raw_headers = data.get("invoiceHeaderList") or [] if isinstance(data, dict) else []
            if isinstance(raw_headers, dict):
                raw_headers = [raw_headers]
        else:
            try:
                root = etree.fromstring(body)
            except etree.XMLSyntaxError as e:
                raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Malformed invoice query response: {e}") from e
            raw_headers = [
                _element_to_dict(elem)
                for elem in root.iter()
                if isinstance(elem.tag, str) and _key(elem) == "invoiceHeader"
            ]
        return raw_headers

    @classmethod
    def _to_headers(cls, raw_headers: List[Any]) -> List[InvoiceHeader]:
        headers = []
        for raw in raw_headers:
            header = cls._to_header(raw)
            if header is None:
                logger.warning("Skipping invoice header without KSeF reference number")
                continue
            headers.append(header)
        return headers

    @staticmethod
    def _to_header(raw: Dict[str, Any]) -> Optional[InvoiceHeader]:
        if not isinstance(raw, dict):
            return None
        reference = raw.get("ksefReferenceNumber")
        if not reference:
            return None

        subject = raw.get("subjectBy") or {}
        name_info = subject.get("issuedByName") if isinstance(subject, dict) else None
        counterparty = None
        if isinstance(name_info, dict):
            counterparty = name_info.get("fullName") or name_info.get("tradeName")

        gross = raw.get("gross")
        return InvoiceHeader(
            reference=str(reference),
            number=raw.get("invoiceReferenceNumber"),
            counterparty_name=counterparty,
            net_amount=to_number(_as_text(raw.get("net"))),
            gross_amount=to_number(_as_text(gross)) if gross is not None else None,
            issue_date=to_date(_as_text(raw.get("invoicingDate"))),
        )

    # =========================================================================
    # SINGLE INVOICE
    # =========================================================================

    def fetch_full(self, reference: str) -> bytes:
        """
        Retrieve the complete invoice XML for one KSeF reference number.

        Raises:
            KsefError: VALIDATION on an empty reference, otherwise as raised by KSeF calls
        """
        if not reference or not reference.strip():
            raise KsefError(ErrorKind.VALIDATION, "KSeF reference number is required")
        path = self.INVOICE_PATH.format(reference=reference.strip())

        def get_invoice(session: Session) -> bytes:
            response = execute(
                self.transport,
                self.translator,
                "GET",
                path,
                headers={"SessionToken": session.token}
            )
            return response.body

        document = self.session_manager.call_authenticated(get_invoice)
        logger.info(f"Fetched KSeF invoice {reference} ({len(document)} bytes)")
        return document


def _key(element: etree._Element) -> str:
    """Local name with a lower-case first letter (InvoiceHeader -> invoiceHeader)."""
    name = etree.QName(element).localname
    return name[:1].lower() + name[1:]


def _element_to_dict(element: etree._Element) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for child in element:
        if not isinstance(child.tag, str):
            continue
        if len(child):
            result[_key(child)] = _element_to_dict(child)
        else:
            result[_key(child)] = (child.text or "").strip()
    return result


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)
