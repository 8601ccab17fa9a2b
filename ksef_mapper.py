"""
FA(2) Invoice XML Mapper

Converts one KSeF FA(2) invoice document into the flat application model:
Invoice + LineItem[] (+ VatBreakdownRow[] derived from the line items).

The external schema marks nearly every field optional, so extraction is
tolerant: every lookup has a default, numbers fall back to zero, and a
single FaWiersz row is treated the same as a repeated one. Elements are
matched by local name, so any FA schema namespace is accepted.

FA(2) fields used:
    Faktura/Fa/P_1          issue date
    Faktura/Fa/P_2          invoice number
    Faktura/Fa/P_6          delivery date
    Faktura/Fa/KodWaluty    currency
    Faktura/Fa/P_13_x       declared net per rate group
    Faktura/Fa/P_14_x       declared VAT per rate group
    Faktura/Fa/P_15         declared gross total
    Faktura/Podmiot1|2/DaneIdentyfikacyjne/{NIP,PelnaNazwa,Nazwa}
    Faktura/Fa/FaWiersz     line items (P_7, P_8A, P_8B, P_9A, P_11, P_11Vat, P_12),
                            optionally wrapped in a FaWiersze element
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Dict, List, Optional, Any, Tuple

from lxml import etree

from ksef_errors import ErrorKind, KsefError

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01
DEFAULT_CURRENCY = "PLN"

_DECLARED_NET = re.compile(r"^P_13_\d+$")
_DECLARED_VAT = re.compile(r"^P_14_\d+$")  # P_14_xW (VAT in PLN) is excluded


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass
class LineItem:
    """One invoice row."""
    description: Optional[str]
    quantity: float
    unit: Optional[str]
    unit_net_price: float
    vat_rate: Optional[str]   # literal rate, e.g. "23", "8", "zw"
    net_amount: float
    vat_amount: float
    gross_amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VatBreakdownRow:
    """Amounts of all line items sharing one literal VAT rate."""
    vat_rate: Optional[str]
    net_amount: float
    vat_amount: float
    gross_amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Invoice:
    """Invoice header in the application model."""
    external_reference: Optional[str]
    number: Optional[str]
    issue_date: Optional[date]
    delivery_date: Optional[date]
    seller_tax_id: Optional[str]
    buyer_tax_id: Optional[str]
    seller_name: Optional[str]
    buyer_name: Optional[str]
    currency: str
    net_total: float
    vat_total: float
    gross_total: float

    @property
    def day_month_year(self) -> Optional[str]:
        """Issue date as dd/mm/yyyy."""
        if self.issue_date is None:
            return None
        return self.issue_date.strftime("%d/%m/%Y")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalReference": self.external_reference,
            "number": self.number,
            "issueDate": self.issue_date.isoformat() if self.issue_date else None,
            "deliveryDate": self.delivery_date.isoformat() if self.delivery_date else None,
            "sellerTaxId": self.seller_tax_id,
            "buyerTaxId": self.buyer_tax_id,
            "sellerName": self.seller_name,
            "buyerName": self.buyer_name,
            "currency": self.currency,
            "netTotal": self.net_total,
            "vatTotal": self.vat_total,
            "grossTotal": self.gross_total,
            "dayMonthYear": self.day_month_year,
        }


# =============================================================================
# TOLERANT ACCESSORS
# =============================================================================

def _local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def _children(node: etree._Element, name: str) -> List[etree._Element]:
    return [
        child for child in node
        if isinstance(child.tag, str) and _local_name(child) == name
    ]


def get_optional_node(node: Optional[etree._Element], path: str) -> Optional[etree._Element]:
    """Follow a '/'-separated path of local element names; None when absent."""
    current = node
    for step in path.split("/"):
        if current is None:
            return None
        matches = _children(current, step)
        current = matches[0] if matches else None
    return current


def get_optional_text(node: Optional[etree._Element], path: str) -> Optional[str]:
    """Stripped text at path, or None when the path or its text is absent."""
    target = get_optional_node(node, path)
    if target is None or target.text is None:
        return None
    text = target.text.strip()
    return text or None


def get_all(node: Optional[etree._Element], path: str) -> List[etree._Element]:
    """
    All elements at path, always as a list.

    The last step may occur zero, one or many times; a single occurrence
    yields a one-element list.
    """
    if node is None:
        return []
    parent_path, _, leaf = path.rpartition("/")
    parent = get_optional_node(node, parent_path) if parent_path else node
    if parent is None:
        return []
    return _children(parent, leaf)


def to_number(value: Optional[str], fallback: float = 0.0) -> float:
    """Parse a decimal ('1234.50' or '1234,50'); fallback on anything else."""
    if value is None:
        return fallback
    try:
        number = float(value.replace(" ", "").replace(",", "."))
    except ValueError:
        return fallback
    if number != number or number in (float("inf"), float("-inf")):
        return fallback
    return number


def to_date(value: Optional[str]) -> Optional[date]:
    """Parse YYYY-MM-DD (a trailing time part is ignored)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def amounts_match(a: float, b: float, tolerance: float = AMOUNT_TOLERANCE) -> bool:
    return abs(a - b) <= tolerance + 1e-9


# =============================================================================
# MAPPER
# =============================================================================

class InvoiceXmlMapper:
    """
    FA(2) document -> (Invoice, [LineItem]).

    Usage:
        mapper = InvoiceXmlMapper()
        invoice, items = mapper.map(xml_bytes, reference="1234563218-20240115-ABCDEF-01")
        breakdown = derive_vat_breakdown(items)
    """

    def map(self, document: bytes, reference: Optional[str] = None) -> Tuple[Invoice, List[LineItem]]:
        """
        Map one invoice document.

        Raises:
            KsefError: UNKNOWN_REMOTE if the document is not XML or has no Faktura
        """
        faktura = self._find_faktura(self._parse(document))

        fa = get_optional_node(faktura, "Fa")
        seller = get_optional_node(faktura, "Podmiot1/DaneIdentyfikacyjne")
        buyer = get_optional_node(faktura, "Podmiot2/DaneIdentyfikacyjne")

        rows = get_all(fa, "FaWiersz") or get_all(fa, "FaWiersze/FaWiersz")
        items = [self.map_line_item(row) for row in rows]
        net_total, vat_total = self._totals(fa, items)

        invoice = Invoice(
            external_reference=reference,
            number=get_optional_text(fa, "P_2"),
            issue_date=to_date(get_optional_text(fa, "P_1")),
            delivery_date=to_date(get_optional_text(fa, "P_6")),
            seller_tax_id=get_optional_text(seller, "NIP"),
            buyer_tax_id=get_optional_text(buyer, "NIP"),
            seller_name=get_optional_text(seller, "PelnaNazwa") or get_optional_text(seller, "Nazwa"),
            buyer_name=get_optional_text(buyer, "PelnaNazwa") or get_optional_text(buyer, "Nazwa"),
            currency=get_optional_text(fa, "KodWaluty") or DEFAULT_CURRENCY,
            net_total=net_total,
            vat_total=vat_total,
            gross_total=round(net_total + vat_total, 2),
        )

        declared_gross = get_optional_text(fa, "P_15")
        if declared_gross is not None and not amounts_match(to_number(declared_gross), invoice.gross_total):
            logger.warning(f"Invoice {invoice.number}: declared gross {declared_gross} "
                           f"differs from computed {invoice.gross_total}")

        return invoice, items

    def map_line_item(self, row: etree._Element) -> LineItem:
        """Map one FaWiersz element."""
        net_amount = to_number(get_optional_text(row, "P_11"))
        vat_rate = get_optional_text(row, "P_12")

        supplied_vat = get_optional_text(row, "P_11Vat")
        if supplied_vat is not None:
            vat_amount = to_number(supplied_vat)
        else:
            # non-numeric rates ("zw", "np", "oo") carry no VAT
            vat_amount = round(net_amount * to_number(vat_rate) / 100, 2)

        return LineItem(
            description=get_optional_text(row, "P_7"),
            quantity=to_number(get_optional_text(row, "P_8B"), fallback=1.0),
            unit=get_optional_text(row, "P_8A"),
            unit_net_price=to_number(get_optional_text(row, "P_9A")),
            vat_rate=vat_rate,
            net_amount=net_amount,
            vat_amount=vat_amount,
            gross_amount=round(net_amount + vat_amount, 2),
        )

    @staticmethod
    def _parse(document: bytes) -> etree._Element:
        if isinstance(document, str):
            document = document.encode("utf-8")
        try:
            return etree.fromstring(document)
        except (etree.XMLSyntaxError, ValueError) as e:
            raise KsefError(ErrorKind.UNKNOWN_REMOTE, f"Invoice document is not well-formed XML: {e}") from e

    @staticmethod
    def _find_faktura(root: etree._Element) -> etree._Element:
        if _local_name(root) == "Faktura":
            return root
        found = root.xpath("//*[local-name()='Faktura']")
        if not found:
            raise KsefError(ErrorKind.UNKNOWN_REMOTE, "Invoice document has no Faktura element")
        return found[0]

    @staticmethod
    def _totals(fa: Optional[etree._Element], items: List[LineItem]) -> Tuple[float, float]:
        """
        Net and VAT totals.

        With line items the totals are their sums; the declared P_13_x / P_14_x
        values are only compared. Without line items the declared values are used.
        """
        declared_net = declared_vat = 0.0
        has_declared = False
        if fa is not None:
            for child in fa:
                if not isinstance(child.tag, str):
                    continue
                name = _local_name(child)
                if _DECLARED_NET.match(name):
                    has_declared = True
                    declared_net += to_number((child.text or "").strip() or None)
                elif _DECLARED_VAT.match(name):
                    has_declared = True
                    declared_vat += to_number((child.text or "").strip() or None)

        if not items:
            return round(declared_net, 2), round(declared_vat, 2)

        net_total = round(sum(item.net_amount for item in items), 2)
        vat_total = round(sum(item.vat_amount for item in items), 2)
        if has_declared and not (amounts_match(declared_net, net_total) and amounts_match(declared_vat, vat_total)):
            logger.warning(f"Declared totals net={declared_net} vat={declared_vat} differ from "
                           f"line item sums net={net_total} vat={vat_total}")
        return net_total, vat_total


def derive_vat_breakdown(items: List[LineItem]) -> List[VatBreakdownRow]:
    """
    One row per distinct literal VAT rate, in order of first appearance.

    Rates are grouped by their literal string so exempt markers such as
    "zw" stay separate from a numeric zero rate.
    """
    rows: Dict[Optional[str], VatBreakdownRow] = {}
    for item in items:
        row = rows.get(item.vat_rate)
        if row is None:
            row = rows[item.vat_rate] = VatBreakdownRow(item.vat_rate, 0.0, 0.0, 0.0)
        row.net_amount = round(row.net_amount + item.net_amount, 2)
        row.vat_amount = round(row.vat_amount + item.vat_amount, 2)
        row.gross_amount = round(row.gross_amount + item.gross_amount, 2)
    return list(rows.values())
