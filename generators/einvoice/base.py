"""
Abstract base classes and data structures for e-invoice generation.

To add a new e-invoice standard:
1. Subclass ``EInvoiceStandard``
2. Implement ``generate_xml()`` and ``xml_filename`` / ``profile_name``
3. Register it in ``generators/einvoice/__init__.py`` STANDARDS dict

All amounts are ``Decimal``; rounding to cents happens in the XML writer.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

ZERO = Decimal("0")


@dataclass
class EInvoiceLineItem:
    """A single invoice line item (position)."""
    position_number: int
    name: str
    quantity: Decimal = Decimal("1")
    unit_code: str = "C62"  # UN/ECE Rec 20: "one" (piece/unit)
    unit_price_net: Decimal = ZERO
    line_total_net: Decimal = ZERO
    tax_rate: Decimal = ZERO  # VAT % (e.g. 19)
    tax_category: str = "S"  # UNTDID 5305: S, Z, E, AE, K, G, O, L, M


@dataclass
class EInvoiceTaxBreakdown:
    """VAT breakdown for one rate (BG-23)."""
    rate: Decimal
    basis: Decimal
    amount: Decimal
    category: str = "S"
    exemption_reason: str | None = None


@dataclass
class EInvoiceData:
    """All data needed to generate an e-invoice XML.

    This is a standard-agnostic structure; each standard implementation
    maps it to the appropriate XML schema.
    """
    # Document metadata
    invoice_number: str = ""
    invoice_date: date | None = None
    type_code: str = "380"  # 380 = commercial invoice, 381 = credit note
    currency_code: str = "EUR"

    # References
    buyer_reference: str | None = None  # Leitweg-ID or similar
    order_number: str | None = None

    # Seller (issuer)
    seller_id: str | None = None  # our supplier number at the buyer
    seller_name: str = ""
    seller_contact: str | None = None
    seller_address_lines: list[str] = field(default_factory=list)
    seller_postcode: str = ""
    seller_city: str = ""
    seller_country: str = "DE"
    seller_tax_number: str | None = None
    seller_vat_id: str | None = None  # USt-IdNr (e.g. DE123456789)
    seller_email: str | None = None

    # Buyer (recipient)
    buyer_id: str | None = None  # customer number
    buyer_name: str = ""
    buyer_contact: str | None = None
    buyer_address_lines: list[str] = field(default_factory=list)
    buyer_postcode: str = ""
    buyer_city: str = ""
    buyer_country: str = "DE"
    buyer_vat_id: str | None = None
    buyer_email: str | None = None

    # Delivery / service date
    delivery_date: date | None = None

    # Tax breakdown, one entry per rate (sorted ascending)
    tax_breakdown: list[EInvoiceTaxBreakdown] = field(default_factory=list)

    # Totals
    line_total_net: Decimal = ZERO  # sum of line net amounts
    tax_total: Decimal = ZERO
    total_gross: Decimal = ZERO  # final payable amount
    prepaid_amount: Decimal = ZERO

    # Payment
    due_date: date | None = None
    payment_terms_days: int | None = None
    payment_reference: str = ""  # = invoice number typically
    bank_iban: str | None = None
    bank_bic: str | None = None
    bank_name: str | None = None

    # Free text (opening, footer, ...)
    notes: list[str] = field(default_factory=list)

    # Line items
    line_items: list[EInvoiceLineItem] = field(default_factory=list)


class EInvoiceStandard(ABC):
    """Abstract base for an e-invoice standard (ZUGFeRD, XRechnung, …)."""

    @property
    @abstractmethod
    def standard_name(self) -> str:
        """Human-readable name, e.g. 'ZUGFeRD 2.x / Factur-X'."""

    @property
    @abstractmethod
    def xml_filename(self) -> str:
        """Filename of the embedded XML (e.g. 'factur-x.xml')."""

    @property
    @abstractmethod
    def profile_name(self) -> str:
        """Profile/level name (e.g. 'BASIC', 'EN 16931')."""

    @property
    @abstractmethod
    def level(self) -> str:
        """factur-x level identifier used for embedding (e.g. 'en16931')."""

    @abstractmethod
    def generate_xml(self, data: EInvoiceData) -> bytes:
        """Generate the standards-compliant XML from invoice data.

        Returns:
            UTF-8 encoded XML bytes.
        """

    def validate_data(self, data: EInvoiceData) -> list[str]:
        """Optional: validate data before XML generation.

        Returns:
            List of warning/error messages (empty = OK).
        """
        warnings = []
        if not data.invoice_number:
            warnings.append("Rechnungsnummer fehlt.")
        if not data.seller_name:
            warnings.append("Name des Rechnungsstellers fehlt.")
        if not data.buyer_name:
            warnings.append("Name des Rechnungsempfängers fehlt.")
        return warnings
