"""
ZUGFeRD 2.x / Factur-X implementation.

Generates UN/CEFACT Cross Industry Invoice (CII) XML conforming to the
Factur-X / ZUGFeRD profiles. EN 16931 (COMFORT) is the default: it carries
line items, per-rate VAT breakdown, contacts and the creditor's BIC.

The output is deterministic: the same data always produces the same
bytes (no generation timestamps, fixed element order, fixed number
formatting).

References:
- ZUGFeRD Spec: https://www.ferd-net.de/standards/zugferd
- Factur-X: https://fnfe-mpe.org/factur-x/
- CII D16B/D22B schema: UN/CEFACT CrossIndustryInvoice
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from lxml import etree

from generators.einvoice.base import EInvoiceData, EInvoiceLineItem, EInvoiceStandard

# ── XML Namespaces (CII D16B, compatible with D22B) ─────────────
NS = {
    "rsm": "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100",
    "ram": "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100",
    "qdt": "urn:un:unece:uncefact:data:standard:QualifiedDataType:100",
    "udt": "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100",
    "xsi": "http://www.w3.org/2001/XMLSchema-instance",
}

# Guideline ID per profile
PROFILE_IDS = {
    "minimum": "urn:factur-x.eu:1p0:minimum",
    "basicwl": "urn:factur-x.eu:1p0:basicwl",
    "basic": "urn:cen.eu:en16931:2017#compliant#urn:factur-x.eu:1p0:basic",
    "en16931": "urn:cen.eu:en16931:2017",
    "extended": "urn:cen.eu:en16931:2017#conformant#urn:factur-x.eu:1p0:extended",
}

# Profiles that carry line items
LINE_PROFILES = ("basic", "en16931", "extended")
# Profiles that allow contacts and the creditor institution (BIC)
COMFORT_PROFILES = ("en16931", "extended")

# Categories without a VAT rate (BR-O-05)
NO_RATE_CATEGORIES = ("O",)

_CENT = Decimal("0.01")


def _el(parent: etree._Element, tag: str, text: str | None = None, **attribs) -> etree._Element:
    """Create a sub-element with optional text and attributes."""
    ns_prefix, local = tag.split(":", 1) if ":" in tag else ("ram", tag)
    ns_uri = NS[ns_prefix]
    elem = etree.SubElement(parent, f"{{{ns_uri}}}{local}")
    if text is not None:
        elem.text = str(text)
    for k, v in attribs.items():
        elem.set(k, str(v))
    return elem


def _fmt_date(d: date) -> str:
    """Format date as YYYYMMDD (format 102)."""
    return d.strftime("%Y%m%d")


def _round(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def _fmt_amount(value: Decimal) -> str:
    """Format monetary amount: 2 decimals, no thousands separator."""
    return f"{_round(value):f}"


def _fmt_price(value: Decimal) -> str:
    """Unit price: at least 2, at most 4 decimals."""
    text = f"{Decimal(value).quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP):f}"
    whole, _, frac = text.partition(".")
    frac = frac.rstrip("0").ljust(2, "0")
    return f"{whole}.{frac}"


def _fmt_quantity(value: Decimal) -> str:
    """Format quantity with up to 4 decimals."""
    text = f"{Decimal(value).quantize(Decimal('0.0001'), rounding=ROUND_HALF_UP):f}"
    return text.rstrip("0").rstrip(".")


class ZUGFeRDStandard(EInvoiceStandard):
    """ZUGFeRD 2.x / Factur-X."""

    def __init__(self, profile: str = "en16931"):
        if profile not in PROFILE_IDS:
            raise ValueError(f"Unknown ZUGFeRD profile '{profile}'. Options: {list(PROFILE_IDS)}")
        self._profile = profile

    @property
    def standard_name(self) -> str:
        return "ZUGFeRD 2.x / Factur-X"

    @property
    def xml_filename(self) -> str:
        return "factur-x.xml"

    @property
    def profile_name(self) -> str:
        return self._profile.upper()

    @property
    def level(self) -> str:
        return self._profile

    # ── Public API ──────────────────────────────────────────────
    def generate_xml(self, data: EInvoiceData) -> bytes:
        root = self._build_root(data)
        return etree.tostring(
            root, pretty_print=True, xml_declaration=True, encoding="UTF-8"
        )

    def validate_data(self, data: EInvoiceData) -> list[str]:
        warnings = super().validate_data(data)
        taxed = any(t.category == "S" for t in data.tax_breakdown)
        if taxed and not data.seller_tax_number and not data.seller_vat_id:
            warnings.append("Steuernummer oder USt-IdNr. des Rechnungsstellers fehlt.")
        if not data.line_items and self._profile in LINE_PROFILES:
            warnings.append(f"Profil {self.profile_name} benötigt mindestens eine Position.")
        if data.total_gross > 0 and not data.due_date and not data.payment_terms_days:
            warnings.append("Fälligkeitsdatum oder Zahlungsbedingungen fehlen.")
        return warnings

    # ── XML tree builders ───────────────────────────────────────
    def _build_root(self, d: EInvoiceData) -> etree._Element:
        nsmap = {k: v for k, v in NS.items()}
        root = etree.Element(f"{{{NS['rsm']}}}CrossIndustryInvoice", nsmap=nsmap)

        self._add_context(root, d)
        self._add_document(root, d)
        self._add_transaction(root, d)

        return root

    def _add_context(self, root: etree._Element, d: EInvoiceData) -> None:
        ctx = _el(root, "rsm:ExchangedDocumentContext")
        param = _el(ctx, "ram:GuidelineSpecifiedDocumentContextParameter")
        _el(param, "ram:ID", PROFILE_IDS[self._profile])

    def _add_document(self, root: etree._Element, d: EInvoiceData) -> None:
        doc = _el(root, "rsm:ExchangedDocument")
        _el(doc, "ram:ID", d.invoice_number)
        _el(doc, "ram:TypeCode", d.type_code)

        dt = _el(doc, "ram:IssueDateTime")
        _el(dt, "udt:DateTimeString", _fmt_date(d.invoice_date or date.today()), format="102")

        for text in d.notes:
            note = _el(doc, "ram:IncludedNote")
            _el(note, "ram:Content", text)

    def _add_transaction(self, root: etree._Element, d: EInvoiceData) -> None:
        txn = _el(root, "rsm:SupplyChainTradeTransaction")

        if self._profile in LINE_PROFILES:
            for item in d.line_items:
                self._add_line_item(txn, item)

        self._add_agreement(txn, d)
        self._add_delivery(txn, d)
        self._add_settlement(txn, d)

    def _add_line_item(self, txn: etree._Element, item: EInvoiceLineItem) -> None:
        li = _el(txn, "ram:IncludedSupplyChainTradeLineItem")

        line_doc = _el(li, "ram:AssociatedDocumentLineDocument")
        _el(line_doc, "ram:LineID", str(item.position_number))

        product = _el(li, "ram:SpecifiedTradeProduct")
        _el(product, "ram:Name", item.name)

        agreement = _el(li, "ram:SpecifiedLineTradeAgreement")
        net_price = _el(agreement, "ram:NetPriceProductTradePrice")
        _el(net_price, "ram:ChargeAmount", _fmt_price(item.unit_price_net))

        delivery = _el(li, "ram:SpecifiedLineTradeDelivery")
        _el(delivery, "ram:BilledQuantity", _fmt_quantity(item.quantity), unitCode=item.unit_code)

        settlement = _el(li, "ram:SpecifiedLineTradeSettlement")
        tax = _el(settlement, "ram:ApplicableTradeTax")
        _el(tax, "ram:TypeCode", "VAT")
        _el(tax, "ram:CategoryCode", item.tax_category)
        if item.tax_category not in NO_RATE_CATEGORIES:
            _el(tax, "ram:RateApplicablePercent", _fmt_amount(item.tax_rate))

        monetary = _el(settlement, "ram:SpecifiedTradeSettlementLineMonetarySummation")
        _el(monetary, "ram:LineTotalAmount", _fmt_amount(item.line_total_net))

    def _add_party(self, agreement: etree._Element, tag: str, *, party_id, name, contact,
                   address_lines, postcode, city, country, email, tax_number=None, vat_id=None):
        party = _el(agreement, tag)
        if party_id:
            _el(party, "ram:ID", party_id)
        _el(party, "ram:Name", name)

        if contact and self._profile in COMFORT_PROFILES:
            trade_contact = _el(party, "ram:DefinedTradeContact")
            _el(trade_contact, "ram:PersonName", contact)

        addr = _el(party, "ram:PostalTradeAddress")
        if postcode:
            _el(addr, "ram:PostcodeCode", postcode)
        # Use first address line as line1, second as line2
        for i, line in enumerate(address_lines[:2]):
            _el(addr, "ram:LineOne" if i == 0 else "ram:LineTwo", line)
        if city:
            _el(addr, "ram:CityName", city)
        _el(addr, "ram:CountryID", country or "DE")

        if email:
            uri = _el(party, "ram:URIUniversalCommunication")
            _el(uri, "ram:URIID", email, schemeID="EM")

        if tax_number:
            tax_reg = _el(party, "ram:SpecifiedTaxRegistration")
            _el(tax_reg, "ram:ID", tax_number, schemeID="FC")  # FC = Steuernummer
        if vat_id:
            tax_reg = _el(party, "ram:SpecifiedTaxRegistration")
            _el(tax_reg, "ram:ID", vat_id, schemeID="VA")  # VA = USt-IdNr
        return party

    def _add_agreement(self, txn: etree._Element, d: EInvoiceData) -> None:
        agreement = _el(txn, "ram:ApplicableHeaderTradeAgreement")
        if d.buyer_reference:
            _el(agreement, "ram:BuyerReference", d.buyer_reference)

        self._add_party(
            agreement, "ram:SellerTradeParty",
            party_id=d.seller_id, name=d.seller_name, contact=d.seller_contact,
            address_lines=d.seller_address_lines, postcode=d.seller_postcode,
            city=d.seller_city, country=d.seller_country, email=d.seller_email,
            tax_number=d.seller_tax_number, vat_id=d.seller_vat_id,
        )
        self._add_party(
            agreement, "ram:BuyerTradeParty",
            party_id=d.buyer_id, name=d.buyer_name, contact=d.buyer_contact,
            address_lines=d.buyer_address_lines, postcode=d.buyer_postcode,
            city=d.buyer_city, country=d.buyer_country, email=d.buyer_email,
            vat_id=d.buyer_vat_id,
        )

        if d.order_number:
            order = _el(agreement, "ram:BuyerOrderReferencedDocument")
            _el(order, "ram:IssuerAssignedID", d.order_number)

    def _add_delivery(self, txn: etree._Element, d: EInvoiceData) -> None:
        delivery = _el(txn, "ram:ApplicableHeaderTradeDelivery")

        if d.delivery_date:
            event = _el(delivery, "ram:ActualDeliverySupplyChainEvent")
            dt = _el(event, "ram:OccurrenceDateTime")
            _el(dt, "udt:DateTimeString", _fmt_date(d.delivery_date), format="102")

    def _add_settlement(self, txn: etree._Element, d: EInvoiceData) -> None:
        settlement = _el(txn, "ram:ApplicableHeaderTradeSettlement")

        if d.payment_reference:
            _el(settlement, "ram:PaymentReference", d.payment_reference)

        _el(settlement, "ram:InvoiceCurrencyCode", d.currency_code)

        # Payment means (bank transfer)
        if d.bank_iban:
            pmeans = _el(settlement, "ram:SpecifiedTradeSettlementPaymentMeans")
            _el(pmeans, "ram:TypeCode", "58")  # 58 = SEPA credit transfer
            account = _el(pmeans, "ram:PayeePartyCreditorFinancialAccount")
            _el(account, "ram:IBANID", d.bank_iban.replace(" ", ""))
            # BIC is only allowed in EN16931 and EXTENDED, not in BASIC
            if d.bank_bic and self._profile in COMFORT_PROFILES:
                institution = _el(pmeans, "ram:PayeeSpecifiedCreditorFinancialInstitution")
                _el(institution, "ram:BICID", d.bank_bic.replace(" ", ""))

        # Tax breakdown, one block per rate
        for entry in d.tax_breakdown:
            tax = _el(settlement, "ram:ApplicableTradeTax")
            _el(tax, "ram:CalculatedAmount", _fmt_amount(entry.amount))
            _el(tax, "ram:TypeCode", "VAT")
            if entry.category != "S" and entry.exemption_reason:
                _el(tax, "ram:ExemptionReason", entry.exemption_reason)
            _el(tax, "ram:BasisAmount", _fmt_amount(entry.basis))
            _el(tax, "ram:CategoryCode", entry.category)
            if entry.category not in NO_RATE_CATEGORIES:
                _el(tax, "ram:RateApplicablePercent", _fmt_amount(entry.rate))

        # Payment terms
        if d.payment_terms_days or d.due_date:
            terms = _el(settlement, "ram:SpecifiedTradePaymentTerms")
            if d.payment_terms_days:
                _el(terms, "ram:Description",
                    f"Zahlbar innerhalb von {d.payment_terms_days} Tagen ohne Abzug.")
            if d.due_date:
                due_dt = _el(terms, "ram:DueDateDateTime")
                _el(due_dt, "udt:DateTimeString", _fmt_date(d.due_date), format="102")

        # Monetary summation
        summary = _el(settlement, "ram:SpecifiedTradeSettlementHeaderMonetarySummation")
        _el(summary, "ram:LineTotalAmount", _fmt_amount(d.line_total_net))
        _el(summary, "ram:TaxBasisTotalAmount", _fmt_amount(d.line_total_net))
        _el(summary, "ram:TaxTotalAmount", _fmt_amount(d.tax_total), currencyID=d.currency_code)
        _el(summary, "ram:GrandTotalAmount", _fmt_amount(d.total_gross))
        if d.prepaid_amount:
            _el(summary, "ram:TotalPrepaidAmount", _fmt_amount(d.prepaid_amount))
        _el(summary, "ram:DuePayableAmount", _fmt_amount(d.total_gross - d.prepaid_amount))
