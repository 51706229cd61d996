"""
Versioned XML export of invoices (``invoices.xml``).

The format is internal to this application and meant for backups and
migration; bump EXPORT_VERSION whenever element names or meanings change.
"""
from __future__ import annotations

from lxml import etree

from totals import compute_totals, fmt_decimal, fmt_quantity

EXPORT_VERSION = "1"


def _text(parent, tag, value):
    elem = etree.SubElement(parent, tag)
    if value is not None and value != "":
        elem.text = str(value)
    return elem


def _date(value):
    return value.isoformat() if value else None


def _invoice_element(root, invoice):
    totals = compute_totals(invoice.positions)
    inv = etree.SubElement(root, "invoice", id=str(invoice.id), status=invoice.status)
    _text(inv, "number", invoice.number)
    _text(inv, "counter", invoice.counter)
    _text(inv, "date", _date(invoice.date))
    _text(inv, "due-date", _date(invoice.due_date))
    _text(inv, "occurrence-date", _date(invoice.occurrence_date))
    _text(inv, "currency", invoice.currency)

    company = invoice.company
    customer = etree.SubElement(inv, "customer")
    _text(customer, "customer-number", company.customer_number if company else None)
    _text(customer, "name", company.name if company else None)

    _text(inv, "tax-type", invoice.tax_type)
    _text(inv, "tax-number", invoice.tax_number)
    _text(inv, "exemption-reason", invoice.exemption_reason)
    _text(inv, "order-number", invoice.order_number)
    _text(inv, "supplier-number", invoice.supplier_number)
    _text(inv, "buyer-reference", invoice.buyer_reference)
    _text(inv, "contact-invoice", invoice.contact_invoice)
    _text(inv, "opening", invoice.opening)
    _text(inv, "footer", invoice.footer)
    _text(inv, "issued-at", _date(invoice.issued_at))
    _text(inv, "paid-at", _date(invoice.paid_at))
    _text(inv, "voided-at", _date(invoice.voided_at))

    positions = etree.SubElement(inv, "positions")
    for pos in invoice.positions:
        p = etree.SubElement(positions, "position", n=str(pos.position))
        _text(p, "unit-code", pos.unit_code)
        _text(p, "text", pos.text)
        _text(p, "quantity", fmt_quantity(pos.quantity))
        _text(p, "tax-rate", fmt_decimal(pos.tax_rate))
        _text(p, "net-price", fmt_decimal(pos.net_price, 4))
        _text(p, "gross-price", fmt_decimal(pos.gross_price, 4))
        _text(p, "line-total", fmt_decimal(pos.line_total))

    taxes = etree.SubElement(inv, "tax-amounts")
    for tax in totals.tax_amounts:
        etree.SubElement(
            taxes, "tax-amount",
            rate=fmt_decimal(tax.rate), basis=fmt_decimal(tax.basis), amount=fmt_decimal(tax.amount),
        )

    _text(inv, "net-total", fmt_decimal(totals.net_total))
    _text(inv, "gross-total", fmt_decimal(totals.gross_total))
    _text(inv, "payable-total", fmt_decimal(totals.payable_total))


def build_invoices_export(invoices) -> bytes:
    """Serialize *invoices* into the versioned bundle format."""
    root = etree.Element("invoices", version=EXPORT_VERSION)
    for invoice in invoices:
        _invoice_element(root, invoice)
    return etree.tostring(root, pretty_print=True, xml_declaration=True, encoding="UTF-8")
