"""
ZUGFeRD artifacts of an invoice: the CII XML and the PDF/A-3 with the XML embedded.

Files live in ``ARTIFACT_DIR/owner<owner_id>/<invoice_id>.xml|.pdf``. Once an
invoice has left draft, existing files are served as they are; drafts are
rendered again on every request. Writes go to a temporary file first and are
moved into place, so a failed render never replaces a good artifact.
"""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from datetime import date

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db, Invoice
from errors import PersistenceError, RenderingError
from helpers import fmt_de_date, get_owner_dir, get_settings, letterhead_file_path
from totals import ZERO, compute_totals, round_money
from generators.einvoice import EInvoiceData, EInvoiceLineItem, EInvoiceTaxBreakdown, get_standard
from generators.einvoice.embed import embed_xml_in_pdf
from generators.pdf_base import LetterheadLayout, LetterheadRegion
from generators.rechnung import build_rechnung_pdf

logger = logging.getLogger(__name__)


def _path(owner_id, invoice_id, extension):
    return os.path.join(get_owner_dir('ARTIFACT_DIR', owner_id), f'{invoice_id}.{extension}')


def artifact_path(invoice, extension):
    return _path(invoice.owner_id, invoice.id, extension)


def discard_artifacts(owner_id, invoice_id):
    """Drop the stored XML and PDF; the next download renders them again."""
    for extension in ('xml', 'pdf'):
        path = _path(owner_id, invoice_id, extension)
        if os.path.exists(path):
            os.unlink(path)


def _atomic_write(path, data):
    directory = os.path.dirname(path)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', suffix=os.path.splitext(path)[1])
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        logger.error('Writing artifact %s failed: %s', path, exc)
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise PersistenceError(str(exc)) from exc


def _read(path):
    try:
        with open(path, 'rb') as fh:
            return fh.read()
    except OSError as exc:
        logger.error('Reading artifact %s failed: %s', path, exc)
        raise PersistenceError(str(exc)) from exc


def configured_standard():
    return get_standard(profile=current_app.config.get('EINVOICE_PROFILE', 'en16931'))


# ── Data mapping ────────────────────────────────────────────────

def build_einvoice_data(invoice, settings) -> EInvoiceData:
    """Map invoice, company and seller settings to the standard-agnostic structure."""
    totals = invoice.recompute_totals()
    company = invoice.company
    category = invoice.tax_type or 'S'
    exemption = invoice.exemption_reason or None

    breakdown = [
        EInvoiceTaxBreakdown(rate=t.rate, basis=t.basis, amount=t.amount,
                             category=category, exemption_reason=exemption)
        for t in totals.tax_amounts
    ]
    if not breakdown:
        breakdown = [EInvoiceTaxBreakdown(rate=ZERO, basis=ZERO, amount=ZERO,
                                          category=category, exemption_reason=exemption)]

    terms_days = settings.payment_terms_days
    if invoice.date and invoice.due_date and invoice.due_date >= invoice.date:
        terms_days = (invoice.due_date - invoice.date).days

    return EInvoiceData(
        invoice_number=invoice.number,
        invoice_date=invoice.date or date.today(),
        currency_code=invoice.currency or 'EUR',
        buyer_reference=invoice.buyer_reference or None,
        order_number=invoice.order_number or None,

        seller_id=invoice.supplier_number or None,
        seller_name=settings.company_name or '',
        seller_contact=settings.invoice_contact or None,
        seller_address_lines=settings.address_lines,
        seller_postcode=settings.zip or '',
        seller_city=settings.city or '',
        seller_country=settings.country_code or 'DE',
        seller_tax_number=invoice.tax_number or settings.tax_number or None,
        seller_vat_id=settings.vat_id or None,
        seller_email=settings.invoice_email or None,

        buyer_id=company.customer_number or None,
        buyer_name=company.name,
        buyer_contact=invoice.contact_invoice or company.contact_invoice or None,
        buyer_address_lines=company.address_lines,
        buyer_postcode=company.zip or '',
        buyer_city=company.city or '',
        buyer_country=company.country or 'DE',
        buyer_vat_id=company.vat_id or None,
        buyer_email=company.invoice_email or None,

        delivery_date=invoice.occurrence_date,
        tax_breakdown=breakdown,
        line_total_net=totals.net_total,
        tax_total=totals.rounded_tax_total,
        total_gross=totals.payable_total,

        due_date=invoice.due_date,
        payment_terms_days=terms_days,
        payment_reference=invoice.number,
        bank_iban=settings.bank_iban or None,
        bank_bic=settings.bank_bic or None,
        bank_name=settings.bank_name or None,

        notes=[text for text in (invoice.opening, invoice.footer) if text],
        line_items=[
            EInvoiceLineItem(
                position_number=pos.position,
                name=pos.text or '',
                quantity=pos.quantity,
                unit_code=pos.unit_code or 'C62',
                unit_price_net=pos.net_price,
                line_total_net=pos.line_total,
                tax_rate=pos.tax_rate,
                tax_category=category,
            )
            for pos in invoice.positions
        ],
    )


def letterhead_layout(template) -> LetterheadLayout:
    regions = {
        region.kind: LetterheadRegion(
            kind=region.kind,
            x_cm=region.x_cm, y_cm=region.y_cm,
            width_cm=region.width_cm, height_cm=region.height_cm,
            h_align=region.h_align or 'left',
            font_size_pt=region.font_size_pt or 10,
            line_spacing=region.line_spacing or 1,
            has_page2=bool(region.has_page2),
            x2_cm=region.x2_cm, y2_cm=region.y2_cm,
            width2_cm=region.width2_cm, height2_cm=region.height2_cm,
        )
        for region in template.regions
    }
    return LetterheadLayout(
        page_width_cm=template.page_width_cm,
        page_height_cm=template.page_height_cm,
        regions=regions,
        backdrop_path=letterhead_file_path(template.owner_id, template.pdf_filename),
        font_normal_path=letterhead_file_path(template.owner_id, template.font_normal),
        font_bold_path=letterhead_file_path(template.owner_id, template.font_bold),
        font_key=f'letterhead-{template.id}',
    )


# ── Rendering ───────────────────────────────────────────────────

def render_xml(invoice, settings=None) -> bytes:
    settings = settings or get_settings(invoice.owner_id)
    data = build_einvoice_data(invoice, settings)
    try:
        return configured_standard().generate_xml(data)
    except ValueError as exc:
        # lxml refuses control characters and similar in text nodes
        logger.error('XML generation for invoice %s failed: %s', invoice.id, exc)
        raise RenderingError(str(exc)) from exc


def _pdf_kwargs(invoice, settings):
    totals = compute_totals(invoice.positions)
    company = invoice.company
    currency = invoice.currency or 'EUR'

    issuer_address = list(settings.address_lines)
    city_line = ' '.join(part for part in (settings.zip, settings.city) if part)
    if city_line:
        issuer_address.append(city_line)

    recipient_lines = company.address_block(invoice.contact_invoice or company.contact_invoice)

    meta_lines = [('Rechnungs-Nr.:', invoice.number),
                  ('Rechnungsdatum:', fmt_de_date(invoice.date) or '—')]
    if invoice.occurrence_date:
        meta_lines.append(('Leistungsdatum:', fmt_de_date(invoice.occurrence_date)))
    meta_lines.append(('Kunden-Nr.:', company.customer_number))
    if invoice.order_number:
        meta_lines.append(('Bestell-Nr.:', invoice.order_number))
    if invoice.buyer_reference:
        meta_lines.append(('Ihre Referenz:', invoice.buyer_reference))
    if invoice.due_date:
        meta_lines.append(('Fällig am:', fmt_de_date(invoice.due_date)))
    if invoice.is_draft:
        meta_lines.append(('Status:', 'Entwurf'))

    bank_lines = []
    if settings.bank_name:
        bank_lines.append(settings.bank_name)
    if settings.bank_iban:
        bank_lines.append(f'IBAN: {settings.bank_iban}')
    if settings.bank_bic:
        bank_lines.append(f'BIC: {settings.bank_bic}')

    return dict(
        issuer_name=settings.company_name or '',
        issuer_address=issuer_address,
        contact_lines=[line for line in (settings.invoice_contact, settings.invoice_email) if line],
        bank_lines=bank_lines,
        tax_number=invoice.tax_number or settings.tax_number or None,
        vat_id=settings.vat_id or None,
        recipient_lines=recipient_lines,
        reference_number=invoice.number,
        meta_lines=meta_lines,
        positions=[
            {
                'position': pos.position,
                'text': pos.text,
                'quantity': pos.quantity,
                'unit_label': '' if (pos.unit_code or 'C62') == 'C62' else pos.unit_code,
                'tax_rate': pos.tax_rate,
                'net_price': pos.net_price,
                'line_total': pos.line_total,
            }
            for pos in invoice.positions
        ],
        tax_amounts=[
            {'rate': t.rate, 'basis': round_money(t.basis), 'amount': round_money(t.amount)}
            for t in totals.tax_amounts
        ],
        net_total=round_money(totals.net_total),
        gross_total=totals.payable_total,
        currency=currency,
        opening=invoice.opening,
        footer=invoice.footer,
        exemption_reason=invoice.exemption_reason if (invoice.tax_type or 'S') != 'S' else None,
        payment_terms_days=settings.payment_terms_days or 14,
        due_date_str=fmt_de_date(invoice.due_date),
        letterhead=letterhead_layout(invoice.template) if invoice.template else None,
    )


def render_pdf(invoice, xml_bytes, settings=None) -> bytes:
    """Render the invoice PDF and embed *xml_bytes* as Factur-X attachment."""
    settings = settings or get_settings(invoice.owner_id)
    standard = configured_standard()
    try:
        pdf_bytes = build_rechnung_pdf(**_pdf_kwargs(invoice, settings))
    except RenderingError:
        raise
    except Exception as exc:
        logger.exception('PDF rendering for invoice %s failed', invoice.id)
        raise RenderingError(str(exc)) from exc

    issuer = settings.company_name or ''
    return embed_xml_in_pdf(
        pdf_bytes, xml_bytes,
        flavor='factur-x',
        level=standard.level,
        lang='de',
        check_xsd=current_app.config.get('EINVOICE_CHECK_XSD', True),
        pdf_metadata={
            'author': issuer,
            'title': f'{issuer}: Rechnung {invoice.number}',
            'subject': f'Rechnung {invoice.number}',
            'keywords': 'Factur-X, Rechnung, ZUGFeRD',
        },
    )


# ── Cached access ───────────────────────────────────────────────

def get_invoice_xml(invoice, force=False) -> bytes:
    path = artifact_path(invoice, 'xml')
    if not force and not invoice.is_draft and os.path.exists(path):
        logger.info('Reusing stored XML for invoice %s', invoice.id)
        return _read(path)
    xml_bytes = render_xml(invoice)
    _atomic_write(path, xml_bytes)
    return xml_bytes


def get_invoice_pdf(invoice, force=False) -> bytes:
    path = artifact_path(invoice, 'pdf')
    if not force and not invoice.is_draft and os.path.exists(path):
        logger.info('Reusing stored PDF for invoice %s', invoice.id)
        return _read(path)
    # The embedded XML is always the stored standalone XML
    xml_bytes = get_invoice_xml(invoice, force=force)
    pdf_bytes = render_pdf(invoice, xml_bytes)
    _atomic_write(path, pdf_bytes)
    return pdf_bytes


def regenerate_artifacts(owner_id, invoice_id):
    """Render XML and PDF of an invoice again and replace the stored files."""
    invoice = Invoice.query.filter_by(id=invoice_id, owner_id=owner_id).first()
    if invoice is None:
        logger.warning('Invoice %s of owner %s vanished before regeneration', invoice_id, owner_id)
        return
    get_invoice_pdf(invoice, force=True)
    try:
        # recompute_totals touched the session; nothing should have changed
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(str(exc)) from exc
    logger.info('Regenerated artifacts for invoice %s', invoice_id)


def _regenerate_logged(app, owner_id, invoice_id):
    with app.app_context():
        try:
            regenerate_artifacts(owner_id, invoice_id)
        except Exception:
            # runs after the status change is committed; nobody is left to tell
            logger.exception('Background regeneration of invoice %s failed', invoice_id)
        finally:
            db.session.remove()


def schedule_regeneration(owner_id, invoice_id):
    """Regenerate artifacts after a status change without delaying the response."""
    app = current_app._get_current_object()
    if app.config.get('ARTIFACT_REGENERATION', 'background') == 'sync':
        _regenerate_logged(app, owner_id, invoice_id)
        return
    thread = threading.Thread(target=_regenerate_logged, args=(app, owner_id, invoice_id),
                              name=f'regenerate-invoice-{invoice_id}', daemon=True)
    thread.start()
