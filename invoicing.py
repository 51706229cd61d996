"""
Invoice drafts: create, edit, duplicate, delete, list and check.

Numbers are allocated when the draft is created. Positions are always
replaced as a whole, and totals are recomputed on every save.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from models import db, Company, Invoice, InvoicePosition, LetterheadTemplate, Settings, INVOICE_STATUSES, TAX_TYPES
from errors import CRMError, DuplicateNumber, NotFound, PersistenceError, ValidationError
from helpers import fmt_de_date, get_owned_or_404, get_settings, parse_date
from totals import ZERO, fmt_decimal, fmt_quantity, gross_price, reconcile_line_total, round_money, to_decimal
from numbering import (DEFAULT_INVOICE_TEMPLATE, format_invoice_number, next_invoice_counter,
                       peek_next_invoice_counter)
from concurrency import run_with_retry
from lifecycle import claim_draft, ensure_deletable, ensure_editable, load_locked
import artifacts

logger = logging.getLogger(__name__)

LIST_SORTS = {
    'date_desc': (Invoice.date.desc(), Invoice.id.desc()),
    'date_asc': (Invoice.date.asc(), Invoice.id.asc()),
    'created_desc': (Invoice.created_at.desc(), Invoice.id.desc()),
}
DEFAULT_LIMIT = 50
MAX_LIMIT = 200

# Header fields copied verbatim from the request when present
_TEXT_FIELDS = ('currency', 'tax_number', 'exemption_reason', 'opening', 'footer',
                'order_number', 'supplier_number', 'buyer_reference', 'contact_invoice')


# ── Positions ───────────────────────────────────────────────────

def _is_empty_quantity(raw):
    text = '' if raw is None else str(raw).strip()
    if not text:
        return True
    try:
        return to_decimal(text, 'quantity') == ZERO
    except ValidationError:
        return False


def parse_positions(raw_positions):
    """Validate raw position dicts and return InvoicePosition objects.

    Rows with an empty or zero quantity are dropped; the rest are numbered
    from 1 in the given order.
    """
    positions = []
    for index, raw in enumerate(raw_positions or []):
        if _is_empty_quantity(raw.get('quantity')):
            continue
        prefix = f'positions[{index}]'
        quantity = to_decimal(raw.get('quantity'), f'{prefix}.quantity')
        net_price = to_decimal(raw.get('net_price'), f'{prefix}.net_price', default=ZERO)
        tax_rate = to_decimal(raw.get('tax_rate'), f'{prefix}.tax_rate', default=ZERO)
        if tax_rate < ZERO:
            raise ValidationError('Steuersatz darf nicht negativ sein.', field=f'{prefix}.tax_rate')
        line_total = reconcile_line_total(quantity, net_price, raw.get('line_total'),
                                          field_name=f'{prefix}.line_total')
        supplied_gross = raw.get('gross_price')
        if supplied_gross not in (None, ''):
            gross = to_decimal(supplied_gross, f'{prefix}.gross_price')
        else:
            gross = gross_price(net_price, tax_rate)
        positions.append(InvoicePosition(
            position=len(positions) + 1,
            unit_code=(raw.get('unit_code') or 'C62').strip(),
            text=(raw.get('text') or '').strip(),
            quantity=quantity,
            tax_rate=tax_rate,
            net_price=net_price,
            gross_price=gross,
            line_total=line_total,
        ))
    return positions


# ── Header ──────────────────────────────────────────────────────

def _apply_header(invoice, data, owner_id):
    for field in _TEXT_FIELDS:
        if field in data:
            setattr(invoice, field, (data.get(field) or '').strip())
    if 'tax_type' in data:
        tax_type = (data.get('tax_type') or 'S').strip().upper()
        if tax_type not in TAX_TYPES:
            raise ValidationError(f'Unbekannte Steuerart "{tax_type}".', field='tax_type')
        invoice.tax_type = tax_type
    for field in ('date', 'due_date', 'occurrence_date'):
        if field in data:
            setattr(invoice, field, parse_date(data.get(field), field))
    if 'number' in data and (data.get('number') or '').strip():
        invoice.number = data['number'].strip()
    if 'template_id' in data:
        template_id = data.get('template_id')
        if template_id in (None, ''):
            invoice.template_id = None
        else:
            template = get_owned_or_404(LetterheadTemplate, int(template_id), owner_id)
            invoice.template_id = template.id
    if invoice.currency:
        invoice.currency = invoice.currency.upper()
    if invoice.date and invoice.due_date and invoice.due_date < invoice.date:
        raise ValidationError('Das Fälligkeitsdatum liegt vor dem Rechnungsdatum.', field='due_date')


def _commit_invoice(invoice, action):
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning('Duplicate invoice number %s on %s', invoice.number, action)
        raise DuplicateNumber(
            f'Die Rechnungsnummer {invoice.number} ist bereits vergeben.', field='number'
        ) from exc


def draft_defaults(owner_id, company_id, today=None):
    """Preview of a new draft for a company (counter, number, dates). Reserves nothing."""
    today = today or date.today()
    company = get_owned_or_404(Company, company_id, owner_id)
    settings = get_settings(owner_id)
    counter = peek_next_invoice_counter(owner_id, company.id, settings.use_local_counter)
    return {
        'company_id': company.id,
        'counter': counter,
        'number': format_invoice_number(settings.invoice_number_template, company.customer_number,
                                        counter, today),
        'date': today.isoformat(),
        'due_date': (today + timedelta(days=settings.payment_terms_days or 14)).isoformat(),
        'currency': company.invoice_currency or 'EUR',
        'tax_type': company.invoice_tax_type or 'S',
        'default_tax_rate': fmt_decimal(company.default_tax_rate or ZERO),
        'opening': company.invoice_opening or '',
        'footer': company.invoice_footer or '',
        'exemption_reason': company.invoice_exemption_reason or '',
        'contact_invoice': company.contact_invoice or '',
        'supplier_number': company.supplier_number or '',
    }


def create_invoice(owner_id, company_id, data, today=None):
    """Create a draft with a freshly allocated counter and number."""
    today = today or date.today()
    # validate everything before a counter is spent
    positions_raw = data.get('positions') or []
    parse_positions(positions_raw)

    def _create():
        company = get_owned_or_404(Company, company_id, owner_id)
        # read only; the counter update has to be the first write
        settings = Settings.query.filter_by(owner_id=owner_id).first()
        use_local = bool(settings and settings.use_local_counter)
        template = (settings and settings.invoice_number_template) or DEFAULT_INVOICE_TEMPLATE
        terms = (settings and settings.payment_terms_days) or 14
        tax_number = (settings and settings.tax_number) or ''

        counter = next_invoice_counter(owner_id, company.id, use_local)
        company = db.session.get(Company, company.id)
        invoice = Invoice(
            owner_id=owner_id,
            company_id=company.id,
            counter=counter,
            number=format_invoice_number(template, company.customer_number, counter, today),
            status='draft',
            currency=company.invoice_currency or 'EUR',
            date=today,
            due_date=today + timedelta(days=terms),
            tax_type=company.invoice_tax_type or 'S',
            tax_number=tax_number,
            exemption_reason=company.invoice_exemption_reason or '',
            opening=company.invoice_opening or '',
            footer=company.invoice_footer or '',
            supplier_number=company.supplier_number or '',
            contact_invoice=company.contact_invoice or '',
        )
        try:
            _apply_header(invoice, data, owner_id)
        except CRMError:
            db.session.rollback()
            raise
        invoice.positions = parse_positions(positions_raw)
        invoice.recompute_totals()
        db.session.add(invoice)
        _commit_invoice(invoice, 'create')
        return invoice

    invoice = run_with_retry(_create)
    logger.info('Created draft invoice %s (%s) for company %s', invoice.id, invoice.number, company_id)
    return invoice


def load_invoice(owner_id, invoice_id):
    invoice = Invoice.query.filter_by(id=invoice_id, owner_id=owner_id).first()
    if invoice is None:
        raise NotFound('Rechnung nicht gefunden.')
    return invoice


def update_invoice(owner_id, invoice_id, data):
    """Edit a draft. Positions, if given, replace the existing ones."""
    def _update():
        claim_draft(owner_id, invoice_id, ensure_editable)
        invoice = load_locked(owner_id, invoice_id)
        try:
            if 'company_id' in data and data.get('company_id'):
                company = get_owned_or_404(Company, int(data['company_id']), owner_id)
                invoice.company_id = company.id
                invoice.company = company
            _apply_header(invoice, data, owner_id)
            if 'positions' in data:
                invoice.positions = parse_positions(data.get('positions'))
        except CRMError:
            db.session.rollback()
            raise
        invoice.recompute_totals()
        _commit_invoice(invoice, 'update')
        return invoice

    invoice = run_with_retry(_update)
    logger.info('Updated draft invoice %s', invoice.id)
    return invoice


def delete_invoice(owner_id, invoice_id):
    def _delete():
        claim_draft(owner_id, invoice_id, ensure_deletable)
        invoice = load_locked(owner_id, invoice_id)
        db.session.delete(invoice)
        try:
            db.session.commit()
        except (OperationalError, StaleDataError):
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception('Deleting invoice %s failed', invoice_id)
            raise PersistenceError(str(exc)) from exc

    run_with_retry(_delete)
    artifacts.discard_artifacts(owner_id, invoice_id)
    logger.info('Deleted draft invoice %s', invoice_id)


def duplicate_invoice(owner_id, invoice_id, today=None):
    """Copy an invoice into a new draft with today's date and a new number."""
    source = load_invoice(owner_id, invoice_id)
    data = {field: getattr(source, field) for field in _TEXT_FIELDS}
    data['tax_type'] = source.tax_type
    data['template_id'] = source.template_id
    data['positions'] = [
        {
            'unit_code': pos.unit_code,
            'text': pos.text,
            'quantity': fmt_quantity(pos.quantity),
            'tax_rate': str(pos.tax_rate),
            'net_price': str(pos.net_price),
            'gross_price': str(pos.gross_price),
        }
        for pos in source.positions
    ]
    copy = create_invoice(owner_id, source.company_id, data, today=today)
    logger.info('Duplicated invoice %s as %s', invoice_id, copy.id)
    return copy


def list_invoices(owner_id, *, status=None, company_id=None, limit=None, cursor=None, sort=None):
    """Page through invoices. Returns ``(items, next_cursor)``; the cursor is an offset."""
    try:
        limit = int(limit) if limit not in (None, '') else DEFAULT_LIMIT
    except (TypeError, ValueError):
        raise ValidationError('limit muss eine Zahl sein.', field='limit')
    limit = max(1, min(limit, MAX_LIMIT))
    try:
        offset = int(cursor) if cursor not in (None, '') else 0
    except (TypeError, ValueError):
        raise ValidationError('Ungültiger Cursor.', field='cursor')
    if offset < 0:
        raise ValidationError('Ungültiger Cursor.', field='cursor')
    sort = sort or 'date_desc'
    if sort not in LIST_SORTS:
        raise ValidationError(f'Unbekannte Sortierung "{sort}".', field='sort')

    query = Invoice.query.filter(Invoice.owner_id == owner_id)
    if status:
        if status not in INVOICE_STATUSES:
            raise ValidationError(f'Unbekannter Status "{status}".', field='status')
        query = query.filter(Invoice.status == status)
    if company_id:
        query = query.filter(Invoice.company_id == int(company_id))
    rows = query.order_by(*LIST_SORTS[sort]).offset(offset).limit(limit + 1).all()
    next_cursor = str(offset + limit) if len(rows) > limit else None
    return rows[:limit], next_cursor


# ── Verification ────────────────────────────────────────────────

@dataclass
class InvoiceProblem:
    level: str  # 'error' or 'warning'
    message: str


def verify_invoice(invoice, settings):
    """Check the invoice against the e-invoice business rules we can judge locally.

    Problems never block downloads; they are shown next to the invoice.
    """
    problems = []
    company = invoice.company
    intra_community = invoice.tax_type == 'K'
    reverse_charge = invoice.tax_type == 'AE'

    if (intra_community or reverse_charge) and not invoice.exemption_reason:
        problems.append(InvoiceProblem('error', 'Es muss ein Befreiungsgrund angegeben werden für eine '
                                                'innergemeinschaftliche Lieferung bzw. eine Rechnung mit '
                                                'Steuerschuldumkehr.'))
    if intra_community:
        if not company.vat_id:
            problems.append(InvoiceProblem('error', 'Es muss eine USt-IdNr. des Kunden angegeben werden '
                                                    'für eine innergemeinschaftliche Lieferung.'))
        if not settings.vat_id:
            problems.append(InvoiceProblem('error', 'Es ist keine USt-IdNr. des eigenen Unternehmens '
                                                    'hinterlegt. Diese wird für eine innergemeinschaftliche '
                                                    'Lieferung benötigt.'))
        if not company.country:
            problems.append(InvoiceProblem('error', 'Es muss ein Land des Kunden angegeben werden für eine '
                                                    'innergemeinschaftliche Lieferung.'))
        elif company.country == settings.country_code:
            problems.append(InvoiceProblem('error', 'Das Land des Kunden ist identisch mit dem eigenen Land. '
                                                    'Eine innergemeinschaftliche Lieferung ist nur an '
                                                    'Unternehmen in anderen EU-Ländern möglich.'))

    if any(not (pos.text or '').strip() for pos in invoice.positions):
        problems.append(InvoiceProblem('warning', 'Es gibt eine oder mehrere Positionen ohne Text. '
                                                  'Jede Position soll einen Text haben.'))

    if not settings.company_name:
        problems.append(InvoiceProblem('error', 'Es ist kein Firmenname des eigenen Unternehmens hinterlegt.'))
    if not settings.address1 and not settings.address2:
        problems.append(InvoiceProblem('error', 'Es ist keine Adresse des eigenen Unternehmens hinterlegt.'))
    if not settings.city:
        problems.append(InvoiceProblem('error', 'Es ist kein Ort des eigenen Unternehmens hinterlegt.'))
    if not settings.zip:
        problems.append(InvoiceProblem('error', 'Es ist keine Postleitzahl des eigenen Unternehmens hinterlegt.'))
    if not settings.country_code:
        problems.append(InvoiceProblem('error', 'Es ist kein Land des eigenen Unternehmens hinterlegt.'))

    known = {p.message for p in problems}
    standard = artifacts.configured_standard()
    for message in standard.validate_data(artifacts.build_einvoice_data(invoice, settings)):
        if message not in known:
            problems.append(InvoiceProblem('warning', message))
    return problems


def problems_as_dicts(problems):
    return [asdict(p) for p in problems]


# ── Serialization ───────────────────────────────────────────────

def serialize_position(pos):
    return {
        'position': pos.position,
        'unit_code': pos.unit_code,
        'text': pos.text,
        'quantity': fmt_quantity(pos.quantity),
        'tax_rate': fmt_decimal(pos.tax_rate),
        'net_price': fmt_decimal(pos.net_price, 4),
        'gross_price': fmt_decimal(pos.gross_price, 4),
        'line_total': fmt_decimal(pos.line_total),
    }


def serialize_invoice(invoice, *, with_positions=True):
    """JSON view of an invoice. Totals are recomputed from the positions."""
    totals = invoice.recompute_totals()
    data = {
        'id': invoice.id,
        'number': invoice.number,
        'counter': invoice.counter,
        'status': invoice.status,
        'status_label': invoice.status_label,
        'company_id': invoice.company_id,
        'customer_number': invoice.company.customer_number if invoice.company else None,
        'company_name': invoice.company.name if invoice.company else None,
        'currency': invoice.currency,
        'date': invoice.date.isoformat() if invoice.date else None,
        'due_date': invoice.due_date.isoformat() if invoice.due_date else None,
        'occurrence_date': invoice.occurrence_date.isoformat() if invoice.occurrence_date else None,
        'tax_type': invoice.tax_type,
        'net_total': fmt_decimal(totals.net_total),
        'gross_total': fmt_decimal(totals.gross_total),
        'payable_total': fmt_decimal(totals.payable_total),
        'issued_at': fmt_de_date(invoice.issued_at),
        'paid_at': fmt_de_date(invoice.paid_at),
        'voided_at': fmt_de_date(invoice.voided_at),
    }
    if with_positions:
        data.update({
            'tax_number': invoice.tax_number,
            'exemption_reason': invoice.exemption_reason,
            'opening': invoice.opening,
            'footer': invoice.footer,
            'order_number': invoice.order_number,
            'supplier_number': invoice.supplier_number,
            'buyer_reference': invoice.buyer_reference,
            'contact_invoice': invoice.contact_invoice,
            'template_id': invoice.template_id,
            'positions': [serialize_position(p) for p in invoice.positions],
            'tax_amounts': [
                {'rate': fmt_decimal(t.rate), 'basis': fmt_decimal(t.basis),
                 'amount': fmt_decimal(round_money(t.amount))}
                for t in totals.tax_amounts
            ],
        })
    return data


def status_payload(invoice):
    """Response body of a status change: only the timestamps that are set."""
    data = {'status': invoice.status}
    for field in ('issued_at', 'paid_at', 'voided_at'):
        value = getattr(invoice, field)
        if value is not None:
            data[field] = fmt_de_date(value)
    return data
