import logging

from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from models import db, Invoice, LetterheadTemplate, PlacedRegion, REGION_KINDS
from errors import PersistenceError, ValidationError
from helpers import get_owned_or_404, get_settings, request_data
from numbering import DEFAULT_INVOICE_TEMPLATE, format_invoice_number
from totals import ZERO, fmt_decimal, to_decimal

logger = logging.getLogger(__name__)

settings_bp = Blueprint('settings', __name__)

SELLER_FIELDS = ('company_name', 'invoice_contact', 'invoice_email', 'address1', 'address2',
                 'zip', 'city', 'vat_id', 'tax_number', 'bank_iban', 'bank_name', 'bank_bic',
                 'customer_number_prefix')

H_ALIGNS = ('left', 'center', 'right')


def _as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'on', 'yes')


def _as_int(value, field, minimum=0):
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f'{field} muss eine ganze Zahl sein.', field=field)
    if number < minimum:
        raise ValidationError(f'{field} darf nicht kleiner als {minimum} sein.', field=field)
    return number


def _commit(action):
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception('Could not store %s', action)
        raise PersistenceError(str(exc)) from exc


def serialize_settings(settings):
    data = {field: getattr(settings, field) for field in SELLER_FIELDS}
    data.update({
        'country_code': settings.country_code,
        'invoice_number_template': settings.invoice_number_template,
        'invoice_number_example': format_invoice_number(settings.invoice_number_template, 'K00001', 1),
        'use_local_counter': bool(settings.use_local_counter),
        'payment_terms_days': settings.payment_terms_days,
        'customer_number_width': settings.customer_number_width,
        'customer_number_counter': settings.customer_number_counter,
    })
    return data


@settings_bp.route('/settings', methods=['GET', 'POST'])
@login_required
def settings_view():
    """Seller data, invoice number template and counters"""
    settings = get_settings(current_user.id)
    if request.method == 'POST':
        data = request_data()
        for field in SELLER_FIELDS:
            if field in data:
                setattr(settings, field, (data.get(field) or '').strip())
        if 'country_code' in data:
            country = (data.get('country_code') or '').strip().upper()
            if len(country) != 2:
                raise ValidationError('Das Land muss als zweistelliger ISO-Code angegeben werden.',
                                      field='country_code')
            settings.country_code = country
        if 'invoice_number_template' in data:
            settings.invoice_number_template = (data.get('invoice_number_template') or '').strip() \
                or DEFAULT_INVOICE_TEMPLATE
        if 'use_local_counter' in data:
            settings.use_local_counter = _as_bool(data.get('use_local_counter'))
        if 'payment_terms_days' in data:
            settings.payment_terms_days = _as_int(data.get('payment_terms_days'), 'payment_terms_days')
        if 'customer_number_width' in data:
            settings.customer_number_width = _as_int(data.get('customer_number_width'), 'customer_number_width')
        if 'customer_number_counter' in data:
            settings.customer_number_counter = _as_int(data.get('customer_number_counter'),
                                                       'customer_number_counter')
        _commit('settings')
        logger.info('Settings of owner %s updated', current_user.id)
    else:
        # get_settings may have created the row
        _commit('settings')
    return jsonify(serialize_settings(settings))


# ── Letterheads ─────────────────────────────────────────────────

def _positive(data, field, default=None):
    value = to_decimal(data.get(field), field, default=default)
    if value is not None and value <= ZERO:
        raise ValidationError(f'{field} muss größer als 0 sein.', field=field)
    return value


def _file_name(value, field):
    if not value:
        return None
    safe = secure_filename(str(value))
    if not safe:
        raise ValidationError('Ungültiger Dateiname.', field=field)
    return safe


def _apply_region(region, raw, index):
    prefix = f'regions[{index}]'
    region.x_cm = to_decimal(raw.get('x_cm'), f'{prefix}.x_cm', default=ZERO)
    region.y_cm = to_decimal(raw.get('y_cm'), f'{prefix}.y_cm', default=ZERO)
    region.width_cm = _positive(raw, 'width_cm')
    region.height_cm = _positive(raw, 'height_cm')
    h_align = (raw.get('h_align') or 'left').strip()
    if h_align not in H_ALIGNS:
        raise ValidationError(f'Unbekannte Ausrichtung "{h_align}".', field=f'{prefix}.h_align')
    region.h_align = h_align
    region.font_size_pt = _positive(raw, 'font_size_pt', default=to_decimal('10'))
    region.line_spacing = _positive(raw, 'line_spacing', default=to_decimal('1.2'))
    region.has_page2 = _as_bool(raw.get('has_page2'))
    if region.has_page2:
        region.x2_cm = to_decimal(raw.get('x2_cm'), f'{prefix}.x2_cm', default=ZERO)
        region.y2_cm = to_decimal(raw.get('y2_cm'), f'{prefix}.y2_cm', default=ZERO)
        region.width2_cm = _positive(raw, 'width2_cm')
        region.height2_cm = _positive(raw, 'height2_cm')
    else:
        region.x2_cm = region.y2_cm = region.width2_cm = region.height2_cm = None


def _apply_letterhead(template, data, owner_id):
    if 'name' in data:
        template.name = (data.get('name') or '').strip()
    if not template.name:
        raise ValidationError('Die Vorlage braucht einen Namen.', field='name')
    if 'page_width_cm' in data:
        template.page_width_cm = _positive(data, 'page_width_cm')
    if 'page_height_cm' in data:
        template.page_height_cm = _positive(data, 'page_height_cm')
    for field in ('pdf_filename', 'font_normal', 'font_bold'):
        if field in data:
            setattr(template, field, _file_name(data.get(field), field))

    if 'regions' in data:
        by_kind = {region.kind: region for region in template.regions}
        seen = set()
        for index, raw in enumerate(data.get('regions') or []):
            kind = (raw.get('kind') or '').strip()
            if kind not in REGION_KINDS:
                raise ValidationError(f'Unbekannter Bereich "{kind}".', field=f'regions[{index}].kind')
            if kind in seen:
                raise ValidationError(f'Bereich "{kind}" ist doppelt angegeben.', field=f'regions[{index}].kind')
            seen.add(kind)
            region = by_kind.get(kind)
            if region is None:
                region = PlacedRegion(owner_id=owner_id, kind=kind)
                template.regions.append(region)
            _apply_region(region, raw, index)
        for kind, region in by_kind.items():
            if kind not in seen:
                template.regions.remove(region)


def serialize_letterhead(template):
    def _cm(value):
        return fmt_decimal(value) if value is not None else None

    return {
        'id': template.id,
        'name': template.name,
        'page_width_cm': _cm(template.page_width_cm),
        'page_height_cm': _cm(template.page_height_cm),
        'pdf_filename': template.pdf_filename,
        'font_normal': template.font_normal,
        'font_bold': template.font_bold,
        'regions': [
            {
                'kind': r.kind,
                'x_cm': _cm(r.x_cm), 'y_cm': _cm(r.y_cm),
                'width_cm': _cm(r.width_cm), 'height_cm': _cm(r.height_cm),
                'h_align': r.h_align,
                'font_size_pt': _cm(r.font_size_pt),
                'line_spacing': _cm(r.line_spacing),
                'has_page2': bool(r.has_page2),
                'x2_cm': _cm(r.x2_cm), 'y2_cm': _cm(r.y2_cm),
                'width2_cm': _cm(r.width2_cm), 'height2_cm': _cm(r.height2_cm),
            }
            for r in template.regions
        ],
    }


@settings_bp.route('/letterheads', methods=['GET', 'POST'])
@login_required
def letterhead_list():
    if request.method == 'POST':
        template = LetterheadTemplate(owner_id=current_user.id)
        try:
            _apply_letterhead(template, request_data(), current_user.id)
        except ValidationError:
            db.session.rollback()
            raise
        db.session.add(template)
        _commit('letterhead')
        logger.info('Created letterhead %s', template.id)
        return jsonify(serialize_letterhead(template)), 201
    templates = LetterheadTemplate.query.filter_by(owner_id=current_user.id) \
        .order_by(LetterheadTemplate.name).all()
    return jsonify({'items': [serialize_letterhead(t) for t in templates]})


@settings_bp.route('/letterheads/<int:template_id>', methods=['GET', 'POST'])
@login_required
def letterhead_detail(template_id):
    template = get_owned_or_404(LetterheadTemplate, template_id, current_user.id)
    if request.method == 'POST':
        try:
            _apply_letterhead(template, request_data(), current_user.id)
        except ValidationError:
            db.session.rollback()
            raise
        _commit('letterhead')
    return jsonify(serialize_letterhead(template))


@settings_bp.route('/letterheads/<int:template_id>/delete', methods=['POST'])
@login_required
def letterhead_delete(template_id):
    """Delete a letterhead; invoices using it fall back to the standard layout"""
    template = get_owned_or_404(LetterheadTemplate, template_id, current_user.id)
    Invoice.query.filter_by(template_id=template.id, owner_id=current_user.id) \
        .update({'template_id': None}, synchronize_session=False)
    db.session.delete(template)
    _commit('letterhead deletion')
    return jsonify({'success': True})
