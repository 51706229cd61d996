from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from werkzeug.utils import secure_filename

from errors import ValidationError
from helpers import get_settings, request_data, send_file_response
from invoicing import (create_invoice, delete_invoice, draft_defaults, duplicate_invoice, load_invoice,
                       problems_as_dicts, serialize_invoice, status_payload, update_invoice, verify_invoice)
from lifecycle import change_status, revert_to_draft
import artifacts

invoices_bp = Blueprint('invoices', __name__)


def _download_name(invoice, extension):
    return secure_filename(f'{invoice.number or invoice.id}.{extension}') or f'rechnung.{extension}'


@invoices_bp.route('/invoices/new/<int:company_id>')
@login_required
def invoice_new(company_id):
    """Defaults for a new draft; nothing is reserved yet"""
    return jsonify(draft_defaults(current_user.id, company_id))


@invoices_bp.route('/invoices', methods=['POST'])
@login_required
def invoice_create():
    data = request_data()
    company_id = data.get('company_id')
    if not company_id:
        raise ValidationError('Es ist kein Kunde ausgewählt.', field='company_id')
    try:
        company_id = int(company_id)
    except (TypeError, ValueError):
        raise ValidationError('Ungültige Kunden-ID.', field='company_id')
    invoice = create_invoice(current_user.id, company_id, data)
    return jsonify(serialize_invoice(invoice)), 201


@invoices_bp.route('/invoices/<int:invoice_id>')
@login_required
def invoice_view(invoice_id):
    invoice = load_invoice(current_user.id, invoice_id)
    return jsonify(serialize_invoice(invoice))


@invoices_bp.route('/invoices/<int:invoice_id>/edit', methods=['POST'])
@login_required
def invoice_edit(invoice_id):
    """Edit a draft (409 once issued)"""
    invoice = update_invoice(current_user.id, invoice_id, request_data())
    return jsonify(serialize_invoice(invoice))


@invoices_bp.route('/invoices/<int:invoice_id>/delete', methods=['POST'])
@login_required
def invoice_delete(invoice_id):
    """Delete invoice (only allowed in draft status)"""
    delete_invoice(current_user.id, invoice_id)
    return jsonify({'success': True})


@invoices_bp.route('/invoices/<int:invoice_id>/duplicate', methods=['POST'])
@login_required
def invoice_duplicate(invoice_id):
    invoice = duplicate_invoice(current_user.id, invoice_id)
    return jsonify(serialize_invoice(invoice)), 201


@invoices_bp.route('/invoices/<int:invoice_id>/status', methods=['POST'])
@login_required
def invoice_status(invoice_id):
    """Change the status. Going back to draft is reserved for admins."""
    target = (request_data().get('status') or '').strip()
    if not target:
        raise ValidationError('Es wurde kein Status angegeben.', field='status')
    if target == 'draft':
        invoice = revert_to_draft(current_user.id, invoice_id, override=bool(current_user.is_admin))
    else:
        invoice = change_status(current_user.id, invoice_id, target)
    return jsonify(status_payload(invoice))


@invoices_bp.route('/invoices/<int:invoice_id>/zugferd.xml')
@login_required
def invoice_xml(invoice_id):
    invoice = load_invoice(current_user.id, invoice_id)
    data = artifacts.get_invoice_xml(invoice)
    return send_file_response(data, _download_name(invoice, 'xml'), 'application/xml')


@invoices_bp.route('/invoices/<int:invoice_id>/zugferd.pdf')
@login_required
def invoice_pdf(invoice_id):
    invoice = load_invoice(current_user.id, invoice_id)
    data = artifacts.get_invoice_pdf(invoice)
    return send_file_response(data, _download_name(invoice, 'pdf'), 'application/pdf')


@invoices_bp.route('/invoices/<int:invoice_id>/validate')
@login_required
def invoice_validate(invoice_id):
    """Business-rule check; problems never block downloads"""
    invoice = load_invoice(current_user.id, invoice_id)
    problems = verify_invoice(invoice, get_settings(current_user.id))
    return jsonify({'problems': problems_as_dicts(problems)})
