import hashlib
import json

from flask import Blueprint, Response, jsonify, request
from flask_login import login_required, current_user

from models import Invoice
from numbering import check_customer_number, suggest_next_customer_number
from invoicing import list_invoices, load_invoice, serialize_invoice
from helpers import send_file_response
from generators.export_bundle import build_invoices_export

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _etag(payload):
    """Weak validator over the serialized invoice, so position edits change it too."""
    digest = hashlib.sha1(json.dumps(payload, sort_keys=True).encode('utf-8')).hexdigest()
    return f'W/"inv-{payload["id"]}-{digest[:16]}"'


@api_bp.route('/customer-number/check')
@login_required
def customer_number_check():
    exclude = request.args.get('exclude', type=int)
    ok, message = check_customer_number(current_user.id, request.args.get('num'), exclude_id=exclude)
    return jsonify({'ok': ok, 'message': message})


@api_bp.route('/customer-number/suggest')
@login_required
def customer_number_suggest():
    return jsonify({'customer_number': suggest_next_customer_number(current_user.id)})


@api_bp.route('/invoices')
@login_required
def invoice_list():
    """Cursor-paginated invoice list"""
    items, next_cursor = list_invoices(
        current_user.id,
        status=request.args.get('status') or None,
        company_id=request.args.get('company_id', type=int),
        limit=request.args.get('limit'),
        cursor=request.args.get('cursor'),
        sort=request.args.get('sort') or None,
    )
    return jsonify({
        'items': [serialize_invoice(inv, with_positions=False) for inv in items],
        'next_cursor': next_cursor,
    })


@api_bp.route('/invoices/<int:invoice_id>')
@login_required
def invoice_detail(invoice_id):
    """Full invoice with positions and tax amounts"""
    invoice = load_invoice(current_user.id, invoice_id)
    payload = serialize_invoice(invoice)
    etag = _etag(payload)
    if request.headers.get('If-None-Match') == etag:
        return Response(status=304, headers={'ETag': etag})
    response = jsonify(payload)
    response.headers['ETag'] = etag
    return response


@api_bp.route('/export/invoices.xml')
@login_required
def export_invoices():
    invoices = (Invoice.query.filter_by(owner_id=current_user.id)
                .order_by(Invoice.date, Invoice.id).all())
    return send_file_response(build_invoices_export(invoices), 'invoices.xml', 'application/xml')
