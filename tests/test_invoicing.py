import os
from datetime import date, timedelta
from decimal import Decimal

import pytest

from models import db, Invoice, Settings
from errors import NotFound, ValidationError
from invoicing import (create_invoice, delete_invoice, draft_defaults, duplicate_invoice, list_invoices,
                       parse_positions, serialize_invoice, update_invoice, verify_invoice)
from lifecycle import change_status
import artifacts


def test_parse_positions_skips_empty_quantities_and_numbers_from_one():
    positions = parse_positions([
        {'text': 'A', 'quantity': '2', 'net_price': '1,50', 'tax_rate': '7'},
        {'text': 'leer', 'quantity': ''},
        {'text': 'null', 'quantity': '0'},
        {'text': 'B', 'quantity': '1', 'net_price': '10', 'tax_rate': '19', 'line_total': '10.00'},
    ])
    assert [p.position for p in positions] == [1, 2]
    assert [p.text for p in positions] == ['A', 'B']
    assert positions[0].line_total == Decimal('3.00')
    assert positions[0].gross_price == Decimal('1.605')
    assert positions[1].unit_code == 'C62'


def test_parse_positions_rejects_bad_line_total():
    with pytest.raises(ValidationError) as excinfo:
        parse_positions([{'quantity': '3', 'net_price': '10', 'tax_rate': '19', 'line_total': '29.00'}])
    assert excinfo.value.field == 'positions[0].line_total'


def test_parse_positions_rejects_negative_rate():
    with pytest.raises(ValidationError):
        parse_positions([{'quantity': '1', 'net_price': '10', 'tax_rate': '-1'}])


def test_create_uses_template_and_defaults(owner, company):
    today = date(2025, 2, 1)
    invoice = create_invoice(owner.id, company.id, {}, today=today)
    assert invoice.counter == 1
    assert invoice.number == 'RE-2025-0001'
    assert invoice.status == 'draft'
    assert invoice.date == today
    assert invoice.due_date == today + timedelta(days=14)
    assert invoice.currency == 'EUR'
    assert invoice.tax_number == '12/345/67890'


def test_create_with_customer_number_template(owner, company):
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    settings.invoice_number_template = 'R-%CN%-%C%'
    db.session.commit()
    invoice = create_invoice(owner.id, company.id, {})
    assert invoice.number == 'R-K00001-1'


def test_invalid_input_spends_no_counter(owner, company):
    with pytest.raises(ValidationError):
        create_invoice(owner.id, company.id, {'positions': [{'quantity': 'x'}]})
    with pytest.raises(ValidationError):
        create_invoice(owner.id, company.id, {'due_date': 'gestern'})
    assert create_invoice(owner.id, company.id, {}).counter == 1


def test_draft_defaults_reserve_nothing(owner, company):
    preview = draft_defaults(owner.id, company.id, today=date(2025, 6, 1))
    assert preview['counter'] == 1
    assert preview['number'] == 'RE-2025-0001'
    assert preview['due_date'] == '2025-06-15'
    assert draft_defaults(owner.id, company.id)['counter'] == 1


def test_update_replaces_positions(owner, draft):
    invoice = update_invoice(owner.id, draft.id, {
        'positions': [
            {'text': 'Neu', 'quantity': '1', 'net_price': '100', 'tax_rate': '7'},
            {'text': 'Neu 2', 'quantity': '2', 'net_price': '5', 'tax_rate': '19'},
        ],
        'order_number': 'PO-77',
    })
    assert [p.text for p in invoice.positions] == ['Neu', 'Neu 2']
    assert invoice.net_total == Decimal('110.00')
    assert invoice.gross_total == Decimal('110.00') + Decimal('7') + Decimal('1.9')
    assert invoice.order_number == 'PO-77'


def test_update_rejects_due_before_date(owner, draft):
    with pytest.raises(ValidationError):
        update_invoice(owner.id, draft.id, {'date': '2025-03-10', 'due_date': '09.03.2025'})


def test_delete_draft_removes_artifacts(owner, draft):
    artifacts.get_invoice_xml(draft)
    path = artifacts.artifact_path(draft, 'xml')
    assert os.path.exists(path)
    invoice_id = draft.id
    delete_invoice(owner.id, invoice_id)
    assert db.session.get(Invoice, invoice_id) is None
    assert not os.path.exists(path)


def test_delete_unknown_invoice(owner):
    with pytest.raises(NotFound):
        delete_invoice(owner.id, 999)


def test_duplicate_gets_new_number(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    copy = duplicate_invoice(owner.id, draft.id)
    assert copy.id != draft.id
    assert copy.status == 'draft'
    assert copy.counter == draft.counter + 1
    assert [(p.text, p.quantity, p.net_price) for p in copy.positions] == [
        ('Beratung', Decimal('3'), Decimal('10.00'))
    ]


def test_list_invoices_cursor(owner, company):
    for day in range(1, 6):
        create_invoice(owner.id, company.id, {'date': f'2025-01-0{day}', 'due_date': '2025-02-01'})
    items, cursor = list_invoices(owner.id, limit=2)
    assert [i.date.day for i in items] == [5, 4]
    assert cursor == '2'
    items, cursor = list_invoices(owner.id, limit=2, cursor=cursor)
    assert [i.date.day for i in items] == [3, 2]
    items, cursor = list_invoices(owner.id, limit=2, cursor=cursor)
    assert [i.date.day for i in items] == [1]
    assert cursor is None
    items, _ = list_invoices(owner.id, sort='date_asc', limit=1)
    assert items[0].date.day == 1


def test_list_invoices_filters_and_limits(owner, other_owner, company, draft):
    items, _ = list_invoices(owner.id, status='issued')
    assert items == []
    items, _ = list_invoices(owner.id, status='draft', company_id=company.id)
    assert [i.id for i in items] == [draft.id]
    assert list_invoices(other_owner.id)[0] == []
    with pytest.raises(ValidationError):
        list_invoices(owner.id, sort='random')
    with pytest.raises(ValidationError):
        list_invoices(owner.id, cursor='abc')
    items, _ = list_invoices(owner.id, limit=10000)
    assert len(items) == 1


def test_verify_complete_invoice_has_no_errors(owner, draft):
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    problems = verify_invoice(draft, settings)
    assert [p for p in problems if p.level == 'error'] == []


def test_verify_intra_community_rules(owner, company, draft):
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    update_invoice(owner.id, draft.id, {'tax_type': 'K'})
    messages = [p.message for p in verify_invoice(draft, settings)]
    assert any('Befreiungsgrund' in m for m in messages)
    assert any('USt-IdNr. des Kunden' in m for m in messages)
    assert any('identisch mit dem eigenen Land' in m for m in messages)


def test_verify_missing_seller_data_and_text(owner, draft):
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    settings.company_name = ''
    settings.city = ''
    update_invoice(owner.id, draft.id, {
        'positions': [{'text': '', 'quantity': '1', 'net_price': '1', 'tax_rate': '19'}],
    })
    problems = verify_invoice(draft, settings)
    messages = [p.message for p in problems]
    assert 'Es ist kein Firmenname des eigenen Unternehmens hinterlegt.' in messages
    assert 'Es ist kein Ort des eigenen Unternehmens hinterlegt.' in messages
    assert any(p.level == 'warning' and 'ohne Text' in p.message for p in problems)


def test_serialize_invoice(owner, draft):
    data = serialize_invoice(draft)
    assert data['net_total'] == '30.00'
    assert data['gross_total'] == '35.70'
    assert data['tax_amounts'] == [{'rate': '19.00', 'basis': '30.00', 'amount': '5.70'}]
    assert data['positions'][0]['quantity'] == '3'
    assert data['status_label'] == 'Entwurf'
    assert data['issued_at'] is None


def test_gross_total_is_exact_sum_over_rates(owner, company):
    invoice = create_invoice(owner.id, company.id, {
        'positions': [
            {'text': 'A', 'quantity': '1', 'net_price': '0.05', 'tax_rate': '7'},
            {'text': 'B', 'quantity': '1', 'net_price': '0.05', 'tax_rate': '9'},
        ],
    })
    data = serialize_invoice(invoice)
    assert data['net_total'] == '0.10'
    # 0.10 + 0.0035 + 0.0045
    assert data['gross_total'] == '0.11'
    assert data['payable_total'] == '0.10'
