from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from models import db, Invoice
from errors import InvalidTransition, NotFound, StateConflict, ValidationError
from invoicing import create_invoice, delete_invoice, update_invoice
from lifecycle import change_status, open_invoice_total, revert_to_draft

NOW = datetime(2025, 3, 14, 9, 30)


def test_issue_sets_timestamp_and_freezes_totals(owner, draft):
    invoice = change_status(owner.id, draft.id, 'issued', now=NOW)
    assert invoice.status == 'issued'
    assert invoice.issued_at == NOW
    assert invoice.net_total == Decimal('30.00')
    assert invoice.gross_total == Decimal('35.70')


def test_full_path_to_voided(owner, draft):
    change_status(owner.id, draft.id, 'issued', now=NOW)
    invoice = change_status(owner.id, draft.id, 'paid', now=NOW)
    assert invoice.paid_at == NOW
    invoice = change_status(owner.id, draft.id, 'voided', now=NOW)
    assert invoice.status == 'voided'
    assert invoice.voided_at == NOW
    assert invoice.issued_at == NOW


def test_draft_cannot_be_paid(owner, draft):
    with pytest.raises(InvalidTransition) as excinfo:
        change_status(owner.id, draft.id, 'paid')
    assert excinfo.value.current == 'draft'
    assert excinfo.value.requested == 'paid'
    assert db.session.get(Invoice, draft.id).status == 'draft'


def test_draft_cannot_be_voided(owner, draft):
    with pytest.raises(InvalidTransition):
        change_status(owner.id, draft.id, 'voided')


def test_voided_is_final(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    change_status(owner.id, draft.id, 'voided')
    for target in ('issued', 'paid', 'voided'):
        with pytest.raises(InvalidTransition):
            change_status(owner.id, draft.id, target)


def test_issue_needs_positions(owner, company):
    empty = create_invoice(owner.id, company.id, {})
    with pytest.raises(InvalidTransition) as excinfo:
        change_status(owner.id, empty.id, 'issued')
    assert 'keine Positionen' in excinfo.value.message


def test_unknown_status(owner, draft):
    with pytest.raises(ValidationError):
        change_status(owner.id, draft.id, 'archived')


def test_draft_is_not_a_transition_target(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    with pytest.raises(InvalidTransition):
        change_status(owner.id, draft.id, 'draft')


def test_other_tenant_cannot_change_status(other_owner, draft):
    with pytest.raises(NotFound):
        change_status(other_owner.id, draft.id, 'issued')


def test_issued_invoice_is_immutable(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    with pytest.raises(StateConflict):
        update_invoice(owner.id, draft.id, {'positions': []})
    with pytest.raises(StateConflict):
        delete_invoice(owner.id, draft.id)
    assert len(db.session.get(Invoice, draft.id).positions) == 1


def test_revert_requires_override(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    with pytest.raises(InvalidTransition):
        revert_to_draft(owner.id, draft.id, override=False)


def test_revert_clears_all_timestamps(owner, draft):
    change_status(owner.id, draft.id, 'issued', now=NOW)
    change_status(owner.id, draft.id, 'paid', now=NOW)
    invoice = revert_to_draft(owner.id, draft.id, override=True)
    assert invoice.status == 'draft'
    assert invoice.issued_at is None
    assert invoice.paid_at is None
    assert invoice.voided_at is None
    # editable again
    update_invoice(owner.id, draft.id, {'opening': 'Korrigiert'})


def test_open_total_counts_issued_only(owner, company, draft):
    paid = create_invoice(owner.id, company.id, {
        'positions': [{'text': 'A', 'quantity': '1', 'net_price': '100', 'tax_rate': '19'}],
    })
    voided = create_invoice(owner.id, company.id, {
        'positions': [{'text': 'B', 'quantity': '1', 'net_price': '50', 'tax_rate': '19'}],
    })
    change_status(owner.id, draft.id, 'issued')
    for invoice in (paid, voided):
        change_status(owner.id, invoice.id, 'issued')
    change_status(owner.id, paid.id, 'paid')
    change_status(owner.id, voided.id, 'voided')
    assert open_invoice_total(owner.id) == {'EUR': Decimal('35.70')}


def test_edit_and_delete_lose_against_concurrent_issue(app, owner, draft):
    invoice_id = draft.id
    # this session still holds the invoice as a draft
    assert draft.status == 'draft'
    with app.app_context():
        change_status(owner.id, invoice_id, 'issued')

    with pytest.raises(StateConflict):
        update_invoice(owner.id, invoice_id, {'positions': [], 'opening': 'Zu spät'})
    with pytest.raises(StateConflict):
        delete_invoice(owner.id, invoice_id)

    db.session.expire_all()
    invoice = db.session.get(Invoice, invoice_id)
    assert invoice.status == 'issued'
    assert invoice.opening != 'Zu spät'
    assert len(invoice.positions) == 1


def test_locked_commit_is_retried(owner, draft, monkeypatch):
    calls = []
    real_commit = db.session.commit

    def flaky_commit():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError('COMMIT', {}, Exception('database is locked'))
        return real_commit()

    monkeypatch.setattr(db.session, 'commit', flaky_commit)
    monkeypatch.setattr('concurrency.time.sleep', lambda seconds: None)
    invoice = change_status(owner.id, draft.id, 'issued', now=NOW)
    assert invoice.status == 'issued'
    assert invoice.issued_at == NOW
    assert len(calls) >= 2
