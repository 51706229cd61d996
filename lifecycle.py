"""
Invoice status machine.

    draft ──issue──▶ issued ──pay──▶ paid
                       │               │
                       └────void──▶ voided ◀─┘

Going back to draft is not a transition; it is an explicit administrative
override (``revert_to_draft``) that wipes all status timestamps.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from models import db, Invoice, INVOICE_STATUSES, STATUS_LABELS
from errors import CRMError, InvalidTransition, NotFound, PersistenceError, StateConflict, ValidationError
from concurrency import lock_for_update, run_with_retry
import artifacts

logger = logging.getLogger(__name__)

TRANSITIONS = {
    ('draft', 'issued'),
    ('issued', 'paid'),
    ('issued', 'voided'),
    ('paid', 'voided'),
}

# Invoices counted in "open" sums (issued but not yet paid or voided)
OPEN_STATUSES = ('issued',)

_REFUSALS = {
    ('draft', 'paid'): 'Ein Entwurf kann nicht als bezahlt markiert werden. Bitte die Rechnung zuerst stellen.',
    ('draft', 'voided'): 'Ein Entwurf kann nicht verworfen werden. Entwürfe werden gelöscht.',
    ('paid', 'issued'): 'Eine bezahlte Rechnung kann nicht erneut gestellt werden.',
    ('voided', 'issued'): 'Eine verworfene Rechnung kann nicht erneut gestellt werden.',
    ('voided', 'paid'): 'Eine verworfene Rechnung kann nicht bezahlt werden.',
}


def _refusal(current, target):
    if current == target:
        return f'Die Rechnung hat bereits den Status "{STATUS_LABELS.get(current, current)}".'
    if target == 'draft':
        return 'Zurücksetzen auf Entwurf ist nur als Administrator möglich.'
    return _REFUSALS.get((current, target))


def issue_problems(invoice):
    """Reasons why *invoice* cannot be issued yet (empty list = ready)."""
    problems = []
    if not invoice.positions:
        problems.append('Die Rechnung hat keine Positionen.')
    if not invoice.company_id:
        problems.append('Es ist kein Kunde zugeordnet.')
    if not invoice.number:
        problems.append('Die Rechnungsnummer fehlt.')
    if not invoice.date:
        problems.append('Das Rechnungsdatum fehlt.')
    if not invoice.due_date:
        problems.append('Das Fälligkeitsdatum fehlt.')
    if not invoice.currency:
        problems.append('Die Währung fehlt.')
    return problems


def ensure_editable(invoice):
    if invoice.status != 'draft':
        raise StateConflict(
            f'Rechnung {invoice.number} ist {invoice.status_label.lower()} und kann nicht mehr bearbeitet werden.'
        )


def ensure_deletable(invoice):
    if invoice.status != 'draft':
        raise StateConflict(f'Nur Entwürfe können gelöscht werden (Rechnung {invoice.number}).')


def load_locked(owner_id, invoice_id):
    """Load an invoice for writing. Rows already in the session are refreshed."""
    invoice = lock_for_update(
        Invoice.query.filter_by(id=invoice_id, owner_id=owner_id)
    ).populate_existing().first()
    if invoice is None:
        raise NotFound('Rechnung nicht gefunden.')
    return invoice


def claim_draft(owner_id, invoice_id, guard, now=None):
    """Take the write lock on a draft before it is edited or deleted.

    The guarding UPDATE only matches while the invoice is still a draft,
    so a concurrent status change either waits for us or makes us fail
    here. *guard* (``ensure_editable`` or ``ensure_deletable``) produces
    the refusal when the invoice is no longer a draft.
    """
    rows = Invoice.query.filter_by(id=invoice_id, owner_id=owner_id, status='draft').update(
        {'updated_at': now or datetime.utcnow()}, synchronize_session=False
    )
    if rows:
        return
    db.session.rollback()
    invoice = Invoice.query.filter_by(id=invoice_id, owner_id=owner_id).populate_existing().first()
    if invoice is None:
        raise NotFound('Rechnung nicht gefunden.')
    guard(invoice)
    # status flipped back to draft in between; let run_with_retry try again
    raise StaleDataError(f'Invoice {invoice_id} changed while it was claimed')


def _commit(invoice, action):
    try:
        db.session.commit()
    except (OperationalError, StaleDataError):
        # lock timeouts go back to run_with_retry
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception('Could not store %s of invoice %s', action, invoice.id)
        raise PersistenceError(str(exc)) from exc


def change_status(owner_id, invoice_id, target, now=None):
    """Move an invoice along the status machine and persist the result.

    The invoice row is locked for the duration of the check. After a
    successful change the XML and PDF artifacts are regenerated.
    """
    if target not in INVOICE_STATUSES:
        raise ValidationError(f'Unbekannter Status "{target}".', field='status')
    now = now or datetime.utcnow()

    def _apply():
        invoice = load_locked(owner_id, invoice_id)
        current = invoice.status
        try:
            if (current, target) not in TRANSITIONS:
                raise InvalidTransition(current, target, _refusal(current, target))
            if target == 'issued':
                problems = issue_problems(invoice)
                if problems:
                    raise InvalidTransition(current, target, ' '.join(problems))
                invoice.recompute_totals()
                invoice.issued_at = now
            elif target == 'paid':
                invoice.paid_at = now
            elif target == 'voided':
                invoice.voided_at = now
        except CRMError:
            db.session.rollback()
            raise
        invoice.status = target
        invoice.updated_at = now
        _commit(invoice, 'status change')
        logger.info('Invoice %s: %s -> %s', invoice.id, current, target)
        return invoice

    invoice = run_with_retry(_apply)
    artifacts.discard_artifacts(owner_id, invoice_id)
    artifacts.schedule_regeneration(owner_id, invoice.id)
    return invoice


def revert_to_draft(owner_id, invoice_id, *, override=False):
    """Administrative override: put an issued, paid or voided invoice back into draft."""
    def _apply():
        invoice = load_locked(owner_id, invoice_id)
        current = invoice.status
        if not override or current == 'draft':
            db.session.rollback()
            raise InvalidTransition(current, 'draft', _refusal(current, 'draft'))
        invoice.status = 'draft'
        invoice.issued_at = None
        invoice.paid_at = None
        invoice.voided_at = None
        invoice.updated_at = datetime.utcnow()
        _commit(invoice, 'revert')
        logger.warning('Invoice %s reverted from %s to draft by administrative override',
                       invoice.id, current)
        return invoice

    invoice = run_with_retry(_apply)
    artifacts.discard_artifacts(owner_id, invoice_id)
    artifacts.schedule_regeneration(owner_id, invoice.id)
    return invoice


def open_invoice_total(owner_id):
    """Sum of gross totals per currency over invoices that are still open."""
    sums = {}
    for invoice in Invoice.query.filter(Invoice.owner_id == owner_id,
                                        Invoice.status.in_(OPEN_STATUSES)):
        sums[invoice.currency] = sums.get(invoice.currency, Decimal('0')) + (invoice.gross_total or Decimal('0'))
    return sums
