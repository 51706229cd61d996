"""
Invoice counters, invoice number templates and customer numbers.

Counters live in the database (``NumberSequence`` and
``Settings.customer_number_counter``) and are advanced with single atomic
UPDATE statements, so concurrent requests never hand out the same value.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, Company, Invoice, NumberSequence, Settings
from errors import PersistenceError
from concurrency import run_with_retry

logger = logging.getLogger(__name__)

DEFAULT_INVOICE_TEMPLATE = 'RE-%YYYY%-%04C%'

# ── Number templates ─────────────────────────────────────────────

LITERAL = 'literal'
CUSTOMER_NUMBER = 'customer_number'
COUNTER = 'counter'
YEAR4 = 'year4'
YEAR2 = 'year2'


@dataclass(frozen=True)
class Token:
    kind: str
    text: str = ''
    width: int = 0  # zero-padding for COUNTER, 0 = unpadded


def _classify(body: str) -> Token | None:
    """Map the text between two percent signs to a token, or None."""
    if body == 'CN':
        return Token(CUSTOMER_NUMBER)
    if body == 'YYYY':
        return Token(YEAR4)
    if body == 'YY':
        return Token(YEAR2)
    if body == 'C':
        return Token(COUNTER)
    if body.endswith('C') and body[:-1].isdigit():
        digits = body[:-1]
        # %04C% pads to 4; %0C% and %4C% (no leading zero) are unpadded
        if digits.startswith('0') and len(digits) > 1:
            return Token(COUNTER, width=int(digits[1:]))
        return Token(COUNTER)
    return None


def tokenize_template(template: str) -> list[Token]:
    """Split a number template into literal and placeholder tokens.

    Unknown ``%...%`` sequences stay literal text.
    """
    tokens: list[Token] = []
    buf: list[str] = []
    i = 0
    while i < len(template):
        ch = template[i]
        if ch == '%':
            end = template.find('%', i + 1)
            token = _classify(template[i + 1:end]) if end != -1 else None
            if token is not None:
                if buf:
                    tokens.append(Token(LITERAL, ''.join(buf)))
                    buf = []
                tokens.append(token)
                i = end + 1
                continue
        buf.append(ch)
        i += 1
    if buf:
        tokens.append(Token(LITERAL, ''.join(buf)))
    return tokens


def format_invoice_number(template: str, customer_number: str | None, counter: int,
                          today: date | None = None) -> str:
    """Render an invoice number, e.g. ``RE-%YYYY%-%CN%-%04C%`` → ``RE-2025-12345-0007``."""
    today = today or date.today()
    parts = []
    for token in tokenize_template(template or ''):
        if token.kind == LITERAL:
            parts.append(token.text)
        elif token.kind == CUSTOMER_NUMBER:
            parts.append(customer_number or '')
        elif token.kind == YEAR4:
            parts.append(f'{today.year:04d}')
        elif token.kind == YEAR2:
            parts.append(f'{today.year % 100:02d}')
        elif token.kind == COUNTER:
            parts.append(str(counter).zfill(token.width) if token.width else str(counter))
    return ''.join(parts)


# ── Invoice counters ─────────────────────────────────────────────

def sequence_scope(company_id: int | None, use_local_counter: bool) -> str:
    if use_local_counter:
        return f'invoice:company:{company_id}'
    return 'invoice'


def _max_counter_query(owner_id: int, company_id: int | None, use_local_counter: bool):
    query = select(func.coalesce(func.max(Invoice.counter), 0)).where(Invoice.owner_id == owner_id)
    if use_local_counter:
        query = query.where(Invoice.company_id == company_id)
    return query


def peek_next_invoice_counter(owner_id: int, company_id: int | None, use_local_counter: bool) -> int:
    """Counter the next allocation would hand out. Does not reserve anything."""
    highest = db.session.execute(_max_counter_query(owner_id, company_id, use_local_counter)).scalar() or 0
    last = db.session.execute(
        select(NumberSequence.value).where(
            NumberSequence.owner_id == owner_id,
            NumberSequence.scope == sequence_scope(company_id, use_local_counter),
        )
    ).scalar()
    return max(highest, last or 0) + 1


def next_invoice_counter(owner_id: int, company_id: int | None, use_local_counter: bool) -> int:
    """Allocate the next invoice counter in the current transaction.

    Must be the first write of the transaction: on a lock conflict the
    transaction is rolled back and the allocation retried. The value is
    ``max(highest existing counter in scope, last handed out) + 1``.
    """
    scope = sequence_scope(company_id, use_local_counter)
    highest = _max_counter_query(owner_id, company_id, use_local_counter).scalar_subquery()
    row_filter = (NumberSequence.owner_id == owner_id, NumberSequence.scope == scope)
    bump = (
        update(NumberSequence)
        .where(*row_filter)
        .values(value=case((NumberSequence.value >= highest, NumberSequence.value), else_=highest) + 1)
        .execution_options(synchronize_session=False)
    )

    def _allocate():
        for _ in range(2):
            if db.session.execute(bump).rowcount:
                value = db.session.execute(select(NumberSequence.value).where(*row_filter)).scalar_one()
                logger.debug('Allocated counter %d (owner=%s scope=%s)', value, owner_id, scope)
                return value
            start = (db.session.execute(_max_counter_query(owner_id, company_id, use_local_counter)).scalar() or 0) + 1
            db.session.add(NumberSequence(owner_id=owner_id, scope=scope, value=start))
            try:
                db.session.flush()
            except IntegrityError:
                # another request created the row first; bump it instead
                db.session.rollback()
                continue
            logger.debug('Started sequence %s for owner %s at %d', scope, owner_id, start)
            return start
        raise PersistenceError(f'Could not allocate counter for scope {scope}')

    try:
        return run_with_retry(_allocate)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception('Counter allocation failed (owner=%s scope=%s)', owner_id, scope)
        raise PersistenceError(str(exc)) from exc


# ── Customer numbers ─────────────────────────────────────────────

def format_customer_number(prefix: str | None, width: int | None, counter: int) -> str:
    return f'{prefix or ""}{str(counter).zfill(width or 0)}'


def _settings_row(owner_id: int) -> Settings:
    settings = Settings.query.filter_by(owner_id=owner_id).first()
    if settings is None:
        settings = Settings(owner_id=owner_id)
        db.session.add(settings)
        db.session.flush()
    return settings


def _number_taken(owner_id: int, number: str, exclude_id: int | None = None) -> bool:
    query = Company.query.filter(Company.owner_id == owner_id, Company.customer_number == number)
    if exclude_id:
        query = query.filter(Company.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def check_customer_number(owner_id: int, desired: str | None,
                          exclude_id: int | None = None) -> tuple[bool, str]:
    """Is *desired* usable as customer number? Returns ``(ok, message)``."""
    desired = (desired or '').strip()
    if not desired:
        return False, 'Kundennummer darf nicht leer sein.'
    if _number_taken(owner_id, desired, exclude_id):
        return False, f'Kundennummer {desired} ist bereits vergeben.'
    return True, ''


def _numeric_part(prefix: str | None, number: str) -> int | None:
    rest = number
    if prefix and number.startswith(prefix):
        rest = number[len(prefix):]
    if not rest.isdigit():
        return None
    return int(rest)


def maybe_lift_customer_counter(owner_id: int, desired: str) -> bool:
    """Raise the customer counter to a manually chosen number.

    Only numbers of the configured shape (prefix + digits) count. The
    counter never moves backwards. Returns True when it was lifted.
    """
    settings = _settings_row(owner_id)
    n = _numeric_part(settings.customer_number_prefix, (desired or '').strip())
    if n is None:
        return False
    result = db.session.execute(
        update(Settings)
        .where(Settings.owner_id == owner_id, Settings.customer_number_counter < n)
        .values(customer_number_counter=n)
        .execution_options(synchronize_session=False)
    )
    db.session.expire(settings, ['customer_number_counter'])
    if result.rowcount:
        logger.info('Lifted customer number counter of owner %s to %d', owner_id, n)
    return bool(result.rowcount)


def next_customer_number(owner_id: int) -> str:
    """Allocate the next free customer number (prefix + zero-padded counter).

    Values already taken by manually numbered companies are skipped.
    """
    def _allocate():
        settings = _settings_row(owner_id)
        prefix, width = settings.customer_number_prefix, settings.customer_number_width
        while True:
            db.session.execute(
                update(Settings)
                .where(Settings.owner_id == owner_id)
                .values(customer_number_counter=Settings.customer_number_counter + 1)
                .execution_options(synchronize_session=False)
            )
            counter = db.session.execute(
                select(Settings.customer_number_counter).where(Settings.owner_id == owner_id)
            ).scalar_one()
            candidate = format_customer_number(prefix, width, counter)
            if not _number_taken(owner_id, candidate):
                db.session.expire(settings, ['customer_number_counter'])
                return candidate
            logger.debug('Customer number %s already in use, skipping', candidate)

    try:
        return run_with_retry(_allocate)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception('Customer number allocation failed (owner=%s)', owner_id)
        raise PersistenceError(str(exc)) from exc


def suggest_next_customer_number(owner_id: int) -> str:
    """Preview of the next automatic customer number. Nothing is reserved."""
    settings = Settings.query.filter_by(owner_id=owner_id).first()
    if settings is None:
        return format_customer_number('K', 5, 1)
    counter = (settings.customer_number_counter or 0) + 1
    candidate = format_customer_number(settings.customer_number_prefix,
                                       settings.customer_number_width, counter)
    while _number_taken(owner_id, candidate):
        counter += 1
        candidate = format_customer_number(settings.customer_number_prefix,
                                           settings.customer_number_width, counter)
    return candidate
