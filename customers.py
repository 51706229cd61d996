"""
Companies (customers) with their contact persons, contact infos, notes and tags.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from models import db, Company, ContactInfo, Invoice, Note, Person, Tag, TAX_TYPES
from errors import CRMError, DuplicateNumber, NotFound, PersistenceError, StateConflict, ValidationError
from helpers import fmt_de_date, get_owned_or_404
from totals import ZERO, fmt_decimal, to_decimal
from numbering import check_customer_number, maybe_lift_customer_counter, next_customer_number
from concurrency import run_with_retry

logger = logging.getLogger(__name__)

CONTACT_KINDS = ('phone', 'mobile', 'fax', 'email', 'web', 'other')

_TEXT_FIELDS = ('name', 'address1', 'address2', 'zip', 'city', 'vat_id', 'background',
                'contact_invoice', 'invoice_email', 'supplier_number',
                'invoice_opening', 'invoice_footer', 'invoice_exemption_reason')


def _commit(action, company=None):
    try:
        db.session.commit()
    except OperationalError:
        # lock timeouts go back to run_with_retry
        raise
    except IntegrityError as exc:
        db.session.rollback()
        number = company.customer_number if company is not None else '?'
        logger.warning('Customer number %s collided on %s', number, action)
        raise DuplicateNumber(f'Kundennummer {number} ist bereits vergeben.',
                              field='customer_number') from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception('Could not store %s', action)
        raise PersistenceError(str(exc)) from exc


def _apply_fields(company, data):
    for field in _TEXT_FIELDS:
        if field in data:
            setattr(company, field, (data.get(field) or '').strip())
    if 'country' in data:
        country = (data.get('country') or '').strip().upper()
        if country and len(country) != 2:
            raise ValidationError('Das Land muss als zweistelliger ISO-Code angegeben werden.', field='country')
        company.country = country
    if 'invoice_currency' in data:
        company.invoice_currency = (data.get('invoice_currency') or 'EUR').strip().upper()
    if 'invoice_tax_type' in data:
        tax_type = (data.get('invoice_tax_type') or 'S').strip().upper()
        if tax_type not in TAX_TYPES:
            raise ValidationError(f'Unbekannte Steuerart "{tax_type}".', field='invoice_tax_type')
        company.invoice_tax_type = tax_type
    if 'default_tax_rate' in data:
        company.default_tax_rate = to_decimal(data.get('default_tax_rate'), 'default_tax_rate', default=ZERO)
    if not (company.name or '').strip():
        raise ValidationError('Der Firmenname darf nicht leer sein.', field='name')


def _replace_contact_infos(parent, raw_infos):
    infos = []
    for index, raw in enumerate(raw_infos or []):
        value = (raw.get('value') or '').strip()
        if not value:
            continue
        kind = (raw.get('kind') or 'other').strip()
        if kind not in CONTACT_KINDS:
            raise ValidationError(f'Unbekannte Kontaktart "{kind}".', field=f'contact_infos[{index}].kind')
        infos.append(ContactInfo(kind=kind, label=(raw.get('label') or '').strip(), value=value))
    parent.contact_infos = infos


def _replace_tags(parent, names, owner_id):
    wanted = []
    for name in names:
        name = (name or '').strip()
        if name and name not in wanted:
            wanted.append(name)
    existing = {t.name: t for t in Tag.query.filter(Tag.owner_id == owner_id, Tag.name.in_(wanted))} if wanted else {}
    tags = []
    for name in wanted:
        tag = existing.get(name)
        if tag is None:
            tag = Tag(owner_id=owner_id, name=name)
            db.session.add(tag)
        tags.append(tag)
    parent.tags = tags


def _split_tags(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value.split(',')
    return list(value)


def save_company(owner_id, data, company_id=None):
    """Create or update a company.

    New companies get the next automatic customer number unless one is
    given. A manually chosen number is checked for collisions first and
    may lift the counter afterwards. On edit the number only changes when
    a different one is supplied. Tags: absent keeps them, an empty list
    removes all, a list replaces them.
    """
    def _save():
        try:
            company = _save_company(owner_id, data, company_id)
        except CRMError:
            db.session.rollback()
            raise
        _commit('company', company)
        return company

    company = run_with_retry(_save)
    logger.info('%s company %s (%s)', 'Created' if company_id is None else 'Updated',
                company.id, company.customer_number)
    return company


def _save_company(owner_id, data, company_id):
    desired = (data.get('customer_number') or '').strip()

    if company_id is None:
        company = Company(owner_id=owner_id)
        if desired:
            ok, message = check_customer_number(owner_id, desired)
            if not ok:
                raise ValidationError(message, field='customer_number')
            maybe_lift_customer_counter(owner_id, desired)
            company.customer_number = desired
        else:
            company.customer_number = next_customer_number(owner_id)
        db.session.add(company)
    else:
        company = get_owned_or_404(Company, company_id, owner_id)
        if desired and desired != company.customer_number:
            ok, message = check_customer_number(owner_id, desired, exclude_id=company.id)
            if not ok:
                raise ValidationError(message, field='customer_number')
            maybe_lift_customer_counter(owner_id, desired)
            company.customer_number = desired

    _apply_fields(company, data)
    if 'contact_infos' in data:
        _replace_contact_infos(company, data.get('contact_infos'))
    tags = _split_tags(data.get('tags'))
    if tags is not None:
        _replace_tags(company, tags, owner_id)
    return company


def delete_company(owner_id, company_id):
    """Delete a company. Refused while invoices reference it."""
    def _delete():
        company = get_owned_or_404(Company, company_id, owner_id)
        if db.session.query(Invoice.query.filter_by(company_id=company.id).exists()).scalar():
            raise StateConflict(f'Firma {company.name} hat Rechnungen und kann nicht gelöscht werden.')
        db.session.delete(company)
        _commit('company deletion')

    run_with_retry(_delete)
    logger.info('Deleted company %s', company_id)


def add_note(owner_id, company_id, data):
    title = (data.get('title') or '').strip()
    text = (data.get('text') or '').strip()
    if not title and not text:
        raise ValidationError('Eine Notiz braucht einen Titel oder Text.', field='text')

    def _add():
        company = get_owned_or_404(Company, company_id, owner_id)
        note = Note(owner_id=owner_id, company=company, title=title, text=text)
        db.session.add(note)
        _commit('note')
        return note

    return run_with_retry(_add)


def delete_note(owner_id, company_id, note_id):
    def _delete():
        note = Note.query.filter_by(id=note_id, company_id=company_id, owner_id=owner_id).first()
        if note is None:
            raise NotFound(f'Notiz {note_id} nicht gefunden.')
        db.session.delete(note)
        _commit('note deletion')

    run_with_retry(_delete)


def load_person(owner_id, company_id, person_id):
    person = Person.query.filter_by(id=person_id, company_id=company_id, owner_id=owner_id).first()
    if person is None:
        raise NotFound(f'Person {person_id} nicht gefunden.')
    return person


def save_person(owner_id, company_id, data, person_id=None):
    """Create or update a contact person of a company.

    Contact infos are replaced when given. Tags follow the company rules:
    absent keeps them, an empty list removes all, a list replaces them.
    """
    def _save():
        try:
            if person_id is None:
                company = get_owned_or_404(Company, company_id, owner_id)
                person = Person(owner_id=owner_id, company=company)
                db.session.add(person)
            else:
                person = load_person(owner_id, company_id, person_id)
            for field in ('name', 'position', 'email'):
                if field in data:
                    setattr(person, field, (data.get(field) or '').strip())
            if not (person.name or '').strip():
                raise ValidationError('Der Name darf nicht leer sein.', field='name')
            if 'contact_infos' in data:
                _replace_contact_infos(person, data.get('contact_infos'))
            tags = _split_tags(data.get('tags'))
            if tags is not None:
                _replace_tags(person, tags, owner_id)
        except CRMError:
            db.session.rollback()
            raise
        _commit('person')
        return person

    person = run_with_retry(_save)
    logger.info('%s person %s of company %s', 'Created' if person_id is None else 'Updated',
                person.id, company_id)
    return person


def delete_person(owner_id, company_id, person_id):
    def _delete():
        db.session.delete(load_person(owner_id, company_id, person_id))
        _commit('person deletion')

    run_with_retry(_delete)
    logger.info('Deleted person %s of company %s', person_id, company_id)


def depart_person(owner_id, company_id, person_id, now=None):
    """Mark a person as having left the company and leave a note about it."""
    now = now or datetime.utcnow()

    def _depart():
        person = load_person(owner_id, company_id, person_id)
        if person.has_departed:
            raise StateConflict(f'{person.name} ist bereits ausgeschieden.')
        person.departed_at = now
        db.session.add(Note(owner_id=owner_id, company_id=company_id,
                            title='Mitarbeiter ausgeschieden',
                            text=f'{person.name} ist am {fmt_de_date(now)} ausgeschieden.'))
        _commit('person departure')
        return person

    person = run_with_retry(_depart)
    logger.info('Person %s of company %s departed', person.id, company_id)
    return person


def reactivate_person(owner_id, company_id, person_id):
    def _reactivate():
        person = load_person(owner_id, company_id, person_id)
        person.departed_at = None
        _commit('person reactivation')
        return person

    return run_with_retry(_reactivate)


def list_companies(owner_id, tag=None, search=None):
    query = Company.query.filter(Company.owner_id == owner_id)
    if tag:
        query = query.filter(Company.tags.any(Tag.name == tag))
    if search:
        pattern = f'%{search.strip()}%'
        query = query.filter(db.or_(Company.name.ilike(pattern), Company.customer_number.ilike(pattern)))
    return query.order_by(Company.name).all()


def _serialize_contact_infos(parent):
    return [{'id': c.id, 'kind': c.kind, 'label': c.label, 'value': c.value} for c in parent.contact_infos]


def serialize_person(person):
    return {
        'id': person.id,
        'company_id': person.company_id,
        'name': person.name,
        'position': person.position,
        'email': person.email,
        'departed_at': fmt_de_date(person.departed_at),
        'contact_infos': _serialize_contact_infos(person),
        'tags': [t.name for t in person.tags],
    }


def serialize_company(company, *, detail=False):
    data = {
        'id': company.id,
        'name': company.name,
        'customer_number': company.customer_number,
        'city': company.city,
        'country': company.country,
        'tags': [t.name for t in company.tags],
    }
    if detail:
        data.update({field: getattr(company, field) for field in _TEXT_FIELDS})
        data.update({
            'country': company.country,
            'invoice_currency': company.invoice_currency,
            'invoice_tax_type': company.invoice_tax_type,
            'default_tax_rate': fmt_decimal(company.default_tax_rate),
            'contact_infos': _serialize_contact_infos(company),
            'persons': [serialize_person(p) for p in company.persons],
            'notes': [
                {'id': n.id, 'title': n.title, 'text': n.text, 'created_at': fmt_de_date(n.created_at)}
                for n in company.notes
            ],
        })
    return data
