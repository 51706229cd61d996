from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from models import db, Company, ContactInfo, Person, Settings, Tag
from errors import NotFound, StateConflict, ValidationError
from customers import (add_note, delete_company, delete_note, delete_person, depart_person, list_companies,
                       reactivate_person, save_company, save_person, serialize_company)


def test_new_company_gets_next_number(owner):
    first = save_company(owner.id, {'name': 'Alpha GmbH'})
    second = save_company(owner.id, {'name': 'Beta GmbH'})
    assert first.customer_number == 'K00001'
    assert second.customer_number == 'K00002'


def test_manual_number_lifts_counter(owner):
    save_company(owner.id, {'name': 'Manuell', 'customer_number': 'K00100'})
    assert save_company(owner.id, {'name': 'Auto'}).customer_number == 'K00101'


def test_manual_number_of_other_shape_keeps_counter(owner):
    save_company(owner.id, {'name': 'Sonder', 'customer_number': 'SONDER-1'})
    assert save_company(owner.id, {'name': 'Auto'}).customer_number == 'K00001'


def test_duplicate_number_is_rejected_before_lifting(owner, company):
    with pytest.raises(ValidationError) as excinfo:
        save_company(owner.id, {'name': 'Doppelt', 'customer_number': 'K00001'})
    assert excinfo.value.field == 'customer_number'
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    assert settings.customer_number_counter == 0


def test_edit_keeps_number_unless_changed(owner, company):
    save_company(owner.id, {'name': 'Kunde AG & Co.'}, company_id=company.id)
    assert company.customer_number == 'K00001'
    save_company(owner.id, {'customer_number': 'K00007'}, company_id=company.id)
    assert company.customer_number == 'K00007'
    assert save_company(owner.id, {'name': 'Neu'}).customer_number == 'K00008'


def test_name_is_required(owner):
    with pytest.raises(ValidationError):
        save_company(owner.id, {'name': '  '})
    # the failed attempt did not use up a number
    assert save_company(owner.id, {'name': 'Gamma'}).customer_number == 'K00001'


def test_tags_keep_replace_and_clear(owner):
    company = save_company(owner.id, {'name': 'Tagged', 'tags': 'vip, nord'})
    assert sorted(t.name for t in company.tags) == ['nord', 'vip']
    save_company(owner.id, {'name': 'Tagged'}, company_id=company.id)
    assert len(company.tags) == 2
    save_company(owner.id, {'tags': ['vip', 'süd']}, company_id=company.id)
    assert sorted(t.name for t in company.tags) == ['süd', 'vip']
    save_company(owner.id, {'tags': []}, company_id=company.id)
    assert company.tags == []
    # tags are shared per tenant, not duplicated
    assert Tag.query.filter_by(owner_id=owner.id, name='vip').count() == 1


def test_contact_infos_are_replaced(owner, company):
    save_company(owner.id, {'contact_infos': [
        {'kind': 'phone', 'label': 'Zentrale', 'value': '+49 30 123'},
        {'kind': 'email', 'value': 'info@kunde.example'},
        {'kind': 'web', 'value': ''},
    ]}, company_id=company.id)
    assert [c.kind for c in company.contact_infos] == ['phone', 'email']
    with pytest.raises(ValidationError):
        save_company(owner.id, {'contact_infos': [{'kind': 'brieftaube', 'value': 'x'}]}, company_id=company.id)


def test_notes(owner, company):
    note = add_note(owner.id, company.id, {'title': 'Anruf', 'text': 'Rückruf am Montag'})
    assert serialize_company(company, detail=True)['notes'][0]['title'] == 'Anruf'
    with pytest.raises(ValidationError):
        add_note(owner.id, company.id, {})
    delete_note(owner.id, company.id, note.id)
    with pytest.raises(NotFound):
        delete_note(owner.id, company.id, note.id)


def test_company_with_invoices_cannot_be_deleted(owner, company, draft):
    with pytest.raises(StateConflict):
        delete_company(owner.id, company.id)


def test_delete_company(owner, company):
    company_id = company.id
    add_note(owner.id, company_id, {'text': 'weg damit'})
    delete_company(owner.id, company_id)
    assert db.session.get(Company, company_id) is None


def test_other_tenant_sees_nothing(owner, other_owner, company):
    assert list_companies(other_owner.id) == []
    with pytest.raises(NotFound):
        save_company(other_owner.id, {'name': 'Fremd'}, company_id=company.id)


def test_list_by_tag_and_search(owner):
    save_company(owner.id, {'name': 'Nordlicht', 'tags': 'nord'})
    save_company(owner.id, {'name': 'Südwind'})
    assert [c.name for c in list_companies(owner.id, tag='nord')] == ['Nordlicht']
    assert [c.name for c in list_companies(owner.id, search='wind')] == ['Südwind']


def test_tax_type_is_checked(owner, company):
    save_company(owner.id, {'invoice_tax_type': 'ae'}, company_id=company.id)
    assert company.invoice_tax_type == 'AE'
    with pytest.raises(ValidationError) as excinfo:
        save_company(owner.id, {'invoice_tax_type': 'XX'}, company_id=company.id)
    assert excinfo.value.field == 'invoice_tax_type'
    db.session.expire_all()
    assert db.session.get(Company, company.id).invoice_tax_type == 'AE'


def test_person_contact_infos_and_tags(owner, company):
    person = save_person(owner.id, company.id, {
        'name': 'Erika Beispiel',
        'email': 'erika@kunde.example',
        'contact_infos': [{'kind': 'mobile', 'value': '+49 170 1'}],
        'tags': ['vip'],
    })
    assert person.company_id == company.id
    assert [c.kind for c in person.contact_infos] == ['mobile']
    save_person(owner.id, company.id, {'position': 'Einkauf'}, person_id=person.id)
    assert [t.name for t in person.tags] == ['vip']
    save_person(owner.id, company.id, {'tags': []}, person_id=person.id)
    assert person.tags == []
    # company and person share the tenant's tags
    save_company(owner.id, {'tags': ['vip']}, company_id=company.id)
    assert Tag.query.filter_by(owner_id=owner.id, name='vip').count() == 1


def test_person_needs_a_name(owner, company):
    with pytest.raises(ValidationError) as excinfo:
        save_person(owner.id, company.id, {'position': 'Chef'})
    assert excinfo.value.field == 'name'
    assert Person.query.count() == 0


def test_depart_leaves_a_note(owner, company):
    person = save_person(owner.id, company.id, {'name': 'Hans Weg'})
    depart_person(owner.id, company.id, person.id, now=datetime(2025, 6, 30, 12, 0))
    assert person.has_departed
    [note] = company.notes
    assert note.title == 'Mitarbeiter ausgeschieden'
    assert note.text == 'Hans Weg ist am 30.06.2025 ausgeschieden.'
    with pytest.raises(StateConflict):
        depart_person(owner.id, company.id, person.id)
    reactivate_person(owner.id, company.id, person.id)
    assert not person.has_departed


def test_person_removed_with_company(owner, company):
    person = save_person(owner.id, company.id, {
        'name': 'Weg', 'contact_infos': [{'kind': 'phone', 'value': '1'}],
    })
    person_id = person.id
    delete_company(owner.id, company.id)
    assert db.session.get(Person, person_id) is None
    assert ContactInfo.query.count() == 0


def test_delete_person(owner, company, other_owner):
    person = save_person(owner.id, company.id, {'name': 'Kurz'})
    with pytest.raises(NotFound):
        delete_person(other_owner.id, company.id, person.id)
    delete_person(owner.id, company.id, person.id)
    assert serialize_company(company, detail=True)['persons'] == []


def test_locked_commit_is_retried_with_the_same_number(owner, monkeypatch):
    calls = []
    real_commit = db.session.commit

    def flaky_commit():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError('COMMIT', {}, Exception('database is locked'))
        return real_commit()

    monkeypatch.setattr(db.session, 'commit', flaky_commit)
    monkeypatch.setattr('concurrency.time.sleep', lambda seconds: None)
    company = save_company(owner.id, {'name': 'Zweiter Anlauf'})
    # the first attempt was rolled back together with its counter update
    assert company.customer_number == 'K00001'
    assert len(calls) == 2
