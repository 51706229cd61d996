"""Parallel allocation against a file-backed SQLite database."""
import threading

import pytest

from app import create_app
from models import db, Company, Invoice, User
from invoicing import create_invoice
from numbering import next_customer_number, next_invoice_counter

from conftest import make_config

THREADS = 6
PER_THREAD = 5


@pytest.fixture
def shared_app(tmp_path):
    app = create_app(make_config(tmp_path, SQLALCHEMY_ENGINE_OPTIONS={'connect_args': {'timeout': 30}}))
    with app.app_context():
        owner = User.query.filter_by(username='admin').first()
        company = Company(owner_id=owner.id, name='Parallel KG', customer_number='P1')
        db.session.add(company)
        db.session.commit()
        ids = owner.id, company.id
    yield app, ids
    with app.app_context():
        db.drop_all()


def _run_threads(target):
    errors = []

    def wrapper():
        try:
            target()
        except Exception as exc:  # reported to the test below
            errors.append(exc)

    threads = [threading.Thread(target=wrapper) for _ in range(THREADS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


def test_parallel_invoice_counters_are_gapless(shared_app):
    app, (owner_id, company_id) = shared_app
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(PER_THREAD):
            with app.app_context():
                value = next_invoice_counter(owner_id, company_id, False)
                db.session.commit()
                db.session.remove()
            with lock:
                results.append(value)

    _run_threads(worker)
    assert sorted(results) == list(range(1, THREADS * PER_THREAD + 1))


def test_parallel_customer_numbers_are_unique(shared_app):
    app, (owner_id, _) = shared_app
    results = []
    lock = threading.Lock()

    def worker():
        for _ in range(PER_THREAD):
            with app.app_context():
                number = next_customer_number(owner_id)
                db.session.commit()
                db.session.remove()
            with lock:
                results.append(number)

    _run_threads(worker)
    assert len(set(results)) == THREADS * PER_THREAD


def test_parallel_invoice_creation_gives_unique_numbers(shared_app):
    app, (owner_id, company_id) = shared_app

    def worker():
        for _ in range(2):
            with app.app_context():
                create_invoice(owner_id, company_id, {
                    'positions': [{'text': 'Miete', 'quantity': '1', 'net_price': '5', 'tax_rate': '19'}],
                })
                db.session.remove()

    _run_threads(worker)
    with app.app_context():
        invoices = Invoice.query.filter_by(owner_id=owner_id).all()
        assert len(invoices) == THREADS * 2
        assert len({inv.number for inv in invoices}) == THREADS * 2
        assert sorted(inv.counter for inv in invoices) == list(range(1, THREADS * 2 + 1))
