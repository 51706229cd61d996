import pytest

from app import create_app
from models import db as _db, User, Settings, Company
from invoicing import create_invoice

ADMIN_PASSWORD = 'admin-pw'


def make_config(tmp_path, **overrides):
    config = {
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{tmp_path / "test.db"}',
        'ARTIFACT_DIR': str(tmp_path / 'artifacts'),
        'LETTERHEAD_DIR': str(tmp_path / 'letterheads'),
        'ARTIFACT_REGENERATION': 'sync',
        'EINVOICE_CHECK_XSD': False,
        'ADMIN_USERNAME': 'admin',
        'ADMIN_PASSWORD': ADMIN_PASSWORD,
    }
    config.update(overrides)
    return config


@pytest.fixture
def app(tmp_path):
    app = create_app(make_config(tmp_path))
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db_session(app):
    return _db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def owner(app):
    """The default admin tenant with complete seller data"""
    user = User.query.filter_by(username='admin').first()
    settings = Settings.query.filter_by(owner_id=user.id).first()
    settings.company_name = 'Muster GmbH'
    settings.invoice_contact = 'Erika Muster'
    settings.invoice_email = 'rechnung@muster.example'
    settings.address1 = 'Hauptstraße 1'
    settings.zip = '10115'
    settings.city = 'Berlin'
    settings.country_code = 'DE'
    settings.vat_id = 'DE123456789'
    settings.tax_number = '12/345/67890'
    settings.bank_name = 'Testbank'
    settings.bank_iban = 'DE02 1203 0000 0000 2020 51'
    settings.bank_bic = 'BYLADEM1001'
    _db.session.commit()
    return user


@pytest.fixture
def other_owner(app):
    user = User(username='other', display_name='Andere Firma')
    user.set_password('other-pw')
    _db.session.add(user)
    _db.session.flush()
    _db.session.add(Settings(owner_id=user.id, company_name='Andere Firma'))
    _db.session.commit()
    return user


@pytest.fixture
def company(owner):
    company = Company(
        owner_id=owner.id,
        name='Kunde AG',
        customer_number='K00001',
        address1='Ring 5',
        zip='80331',
        city='München',
        country='DE',
        invoice_email='buchhaltung@kunde.example',
    )
    _db.session.add(company)
    _db.session.commit()
    return company


@pytest.fixture
def draft(owner, company):
    """Draft with 3 × 10.00 at 19 %"""
    return create_invoice(owner.id, company.id, {
        'positions': [{'text': 'Beratung', 'quantity': '3', 'net_price': '10.00', 'tax_rate': '19'}],
    })


@pytest.fixture
def logged_in_client(client, owner):
    response = client.post('/login', json={'username': 'admin', 'password': ADMIN_PASSWORD})
    assert response.status_code == 200
    return client
