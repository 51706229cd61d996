from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy.types import TypeDecorator
from datetime import datetime
from decimal import Decimal

from totals import compute_totals

db = SQLAlchemy()


class DecimalType(TypeDecorator):
    """Exact decimal stored as a plain fixed-point string.

    Keeps values exact on SQLite, which has no real NUMERIC type.
    """
    impl = db.String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), 'f')

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class User(UserMixin, db.Model):
    """Account holder; every business row is owned by one user (tenant)."""
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    display_name = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    is_admin = db.Column(db.Boolean, default=False)
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    settings = db.relationship('Settings', back_populates='owner', uselist=False,
                               cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def is_active(self):
        return self.active


class Settings(db.Model):
    """Per-tenant seller data, numbering configuration and bank details."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, unique=True)

    company_name = db.Column(db.String(200), default='')
    invoice_contact = db.Column(db.String(200), default='')
    invoice_email = db.Column(db.String(200), default='')
    address1 = db.Column(db.String(200), default='')
    address2 = db.Column(db.String(200), default='')
    zip = db.Column(db.String(20), default='')
    city = db.Column(db.String(100), default='')
    country_code = db.Column(db.String(2), default='DE')
    vat_id = db.Column(db.String(50), default='')
    tax_number = db.Column(db.String(50), default='')

    bank_iban = db.Column(db.String(50), default='')
    bank_name = db.Column(db.String(200), default='')
    bank_bic = db.Column(db.String(20), default='')

    invoice_number_template = db.Column(db.String(100), default='RE-%YYYY%-%04C%')
    use_local_counter = db.Column(db.Boolean, default=False)
    payment_terms_days = db.Column(db.Integer, default=14)

    customer_number_prefix = db.Column(db.String(20), default='K')
    customer_number_width = db.Column(db.Integer, default=5)
    # Last allocated customer number; the next automatic one is counter + 1
    customer_number_counter = db.Column(db.Integer, default=0, nullable=False)

    owner = db.relationship('User', back_populates='settings')

    @property
    def address_lines(self):
        return [line for line in (self.address1, self.address2) if line]


class NumberSequence(db.Model):
    """Last handed-out counter per (tenant, scope). The row is the allocation lock."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    scope = db.Column(db.String(100), nullable=False)
    value = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (db.UniqueConstraint('owner_id', 'scope', name='uq_sequence_owner_scope'),)


company_tags = db.Table('company_tag',
    db.Column('company_id', db.Integer, db.ForeignKey('company.id', ondelete='CASCADE'), primary_key=True),
    db.Column('tag_id', db.Integer, db.ForeignKey('tag.id', ondelete='CASCADE'), primary_key=True)
)

person_tags = db.Table('person_tag',
    db.Column('person_id', db.Integer, db.ForeignKey('person.id', ondelete='CASCADE'), primary_key=True),
    db.Column('tag_id', db.Integer, db.ForeignKey('tag.id', ondelete='CASCADE'), primary_key=True)
)


class Tag(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)

    __table_args__ = (db.UniqueConstraint('owner_id', 'name', name='uq_tag_owner_name'),)


class Company(db.Model):
    """Customer company with invoice defaults"""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    customer_number = db.Column(db.String(50), nullable=False)

    address1 = db.Column(db.String(200), default='')
    address2 = db.Column(db.String(200), default='')
    zip = db.Column(db.String(20), default='')
    city = db.Column(db.String(100), default='')
    country = db.Column(db.String(2), default='DE')
    vat_id = db.Column(db.String(50), default='')
    background = db.Column(db.Text, default='')

    contact_invoice = db.Column(db.String(200), default='')
    invoice_email = db.Column(db.String(200), default='')
    supplier_number = db.Column(db.String(50), default='')
    default_tax_rate = db.Column(DecimalType, default=Decimal('19'))
    invoice_currency = db.Column(db.String(3), default='EUR')
    invoice_tax_type = db.Column(db.String(3), default='S')
    invoice_opening = db.Column(db.Text, default='')
    invoice_footer = db.Column(db.Text, default='')
    invoice_exemption_reason = db.Column(db.Text, default='')

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    contact_infos = db.relationship('ContactInfo', back_populates='company',
                                    cascade='all, delete-orphan', order_by='ContactInfo.id')
    notes = db.relationship('Note', back_populates='company',
                            cascade='all, delete-orphan', order_by='Note.created_at.desc()')
    persons = db.relationship('Person', back_populates='company',
                              cascade='all, delete-orphan', order_by='Person.name')
    tags = db.relationship('Tag', secondary=company_tags, lazy='selectin', order_by='Tag.name')
    invoices = db.relationship('Invoice', back_populates='company', lazy='dynamic')

    __table_args__ = (db.UniqueConstraint('owner_id', 'customer_number', name='uq_company_customer_number'),)

    @property
    def address_lines(self):
        return [line for line in (self.address1, self.address2) if line]

    @property
    def recipient_lines(self):
        return self.address_block(self.contact_invoice)

    def address_block(self, contact=None):
        """Address block as printed on documents."""
        lines = [self.name]
        if contact:
            lines.append(contact)
        lines.extend(self.address_lines)
        city_line = ' '.join(part for part in (self.zip, self.city) if part)
        if city_line:
            lines.append(city_line)
        if self.country and self.country != 'DE':
            lines.append(self.country)
        return lines


class Person(db.Model):
    """Contact person at a company"""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    position = db.Column(db.String(200), default='')
    email = db.Column(db.String(200), default='')
    departed_at = db.Column(db.DateTime, nullable=True)  # None = still at the company
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    company = db.relationship('Company', back_populates='persons')
    contact_infos = db.relationship('ContactInfo', back_populates='person',
                                    cascade='all, delete-orphan', order_by='ContactInfo.id')
    tags = db.relationship('Tag', secondary=person_tags, lazy='selectin', order_by='Tag.name')

    @property
    def has_departed(self):
        return self.departed_at is not None


class ContactInfo(db.Model):
    """Phone, mail or web address of a company or a person"""
    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=True)
    person_id = db.Column(db.Integer, db.ForeignKey('person.id'), nullable=True)
    kind = db.Column(db.String(20), nullable=False, default='phone')
    label = db.Column(db.String(100), default='')
    value = db.Column(db.String(300), nullable=False)

    company = db.relationship('Company', back_populates='contact_infos')
    person = db.relationship('Person', back_populates='contact_infos')


class Note(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False)
    title = db.Column(db.String(200), default='')
    text = db.Column(db.Text, default='')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    company = db.relationship('Company', back_populates='notes')


INVOICE_STATUSES = ('draft', 'issued', 'paid', 'voided')

# UNTDID 5305 VAT category codes
TAX_TYPES = ('S', 'Z', 'E', 'AE', 'K', 'G', 'O', 'L', 'M')

STATUS_LABELS = {
    'draft': 'Entwurf',
    'issued': 'Gestellt',
    'paid': 'Bezahlt',
    'voided': 'Verworfen',
}


class Invoice(db.Model):
    """Invoice header. Positions and totals are frozen once issued."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey('letterhead_template.id', ondelete='SET NULL'),
                            nullable=True)

    number = db.Column(db.String(100), nullable=False)
    counter = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='draft')
    currency = db.Column(db.String(3), nullable=False, default='EUR')

    date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    occurrence_date = db.Column(db.Date, nullable=True)

    tax_type = db.Column(db.String(3), default='S')
    tax_number = db.Column(db.String(50), default='')
    exemption_reason = db.Column(db.Text, default='')
    opening = db.Column(db.Text, default='')
    footer = db.Column(db.Text, default='')
    order_number = db.Column(db.String(100), default='')
    supplier_number = db.Column(db.String(100), default='')
    buyer_reference = db.Column(db.String(100), default='')
    contact_invoice = db.Column(db.String(200), default='')

    net_total = db.Column(DecimalType, nullable=False, default=Decimal('0'))
    gross_total = db.Column(DecimalType, nullable=False, default=Decimal('0'))

    issued_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    voided_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = db.relationship('Company', back_populates='invoices')
    template = db.relationship('LetterheadTemplate')
    positions = db.relationship('InvoicePosition', back_populates='invoice',
                                cascade='all, delete-orphan',
                                order_by='InvoicePosition.position')

    __table_args__ = (
        db.UniqueConstraint('owner_id', 'number', name='uq_invoice_owner_number'),
        db.CheckConstraint("status IN ('draft', 'issued', 'paid', 'voided')", name='ck_invoice_status'),
    )

    @property
    def is_draft(self):
        return self.status == 'draft'

    @property
    def status_label(self):
        return STATUS_LABELS.get(self.status, self.status)

    @property
    def tax_amounts(self):
        """Per-rate breakdown, always derived from the current positions."""
        return compute_totals(self.positions).tax_amounts

    def recompute_totals(self):
        """Recalculate net and gross totals from the positions and store them."""
        totals = compute_totals(self.positions)
        self.net_total = totals.net_total
        self.gross_total = totals.gross_total
        return totals


class InvoicePosition(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    unit_code = db.Column(db.String(10), default='C62')  # UN/ECE Rec 20, C62 = piece
    text = db.Column(db.Text, default='')
    quantity = db.Column(DecimalType, nullable=False, default=Decimal('1'))
    tax_rate = db.Column(DecimalType, nullable=False, default=Decimal('0'))
    net_price = db.Column(DecimalType, nullable=False, default=Decimal('0'))
    gross_price = db.Column(DecimalType, nullable=False, default=Decimal('0'))
    line_total = db.Column(DecimalType, nullable=False, default=Decimal('0'))

    invoice = db.relationship('Invoice', back_populates='positions')


REGION_KINDS = ('addressee', 'invoice_info', 'main_area')


class LetterheadTemplate(db.Model):
    """Backdrop PDF plus the rectangles content is placed into"""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    page_width_cm = db.Column(DecimalType, default=Decimal('21'))
    page_height_cm = db.Column(DecimalType, default=Decimal('29.7'))
    pdf_filename = db.Column(db.String(300), nullable=True)
    font_normal = db.Column(db.String(300), nullable=True)
    font_bold = db.Column(db.String(300), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    regions = db.relationship('PlacedRegion', back_populates='template',
                              cascade='all, delete-orphan', order_by='PlacedRegion.kind')

    def region(self, kind):
        for region in self.regions:
            if region.kind == kind:
                return region
        return None


class PlacedRegion(db.Model):
    """One named rectangle on a letterhead, in centimetres from the top-left corner."""
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey('letterhead_template.id'), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    x_cm = db.Column(DecimalType, default=Decimal('0'))
    y_cm = db.Column(DecimalType, default=Decimal('0'))
    width_cm = db.Column(DecimalType, default=Decimal('0'))
    height_cm = db.Column(DecimalType, default=Decimal('0'))
    h_align = db.Column(db.String(10), default='left')
    font_size_pt = db.Column(DecimalType, default=Decimal('10'))
    line_spacing = db.Column(DecimalType, default=Decimal('1.2'))

    # Content area on follow-up pages
    has_page2 = db.Column(db.Boolean, default=False)
    x2_cm = db.Column(DecimalType, nullable=True)
    y2_cm = db.Column(DecimalType, nullable=True)
    width2_cm = db.Column(DecimalType, nullable=True)
    height2_cm = db.Column(DecimalType, nullable=True)

    template = db.relationship('LetterheadTemplate', back_populates='regions')

    __table_args__ = (db.UniqueConstraint('template_id', 'kind', name='uq_region_template_kind'),)
