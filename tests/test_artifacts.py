import os
from decimal import Decimal

import pytest
from pypdf import PdfReader
from io import BytesIO
from reportlab.pdfgen import canvas as pdf_canvas

from models import db, LetterheadTemplate, PlacedRegion, Settings
from errors import RenderingError
from generators.einvoice.embed import extract_xml_from_pdf
from helpers import get_owner_dir
from lifecycle import change_status
import artifacts


def _write_backdrop(owner_id, name='briefbogen.pdf'):
    path = os.path.join(get_owner_dir('LETTERHEAD_DIR', owner_id), name)
    c = pdf_canvas.Canvas(path, pagesize=(595.27, 841.89))
    c.drawString(50, 800, 'BRIEFKOPF')
    c.showPage()
    c.save()
    return name


def _letterhead(owner_id, pdf_filename=None, main_width='17'):
    template = LetterheadTemplate(owner_id=owner_id, name='Briefbogen', pdf_filename=pdf_filename,
                                  page_width_cm=Decimal('21'), page_height_cm=Decimal('29.7'))
    template.regions = [
        PlacedRegion(owner_id=owner_id, kind='addressee', x_cm=Decimal('2'), y_cm=Decimal('5'),
                     width_cm=Decimal('8.5'), height_cm=Decimal('4')),
        PlacedRegion(owner_id=owner_id, kind='invoice_info', x_cm=Decimal('12'), y_cm=Decimal('5'),
                     width_cm=Decimal('7'), height_cm=Decimal('4'), h_align='right'),
        PlacedRegion(owner_id=owner_id, kind='main_area', x_cm=Decimal('2'), y_cm=Decimal('10'),
                     width_cm=Decimal(main_width), height_cm=Decimal('16'),
                     has_page2=True, x2_cm=Decimal('2'), y2_cm=Decimal('3'),
                     width2_cm=Decimal('17'), height2_cm=Decimal('23')),
    ]
    db.session.add(template)
    db.session.commit()
    return template


def test_draft_xml_is_regenerated_identically(owner, draft):
    first = artifacts.get_invoice_xml(draft)
    second = artifacts.get_invoice_xml(draft)
    assert first == second
    with open(artifacts.artifact_path(draft, 'xml'), 'rb') as fh:
        assert fh.read() == first


def test_draft_reflects_changes(owner, draft):
    artifacts.get_invoice_xml(draft)
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    settings.company_name = 'Neuer Name GmbH'
    db.session.commit()
    assert b'Neuer Name GmbH' in artifacts.get_invoice_xml(draft)


def test_issued_artifacts_are_served_from_disk(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    xml_path = artifacts.artifact_path(draft, 'xml')
    pdf_path = artifacts.artifact_path(draft, 'pdf')
    # written by the regeneration after the status change
    assert os.path.exists(xml_path) and os.path.exists(pdf_path)
    with open(pdf_path, 'rb') as fh:
        stored_pdf = fh.read()

    settings = Settings.query.filter_by(owner_id=owner.id).first()
    settings.company_name = 'Umbenannt AG'
    db.session.commit()

    xml_bytes = artifacts.get_invoice_xml(draft)
    assert b'Umbenannt AG' not in xml_bytes
    assert artifacts.get_invoice_pdf(draft) == stored_pdf
    assert artifacts.get_invoice_pdf(draft) == stored_pdf


def test_force_regenerates_issued(owner, draft):
    change_status(owner.id, draft.id, 'issued')
    settings = Settings.query.filter_by(owner_id=owner.id).first()
    settings.company_name = 'Umbenannt AG'
    db.session.commit()
    assert b'Umbenannt AG' in artifacts.get_invoice_xml(draft, force=True)


def test_embedded_xml_equals_standalone(owner, draft):
    pdf_bytes = artifacts.get_invoice_pdf(draft)
    assert pdf_bytes.startswith(b'%PDF')
    assert extract_xml_from_pdf(pdf_bytes) == artifacts.get_invoice_xml(draft)


def test_artifacts_are_per_tenant(owner, draft):
    path = artifacts.artifact_path(draft, 'xml')
    assert os.path.basename(os.path.dirname(path)) == f'owner{owner.id}'
    assert os.path.basename(path) == f'{draft.id}.xml'


def test_letterhead_pdf_uses_backdrop(owner, draft):
    template = _letterhead(owner.id, _write_backdrop(owner.id))
    draft.template_id = template.id
    db.session.commit()
    pdf_bytes = artifacts.get_invoice_pdf(draft)
    reader = PdfReader(BytesIO(pdf_bytes))
    assert len(reader.pages) >= 1
    assert round(float(reader.pages[0].mediabox.width)) == 595
    assert extract_xml_from_pdf(pdf_bytes) == artifacts.get_invoice_xml(draft)


def test_missing_backdrop_is_a_rendering_error(owner, draft):
    template = _letterhead(owner.id, 'fehlt.pdf')
    draft.template_id = template.id
    db.session.commit()
    with pytest.raises(RenderingError):
        artifacts.get_invoice_pdf(draft)


def test_region_outside_page_is_a_rendering_error(owner, draft):
    template = _letterhead(owner.id, main_width='30')
    draft.template_id = template.id
    db.session.commit()
    with pytest.raises(RenderingError):
        artifacts.get_invoice_pdf(draft)


def test_status_change_discards_stored_artifacts(owner, draft, monkeypatch):
    artifacts.get_invoice_pdf(draft)
    xml_path = artifacts.artifact_path(draft, 'xml')
    pdf_path = artifacts.artifact_path(draft, 'pdf')
    assert os.path.exists(xml_path) and os.path.exists(pdf_path)

    monkeypatch.setattr(artifacts, 'schedule_regeneration', lambda owner_id, invoice_id: None)
    change_status(owner.id, draft.id, 'issued')
    assert not os.path.exists(xml_path)
    assert not os.path.exists(pdf_path)

    # rendered again for the issued invoice on the next download
    xml_bytes = artifacts.get_invoice_xml(draft)
    with open(xml_path, 'rb') as fh:
        assert fh.read() == xml_bytes


def test_failed_render_keeps_previous_pdf(owner, draft):
    good = artifacts.get_invoice_pdf(draft)
    template = _letterhead(owner.id, 'fehlt.pdf')
    draft.template_id = template.id
    db.session.commit()
    with pytest.raises(RenderingError):
        artifacts.get_invoice_pdf(draft)
    with open(artifacts.artifact_path(draft, 'pdf'), 'rb') as fh:
        assert fh.read() == good
