from datetime import date
from decimal import Decimal

import pytest
from facturx import xml_check_xsd
from lxml import etree

from generators.einvoice import EInvoiceData, EInvoiceLineItem, EInvoiceTaxBreakdown, get_standard
from generators.einvoice.zugferd import NS
import artifacts


def sample_data(**overrides):
    data = dict(
        invoice_number='RE-2025-0001',
        invoice_date=date(2025, 3, 1),
        seller_name='Muster GmbH',
        seller_contact='Erika Muster',
        seller_address_lines=['Hauptstraße 1'],
        seller_postcode='10115',
        seller_city='Berlin',
        seller_vat_id='DE123456789',
        buyer_id='K00001',
        buyer_name='Kunde AG',
        buyer_address_lines=['Ring 5'],
        buyer_postcode='80331',
        buyer_city='München',
        delivery_date=date(2025, 2, 28),
        tax_breakdown=[EInvoiceTaxBreakdown(rate=Decimal('19'), basis=Decimal('30.00'), amount=Decimal('5.7'))],
        line_total_net=Decimal('30.00'),
        tax_total=Decimal('5.70'),
        total_gross=Decimal('35.70'),
        due_date=date(2025, 3, 15),
        payment_terms_days=14,
        payment_reference='RE-2025-0001',
        bank_iban='DE02 1203 0000 0000 2020 51',
        bank_bic='BYLADEM1001',
        notes=['Vielen Dank für Ihren Auftrag.'],
        line_items=[EInvoiceLineItem(position_number=1, name='Beratung', quantity=Decimal('3'),
                                     unit_price_net=Decimal('10'), line_total_net=Decimal('30.00'),
                                     tax_rate=Decimal('19'))],
    )
    data.update(overrides)
    return EInvoiceData(**data)


def ram(root, path):
    return root.findtext(path, namespaces=NS)


def test_xml_is_deterministic():
    standard = get_standard()
    assert standard.generate_xml(sample_data()) == standard.generate_xml(sample_data())


def test_xml_values():
    root = etree.fromstring(get_standard().generate_xml(sample_data()))
    assert ram(root, 'rsm:ExchangedDocument/ram:ID') == 'RE-2025-0001'
    assert ram(root, './/ram:IssueDateTime/udt:DateTimeString') == '20250301'
    settlement = root.find('.//ram:ApplicableHeaderTradeSettlement', NS)
    assert ram(settlement, 'ram:InvoiceCurrencyCode') == 'EUR'
    assert ram(settlement, './/ram:IBANID') == 'DE02120300000000202051'
    assert ram(settlement, './/ram:BICID') == 'BYLADEM1001'
    tax = settlement.find('ram:ApplicableTradeTax', NS)
    assert ram(tax, 'ram:CalculatedAmount') == '5.70'
    assert ram(tax, 'ram:BasisAmount') == '30.00'
    assert ram(tax, 'ram:RateApplicablePercent') == '19.00'
    summary = settlement.find('ram:SpecifiedTradeSettlementHeaderMonetarySummation', NS)
    assert ram(summary, 'ram:GrandTotalAmount') == '35.70'
    assert ram(summary, 'ram:DuePayableAmount') == '35.70'
    line = root.find('.//ram:IncludedSupplyChainTradeLineItem', NS)
    assert ram(line, './/ram:ChargeAmount') == '10.00'
    assert ram(line, './/ram:BilledQuantity') == '3'


def test_exemption_reason_only_for_non_standard_categories():
    reason = 'Steuerschuldnerschaft des Leistungsempfängers'
    data = sample_data(tax_breakdown=[EInvoiceTaxBreakdown(
        rate=Decimal('0'), basis=Decimal('30.00'), amount=Decimal('0'), category='AE', exemption_reason=reason,
    )])
    root = etree.fromstring(get_standard().generate_xml(data))
    assert ram(root, './/ram:ApplicableHeaderTradeSettlement/ram:ApplicableTradeTax/ram:ExemptionReason') == reason

    standard_rate = etree.fromstring(get_standard().generate_xml(sample_data()))
    assert standard_rate.find('.//ram:ExemptionReason', NS) is None


def test_basic_profile_drops_bic_and_contacts():
    root = etree.fromstring(get_standard(profile='basic').generate_xml(sample_data()))
    assert root.find('.//ram:BICID', NS) is None
    assert root.find('.//ram:DefinedTradeContact', NS) is None
    assert root.find('.//ram:IncludedSupplyChainTradeLineItem', NS) is not None


def test_unknown_profile():
    with pytest.raises(ValueError):
        get_standard(profile='ultra')


def test_validate_data_warnings():
    warnings = get_standard().validate_data(sample_data(seller_vat_id=None, seller_name='', line_items=[]))
    assert 'Name des Rechnungsstellers fehlt.' in warnings
    assert 'Steuernummer oder USt-IdNr. des Rechnungsstellers fehlt.' in warnings
    assert any('mindestens eine Position' in w for w in warnings)


def test_generated_invoice_xml_passes_xsd(owner, draft):
    xml_bytes = artifacts.render_xml(draft)
    assert xml_check_xsd(xml_bytes, flavor='factur-x', level='en16931')
