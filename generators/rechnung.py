"""
PDF generator for Rechnung (Invoice).

Two layouts:
- standard: header with sender line, recipient and meta block, 3-column footer
- letterhead: addressee, invoice info and main content placed into the
  template's regions, then merged onto the backdrop PDF
"""
from __future__ import annotations

from decimal import Decimal
from io import BytesIO

from reportlab.lib import colors
from reportlab.platypus import NextPageTemplate, Paragraph, Spacer, Table, TableStyle
from markupsafe import escape as _markup_escape

from generators.pdf_base import (
    _base_styles, HLine, build_base_doc, build_letterhead_doc,
    _draw_header, _draw_footer,
    register_letterhead_fonts, region_rect, draw_region_lines, apply_backdrop,
    LetterheadLayout, CLR_TABLE_HEADER_BG, CLR_BLACK,
    fmt_eur, fmt_percent, fmt_quantity,
)


def escape(value) -> str:
    return str(_markup_escape(value))


def _paragraphs(text: str | None, style) -> list:
    if not text:
        return []
    return [Paragraph(escape(line) or "&nbsp;", style) for line in text.strip().split("\n")]


def _build_story(*, cw, styles, currency, positions, tax_amounts, net_total, gross_total,
                 opening, footer, exemption_reason, payment_terms_days, due_date_str,
                 reference_number, bank_lines, issuer_name):
    story: list = []

    story.append(Paragraph("Rechnung", styles["title"]))
    story.append(Spacer(1, 6))

    if opening:
        story.extend(_paragraphs(opening, styles["normal"]))
    else:
        story.append(Paragraph("Sehr geehrte Damen und Herren,", styles["normal"]))
        story.append(Paragraph(
            "wir stellen Ihnen die nachfolgend aufgeführten Leistungen in Rechnung:",
            styles["normal"]
        ))
    story.append(Spacer(1, 10))

    # ── Positions table ──
    fixed = [22, 48, 40, 58, 62]
    # narrow letterhead areas shrink the number columns, the text column keeps 40 %
    scale = min(1.0, cw * 0.6 / sum(fixed))
    fixed = [w * scale for w in fixed]
    col_widths = [fixed[0], cw - sum(fixed)] + fixed[1:]
    table_data = [[
        Paragraph("Pos", styles["table_header"]),
        Paragraph("Bezeichnung", styles["table_header"]),
        Paragraph("Menge", styles["table_header"]),
        Paragraph("USt.", styles["table_header"]),
        Paragraph("EP (netto)", styles["table_header"]),
        Paragraph("Gesamt", styles["table_header"]),
    ]]
    for item in positions:
        table_data.append([
            Paragraph(str(item["position"]), styles["table_cell"]),
            Paragraph(escape(item["text"] or "").replace("\n", "<br/>"), styles["table_cell"]),
            Paragraph(f"{fmt_quantity(item['quantity'])} {escape(item.get('unit_label') or '')}".strip(),
                      styles["table_cell"]),
            Paragraph(fmt_percent(item["tax_rate"]), styles["table_cell_right"]),
            Paragraph(fmt_eur(item["net_price"], currency), styles["table_cell_right"]),
            Paragraph(fmt_eur(item["line_total"], currency), styles["table_cell_right"]),
        ])

    table = Table(table_data, colWidths=col_widths, hAlign="LEFT", repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), CLR_TABLE_HEADER_BG),
        ("LINEBELOW", (0, 0), (-1, 0), 0.8, CLR_BLACK),
        ("LINEBELOW", (0, 1), (-1, -1), 0.3, colors.HexColor("#cccccc")),
        ("TOPPADDING", (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ("LEFTPADDING", (0, 0), (-1, -1), 4),
        ("RIGHTPADDING", (0, 0), (-1, -1), 4),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]))
    story.append(table)
    story.append(Spacer(1, 8))

    # ── Totals block: net, one line per tax rate, gross ──
    summary_col_w = [cw - 120, 120]
    summary_data = [[
        Paragraph("Nettobetrag", styles["right"]),
        Paragraph(fmt_eur(net_total, currency), styles["right_bold"]),
    ]]
    for tax in tax_amounts:
        summary_data.append([
            Paragraph(f"zzgl. {fmt_percent(tax['rate'])} USt. auf {fmt_eur(tax['basis'], currency)}",
                      styles["right"]),
            Paragraph(fmt_eur(tax["amount"], currency), styles["right"]),
        ])
    summary_data.append([
        Paragraph("<b>Rechnungsbetrag</b>", styles["right"]),
        Paragraph(f"<b>{fmt_eur(gross_total, currency)}</b>", styles["right"]),
    ])

    summary_table = Table(summary_data, colWidths=summary_col_w, hAlign="RIGHT")
    summary_table.setStyle(TableStyle([
        ("TOPPADDING", (0, 0), (-1, -1), 2),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
        ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ("RIGHTPADDING", (0, 0), (-1, -1), 0),
        ("LINEABOVE", (0, -1), (-1, -1), 0.8, CLR_BLACK),
    ]))
    story.append(summary_table)

    if exemption_reason:
        story.append(Spacer(1, 6))
        story.extend(_paragraphs(exemption_reason, styles["small"]))

    story.append(Spacer(1, 14))

    # ── Payment terms ──
    story.append(HLine(width=cw))
    story.append(Spacer(1, 4))
    if due_date_str:
        terms = f"Bitte überweisen Sie den Rechnungsbetrag bis zum {due_date_str}"
    else:
        terms = f"Bitte überweisen Sie den Rechnungsbetrag innerhalb von {payment_terms_days} Tagen"
    story.append(Paragraph(
        f"{terms} unter Angabe der Rechnungsnummer <b>{escape(reference_number)}</b>.",
        styles["normal"]
    ))

    if bank_lines:
        story.append(Spacer(1, 10))
        story.append(Paragraph("<b>Bankverbindung:</b>", styles["normal"]))
        for line in bank_lines[:4]:
            story.append(Paragraph(escape(line), styles["normal"]))

    story.append(Spacer(1, 16))
    if footer:
        story.extend(_paragraphs(footer, styles["normal"]))
    else:
        story.append(Paragraph("Mit freundlichen Grüßen", styles["normal"]))
        story.append(Spacer(1, 16))
        story.append(Paragraph(escape(issuer_name), styles["bold"]))
    return story


def build_rechnung_pdf(
    *,
    # Business / issuer
    issuer_name: str,
    issuer_address: list[str],
    contact_lines: list[str],
    bank_lines: list[str],
    tax_number: str | None = None,
    vat_id: str | None = None,

    # Recipient
    recipient_lines: list[str],

    # Document meta, e.g. [("Rechnungs-Nr.:", "RE-2025-0001"), ...]
    reference_number: str,
    meta_lines: list[tuple[str, str]],

    # Positions: dicts with position, text, quantity, tax_rate, net_price, line_total
    positions: list[dict],
    tax_amounts: list[dict],
    net_total: Decimal,
    gross_total: Decimal,
    currency: str = "EUR",

    # Texts
    opening: str | None = None,
    footer: str | None = None,
    exemption_reason: str | None = None,

    # Payment
    payment_terms_days: int = 14,
    due_date_str: str | None = None,

    # Optional letterhead
    letterhead: LetterheadLayout | None = None,
) -> bytes:
    """Build and return the Rechnung PDF bytes."""
    buf = BytesIO()
    story_args = dict(
        currency=currency, positions=positions, tax_amounts=tax_amounts,
        net_total=net_total, gross_total=gross_total, opening=opening, footer=footer,
        exemption_reason=exemption_reason, payment_terms_days=payment_terms_days,
        due_date_str=due_date_str, reference_number=reference_number,
        bank_lines=bank_lines, issuer_name=issuer_name,
    )

    if letterhead is None:
        styles = _base_styles()

        def on_page(canvas, doc):
            _draw_header(canvas, doc,
                         issuer_name=issuer_name,
                         issuer_address=issuer_address,
                         recipient_lines=recipient_lines,
                         meta_lines=meta_lines)
            _draw_footer(canvas, doc,
                         issuer_name=issuer_name,
                         issuer_address=issuer_address,
                         contact_lines=contact_lines,
                         bank_lines=bank_lines,
                         tax_number=tax_number,
                         vat_id=vat_id)

        doc, cw = build_base_doc(buf, title=f"Rechnung {reference_number}", author=issuer_name,
                                 on_page_callback=on_page)
        doc.build(_build_story(cw=cw, styles=styles, **story_args))
        return buf.getvalue()

    # ── Letterhead layout ──
    font_normal, font_bold = register_letterhead_fonts(letterhead)
    main = letterhead.regions.get("main_area")
    size = float(main.font_size_pt) if main is not None else 9
    styles = _base_styles(font_normal, font_bold, size)

    addressee = letterhead.regions.get("addressee")
    info = letterhead.regions.get("invoice_info")
    addressee_rect = region_rect(letterhead, addressee) if addressee else None
    info_rect = region_rect(letterhead, info) if info else None

    def on_first_page(canvas, doc):
        if addressee_rect is not None:
            draw_region_lines(canvas, addressee_rect, addressee, recipient_lines,
                              font_normal, font_bold, bold_first=True)
        if info_rect is not None:
            draw_region_lines(canvas, info_rect, info,
                              [f"{label} {value}" for label, value in meta_lines],
                              font_normal, font_bold)

    def on_later_pages(canvas, doc):
        canvas.saveState()
        canvas.setFont(font_normal, 7)
        page_w, _ = letterhead.page_size
        canvas.drawRightString(page_w - 10, 12,
                               f"Rechnung {reference_number} – Seite {canvas.getPageNumber()}")
        canvas.restoreState()

    doc, cw = build_letterhead_doc(buf, letterhead, title=f"Rechnung {reference_number}",
                                   author=issuer_name, on_first_page=on_first_page,
                                   on_later_pages=on_later_pages)
    story = [NextPageTemplate("later")]
    story.extend(_build_story(cw=cw, styles=styles, **story_args))
    doc.build(story)

    pdf_bytes = buf.getvalue()
    if letterhead.backdrop_path:
        pdf_bytes = apply_backdrop(pdf_bytes, letterhead.backdrop_path)
    return pdf_bytes
