"""
PDF/A-3 embedding for e-invoice XML.

Uses the ``factur-x`` Python library to:
- Convert a regular PDF to PDF/A-3
- Embed the e-invoice XML as an attachment (``factur-x.xml``, AFRelationship "data")
- Set correct XMP metadata (Factur-X / ZUGFeRD conformance)
"""
from __future__ import annotations

import logging

from facturx import generate_from_binary, get_facturx_xml_from_pdf

from errors import RenderingError

logger = logging.getLogger(__name__)


def embed_xml_in_pdf(
    pdf_bytes: bytes,
    xml_bytes: bytes,
    *,
    flavor: str = "factur-x",
    level: str = "en16931",
    lang: str = "de",
    pdf_metadata: dict | None = None,
    check_xsd: bool = True,
) -> bytes:
    """Embed e-invoice XML into a PDF, producing a PDF/A-3 compliant file.

    Args:
        pdf_bytes: The original PDF as bytes.
        xml_bytes: The e-invoice XML as bytes (UTF-8).
        flavor: 'factur-x' (default) or 'order-x'.
        level: Profile level ('minimum', 'basicwl', 'basic', 'en16931', 'extended').
        lang: PDF language tag (RFC 3066), e.g. 'de' for German.
        pdf_metadata: Optional dict with keys 'author', 'title', 'subject', 'keywords'.
        check_xsd: Validate the XML against the profile's XSD first.

    Returns:
        The Factur-X/ZUGFeRD PDF as bytes (PDF/A-3 with embedded XML).

    Raises:
        RenderingError: If XML validation or PDF generation fails.
    """
    logger.info("Embedding %s XML (level=%s) into PDF/A-3", flavor, level)

    try:
        result_pdf = generate_from_binary(
            pdf_bytes,
            xml_bytes,
            flavor=flavor,
            level=level,
            check_xsd=check_xsd,
            pdf_metadata=pdf_metadata,
            lang=lang,
            attachments=None,
        )
    except Exception as exc:
        logger.exception("factur-x failed to embed XML (level=%s)", level)
        raise RenderingError(str(exc)) from exc

    if not result_pdf:
        raise RenderingError("factur-x library returned empty PDF")

    logger.info("Successfully generated %s PDF/A-3 (%d bytes)", flavor, len(result_pdf))
    return result_pdf


def extract_xml_from_pdf(pdf_bytes: bytes) -> bytes:
    """Return the XML attachment of a Factur-X PDF."""
    filename, xml_bytes = get_facturx_xml_from_pdf(pdf_bytes, check_xsd=False)
    if not xml_bytes:
        raise RenderingError("PDF contains no Factur-X XML")
    return xml_bytes
