"""
E-invoice generation.

Standards are registered by name; ZUGFeRD/Factur-X is the only one so far
and takes the profile (``basic``, ``en16931``, ...) as option.
"""
from generators.einvoice.base import EInvoiceData, EInvoiceLineItem, EInvoiceStandard, EInvoiceTaxBreakdown
from generators.einvoice.zugferd import ZUGFeRDStandard
from generators.einvoice.embed import embed_xml_in_pdf

STANDARDS: dict[str, type[EInvoiceStandard]] = {
    "zugferd": ZUGFeRDStandard,
}

DEFAULT_STANDARD = "zugferd"


def get_standard(name: str | None = None, **options) -> EInvoiceStandard:
    """Instantiate a registered standard, e.g. ``get_standard(profile="basic")``.

    Raises ValueError for unknown standards and, via the standard itself,
    for unknown profiles.
    """
    cls = STANDARDS.get(name or DEFAULT_STANDARD)
    if cls is None:
        raise ValueError(
            f"Unknown e-invoice standard '{name}'. "
            f"Available: {', '.join(STANDARDS)}"
        )
    return cls(**options)
