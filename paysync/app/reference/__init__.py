"""Reference data loaded from the payment provider at startup."""

from .loader import (
    DEFAULT_HEADROOM,
    ReferenceTable,
    default_worker_count,
    load_prices,
    load_reference_table,
    load_tax_rates,
    scan_reference_ids,
)

__all__ = [
    "DEFAULT_HEADROOM",
    "ReferenceTable",
    "default_worker_count",
    "load_prices",
    "load_reference_table",
    "load_tax_rates",
    "scan_reference_ids",
]
