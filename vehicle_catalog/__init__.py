"""
Vehicle Catalog Reconciliation

Extraction-tier orchestration and reconciliation of dealer web pages and PDF
price lists into a deduplicated catalog of vehicles and trim variants.
"""

__version__ = "1.0.0"
__author__ = "Catalog Team"
__email__ = "team@company.com"
__description__ = "Vehicle catalog extraction and reconciliation pipeline"

__all__ = [
    "__version__",
    "__author__",
    "__email__",
    "__description__",
]
