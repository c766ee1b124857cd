"""USPS Informed Delivery digest ingestion."""

__version__ = "0.1.0"
