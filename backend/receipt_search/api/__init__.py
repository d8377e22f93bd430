# backend/receipt_search/api/__init__.py
"""HTTP API for the receipt search backend."""
