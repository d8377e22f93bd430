# backend/receipt_search/services/__init__.py
"""Services package for the receipt search backend."""
