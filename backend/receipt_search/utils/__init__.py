# backend/receipt_search/utils/__init__.py
"""Utility helpers shared by the search and metrics services."""
