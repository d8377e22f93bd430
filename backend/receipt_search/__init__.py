# backend/receipt_search/__init__.py
"""Receipt Search - hybrid retrieval and embedding pipeline observability."""

__version__ = "1.0.0"
__title__ = "Receipt Search API"
__description__ = "Hybrid rank-fusion search over receipts with embedding health tracking"
