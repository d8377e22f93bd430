# backend/receipt_search/api/v1/routers/__init__.py
