# src/auth_service/__init__.py
