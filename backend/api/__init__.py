# api/__init__.py
# ============================================================================
# STOREFRONT ORDER ENGINE — HTTP API
# ============================================================================
# ``api.server:app`` is the ASGI entry point; ``create_app`` builds one with
# injected settings and pipeline (tests).
# ============================================================================
