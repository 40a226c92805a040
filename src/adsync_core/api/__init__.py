"""adsync HTTP API for dashboards and automation consumers."""
from .routes import get_store, router

__all__ = ["get_store", "router"]
