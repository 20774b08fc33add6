"""HTTP API for CyberHub."""

from cyberhub.api.app import create_app

__all__ = ["create_app"]
