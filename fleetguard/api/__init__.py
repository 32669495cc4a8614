"""Read-only REST API for fleetguard.

Exposes:
    create_app -- FastAPI application factory.
"""

from fleetguard.api.app import create_app

__all__ = ["create_app"]
