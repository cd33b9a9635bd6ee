"""HTTP entry points."""

from .http import SERVICES, create_app

__all__ = ["SERVICES", "create_app"]
