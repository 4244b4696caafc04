"""Civitai Mirror source modules."""

from . import clients
from . import store

__all__ = ["clients", "store"]
