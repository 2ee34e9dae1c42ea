"""Persistence for sessions and their audit trail."""

from .database import Datastore

__all__ = ["Datastore"]
