"""
Incident persistence.
"""

from alertflow.incidents.store import IncidentStore, InMemoryIncidentStore, mutate

__all__ = ["IncidentStore", "InMemoryIncidentStore", "mutate"]
