"""
Domain layer for provisioning: models, card actions, collaborator
contracts and the error taxonomy.
"""

from .models import EnrichedRecord, RideRule, RosterRecord

__all__ = ["EnrichedRecord", "RideRule", "RosterRecord"]
