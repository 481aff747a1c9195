"""
Audit logging infrastructure for provisioning actions.

This module keeps the bounded, append-only trail of who provisioned what
from the bot cards.
"""

from onboarding_hub.infrastructure.audit.audit_log import AuditEntry, AuditLog

__all__ = ["AuditEntry", "AuditLog"]
