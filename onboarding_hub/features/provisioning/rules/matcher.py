"""
Ride rule matching.

Picks the ride-service policy that best fits a hire's work location. Rule
names follow the ``<location>-<category>`` convention (e.g. ``北京-commute``),
so more specific, canonically named rules win over loose substring hits.
"""

from collections.abc import Callable, Iterable

from onboarding_hub.features.provisioning.domain.models import (
    UNKNOWN_LOCATION,
    EnrichedRecord,
    RideRule,
    RosterRecord,
)


def _norm(value: str | None) -> str:
    return (value or "").strip().lower()


class RuleMatcher:
    """Ranks ride rules against a location label."""

    def __init__(self, primary_category: str, secondary_category: str):
        self.primary_category = _norm(primary_category)
        self.secondary_category = _norm(secondary_category)

    def match(self, location_label: str | None, rules: Iterable[RideRule]) -> RideRule | None:
        """
        Best rule for a location, or None when no rule is active.

        Search order:
            1. name starts with the label, primary category; prefer the
               canonical "<label>-<primary>" name, then the shortest name
            2. name contains the label, secondary category
            3. name contains the label, any category
            4. the default rule, else the first active rule
        """
        active = [rule for rule in rules if rule.active]
        if not active:
            return None

        fallback = next((rule for rule in active if rule.is_default), active[0])

        label = _norm(location_label)
        if not label or label == _norm(UNKNOWN_LOCATION):
            return fallback

        primary = [
            rule
            for rule in active
            if _norm(rule.name).startswith(label) and _norm(rule.category) == self.primary_category
        ]
        if primary:
            canonical = f"{label}-{self.primary_category}"
            for rule in primary:
                if _norm(rule.name) == canonical:
                    return rule
            return min(primary, key=lambda rule: len(rule.name.strip()))

        for rule in active:
            if label in _norm(rule.name) and _norm(rule.category) == self.secondary_category:
                return rule

        for rule in active:
            if label in _norm(rule.name):
                return rule

        return fallback

    def match_records(
        self,
        records: Iterable[RosterRecord],
        rules: list[RideRule],
        label_for: Callable[[RosterRecord], str],
    ) -> list[EnrichedRecord]:
        """Attach a suggested rule to every record."""
        enriched = []
        for record in records:
            rule = self.match(label_for(record), rules)
            enriched.append(
                EnrichedRecord.from_record(
                    record,
                    suggested_rule_id=rule.id if rule else None,
                    suggested_rule_name=rule.name if rule else None,
                )
            )
        return enriched

    @staticmethod
    def rule_by_id(rule_id: str | None, rules: Iterable[RideRule]) -> RideRule | None:
        return next((rule for rule in rules if rule.id == rule_id), None)
