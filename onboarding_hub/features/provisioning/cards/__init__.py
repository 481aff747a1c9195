from .renderer import CardRenderer, UrgencyTier, group_by_urgency, urgency_tier

__all__ = ["CardRenderer", "UrgencyTier", "group_by_urgency", "urgency_tier"]
