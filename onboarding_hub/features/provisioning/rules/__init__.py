from .catalog import RuleCatalog
from .matcher import RuleMatcher

__all__ = ["RuleCatalog", "RuleMatcher"]
