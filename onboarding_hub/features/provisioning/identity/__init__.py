from .allocator import SUFFIX_SEQUENCE, IdentityAllocator, slugify_name

__all__ = ["SUFFIX_SEQUENCE", "IdentityAllocator", "slugify_name"]
