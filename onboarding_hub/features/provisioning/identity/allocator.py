"""
Work email identity allocation.

Candidates for a person are ``<slug>@<domain>`` followed by
``<slug><suffix>@<domain>`` for every suffix in SUFFIX_SEQUENCE. Suffixes
never contain the digits 2 or 4, and the order of the sequence is the retry
order everywhere in this module.

Two sources of conflict exist upstream:
    1. Active directory users, visible through a cheap lookup.
    2. Retired users whose address is still reserved. They are invisible to
       the lookup and only show up as a duplicate conflict when writing.
"""

import re
from collections.abc import Awaitable, Callable, Iterable

from pypinyin import lazy_pinyin

from onboarding_hub.features.provisioning.domain.errors import (
    AllSuffixesExhaustedError,
    EmailCommitError,
    InvalidNameError,
)
from onboarding_hub.features.provisioning.domain.models import (
    AllocationResult,
    CommitStatus,
    EnrichedRecord,
    RosterRecord,
)
from onboarding_hub.features.provisioning.domain.protocols import EmailDirectory
from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

VALID_DIGITS = (1, 3, 5, 6, 7, 8, 9)


def _build_suffix_sequence() -> tuple[int, ...]:
    single = list(VALID_DIGITS)
    double = [tens * 10 + ones for tens in VALID_DIGITS for ones in VALID_DIGITS]
    return tuple(single + double)


SUFFIX_SEQUENCE: tuple[int, ...] = _build_suffix_sequence()

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]")


def slugify_name(name: str | None) -> str:
    """Toneless pinyin for Han characters, lower-cased, alphanumerics only."""
    if not name:
        return ""
    return _NON_SLUG_CHARS.sub("", "".join(lazy_pinyin(name.strip())).lower())


class IdentityAllocator:
    """
    Turns display names into work email addresses that are free upstream.

    All methods walk the same ordered candidate list, so for a given name
    and the same view of what is taken the result is always identical.
    """

    def __init__(self, domain: str):
        self.domain = domain.lstrip("@")

    def candidates(self, name: str) -> list[str]:
        """
        Ordered candidate addresses for a name.

        Raises:
            InvalidNameError: If the name has no usable characters
        """
        base = slugify_name(name)
        if not base:
            raise InvalidNameError(name)
        return [f"{base}@{self.domain}"] + [f"{base}{s}@{self.domain}" for s in SUFFIX_SEQUENCE]

    def handle(self, email: str | None) -> str:
        """Local part of an address in this allocator's domain."""
        if not email:
            return ""
        return email.removesuffix(f"@{self.domain}")

    @staticmethod
    def suffix_at(index: int) -> int | None:
        return None if index == 0 else SUFFIX_SEQUENCE[index - 1]

    def allocate(self, name: str, is_taken: Callable[[str], bool]) -> str:
        """
        First candidate for which ``is_taken`` is false.

        Raises:
            InvalidNameError: If the name has no usable characters
            AllSuffixesExhaustedError: If every candidate is taken
        """
        for candidate in self.candidates(name):
            if not is_taken(candidate):
                return candidate
        raise AllSuffixesExhaustedError(name)

    async def allocate_live(self, name: str, is_taken: Callable[[str], Awaitable[bool]]) -> str:
        """Same as allocate() with an async membership lookup."""
        candidates = self.candidates(name)
        return candidates[await self._first_free_index(name, candidates, is_taken)]

    def allocate_batch(self, records: Iterable[RosterRecord]) -> list[EnrichedRecord]:
        """
        Suggest addresses for a set of records without any live checks.

        Two people sharing a base slug in the same batch get distinct
        addresses: a record whose first choice already went to an earlier
        record advances to the next candidate in sequence.
        """
        assigned: set[str] = set()
        enriched: list[EnrichedRecord] = []

        for record in records:
            try:
                email = self.allocate(record.name, assigned.__contains__)
            except (InvalidNameError, AllSuffixesExhaustedError) as e:
                enriched.append(EnrichedRecord.from_record(record, email_error=e.user_message))
                continue
            assigned.add(email)
            enriched.append(EnrichedRecord.from_record(record, suggested_email=email))

        return enriched

    async def provision(
        self, record_id: str, name: str, directory: EmailDirectory
    ) -> AllocationResult:
        """
        Pick and commit a work email for a roster record.

        Phase 1 looks up active users to find a starting candidate. Phase 2
        writes it; a duplicate conflict (reserved by a retired user) moves
        on to the next candidate, anything else aborts.

        Raises:
            InvalidNameError: If the name has no usable characters
            AllSuffixesExhaustedError: If either phase runs out of candidates
            EmailCommitError: If the write fails for another reason
        """
        candidates = self.candidates(name)
        index = await self._first_free_index(name, candidates, directory.is_email_taken)
        attempts = 0

        while index < len(candidates):
            candidate = candidates[index]
            attempts += 1
            logger.info(
                "Committing work email", record_id=record_id, email=candidate, attempt=attempts
            )

            result = await directory.commit_email(record_id, candidate)

            if result.status == CommitStatus.SUCCESS:
                return AllocationResult(
                    email=candidate, suffix=self.suffix_at(index), attempts=attempts
                )

            if result.status == CommitStatus.DUPLICATE_CONFLICT:
                logger.info(
                    "Email reserved by a retired user, trying next suffix",
                    record_id=record_id,
                    email=candidate,
                )
                index += 1
                continue

            raise EmailCommitError(
                f"Failed to set work email: {result.message or 'unknown error'}",
                error_code="commit_failed",
            )

        raise AllSuffixesExhaustedError(name, phase="commit")

    async def _first_free_index(
        self,
        name: str,
        candidates: list[str],
        is_taken: Callable[[str], Awaitable[bool]],
    ) -> int:
        for index, candidate in enumerate(candidates):
            if not await is_taken(candidate):
                return index
        raise AllSuffixesExhaustedError(name)
