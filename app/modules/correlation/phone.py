"""
Phone Correlator: resolves a noisy phone string from a webhook to a lead.

The matching rule is a deliberate compatibility heuristic for the mix of local,
international and formatted numbers found in lead records: both sides are
reduced to digits, the incoming number is expanded into a few variants, and a
lead matches when a variant and the lead's digits contain one another.
Everything here is pure so that replaying a webhook resolves the same way.
"""

import re
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from pydantic import BaseModel

from app.models.lead import LeadPhone

NON_DIGITS_RE = re.compile(r"\D")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class PhoneMatch(BaseModel):
    lead_id: UUID
    phone: str
    variant: str
    confidence: str  # high, medium, low


def normalize_phone(phone: str | None) -> str:
    """Strip everything that is not a digit."""
    if not phone:
        return ""
    return NON_DIGITS_RE.sub("", phone)


def phone_variants(phone: str | None, country_code: str = "972") -> list[str]:
    """Full digits, last 10, last 9 and the country-code form (country code + last 9)."""
    digits = normalize_phone(phone)
    if not digits:
        return []

    variants = [digits, digits[-10:], digits[-9:]]
    if country_code:
        variants.append(country_code + digits[-9:])

    seen = []
    for v in variants:
        if v and v not in seen:
            seen.append(v)
    return seen


def phones_match(incoming: str | None, candidate: str | None, country_code: str = "972", min_digits: int = 7) -> str | None:
    """Return the variant that links the two numbers, or None."""
    incoming_digits = normalize_phone(incoming)
    candidate_digits = normalize_phone(candidate)
    if len(incoming_digits) < min_digits or len(candidate_digits) < min_digits:
        return None

    for variant in phone_variants(incoming_digits, country_code):
        if len(variant) < min_digits:
            continue
        if variant in candidate_digits or candidate_digits in variant:
            return variant
    return None


def _longest_common_run(a: str, b: str) -> int:
    longest = 0
    for i in range(len(a)):
        for j in range(len(b)):
            k = 0
            while i + k < len(a) and j + k < len(b) and a[i + k] == b[j + k]:
                k += 1
            longest = max(longest, k)
    return longest


def match_confidence(phone1: str | None, phone2: str | None) -> str:
    """Grade how alike two numbers are: high, medium or low."""
    d1 = normalize_phone(phone1)
    d2 = normalize_phone(phone2)
    if not d1 or not d2:
        return "low"

    core1, core2 = d1[-10:], d2[-10:]
    if core1 == core2 and len(core1) >= 10:
        return "high"

    common = _longest_common_run(d1, d2)
    coverage = common / min(len(d1), len(d2))
    if common >= 8 or (common >= 7 and coverage >= 0.8):
        return "high"
    if common >= 6:
        return "medium"
    if len(core1) >= 7 and len(core2) >= 7 and core1[-7:] == core2[-7:]:
        return "medium"
    return "low"


def resolve(
    raw_phone: str | None,
    candidates: Iterable[LeadPhone],
    country_code: str = "972",
    min_digits: int = 7,
) -> PhoneMatch | None:
    """Resolve a phone to the best matching lead, or None when nothing matches.

    Ties go to the most recently active lead, then to the lowest lead id, so the
    result does not depend on candidate order.
    """
    matches = []
    for candidate in candidates:
        variant = phones_match(raw_phone, candidate.phone, country_code, min_digits)
        if variant is not None:
            matches.append((candidate, variant))

    if not matches:
        return None

    def _rank(item):
        candidate, _ = item
        last = candidate.last_interaction or _EPOCH
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (-last.timestamp(), str(candidate.id))

    best, variant = sorted(matches, key=_rank)[0]
    return PhoneMatch(
        lead_id=best.id,
        phone=best.phone,
        variant=variant,
        confidence=match_confidence(raw_phone, best.phone),
    )
