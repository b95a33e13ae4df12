"""Reject strings that scrapers commonly mistake for job titles.

Scraped postings regularly put a location, a chunk of the description or a
bare search keyword where the title should be. ``is_valid_title`` is the guard
applied to every extracted title before a posting is accepted, and again by
the quality cleanup over titles already stored.
"""

from __future__ import annotations

import re

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 80

_STATE_CODES = (
    "AL|AK|AZ|AR|CA|CO|CT|DE|FL|GA|HI|ID|IL|IN|IA|KS|KY|LA|ME|MD|MA|MI|MN|MS|MO|MT|"
    "NE|NV|NH|NJ|NM|NY|NC|ND|OH|OK|OR|PA|RI|SC|SD|TN|TX|UT|VT|VA|WA|WV|WI|WY|DC"
)
_MAJOR_CITIES = (
    "Tampa|Orlando|Miami|Jacksonville|Atlanta|Charlotte|Raleigh|Nashville|Austin|Dallas|"
    "Houston|Phoenix|Los Angeles|San Francisco|Seattle|Portland|Chicago|Detroit|Boston|"
    "New York|Philadelphia|Washington"
)
_GENERIC_ROLES = (
    "marketing|sales|engineer|software engineer|developer|manager|analyst|business analyst|"
    "project manager|account executive|business development|account manager|senior|junior|"
    "entry level|remote|full time|part time"
)
_WEEKDAYS = "monday|tuesday|wednesday|thursday|friday|saturday|sunday"
_MONTHS = "january|february|march|april|may|june|july|august|september|october|november|december"

_INVALID_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # locations
        rf"^[A-Za-z\s]+,\s*({_STATE_CODES}),?\s*(USA?)?$",
        rf"^({_STATE_CODES})$",
        rf"^({_MAJOR_CITIES})$",
        # description fragments
        r"^(description|about|who you|what you|overview|summary|position|job|role):",
        r"^(description|about|who you|what you|overview|summary)\b",
        r"(description|overview|summary|about us|who you|what you)",
        # company placeholders
        r"^(company|corporation|inc\.|llc|ltd\.|co\.)$",
        # recruiting lead-ins
        r"^(looking for|seeking|hiring|we are|join our|opportunity|position available)\b",
        r"^(we|our|the|this|that|job|position|role|opportunity|candidate|applicant)\b",
        # formatting artifacts
        r"^\*",
        r"^Time Type:",
        r"^A Day in the Life",
        r"^(Benefits|Requirements|Responsibilities|Qualifications):",
        # filler
        rf"^({_GENERIC_ROLES})$",
        r"^\d+$",
        r"^\d+\s*-\s*\d+$",
        r"^(apply now|click here|learn more|view details|see description)$",
        rf"^({_WEEKDAYS})$",
        rf"^({_MONTHS})$",
    )
)


def is_valid_title(candidate: str) -> bool:
    title = candidate.strip()
    if not MIN_TITLE_LENGTH < len(title) < MAX_TITLE_LENGTH:
        return False

    # More than one sentence reads like a description excerpt.
    if "." in title and len(title.split(".")) > 2:
        return False

    return not any(pattern.search(title) for pattern in _INVALID_PATTERNS)
