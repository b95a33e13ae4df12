from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import urljoin

from jobcommon.utils import normalize_whitespace

from jobfeed.models import NormalizedJob
from jobfeed.titles import is_valid_title

RawPosting = Mapping[str, Any]
FieldExtractor = Callable[[RawPosting], str | None]

UNKNOWN_COMPANY = "Unknown Company"
DEFAULT_LOCATION = "Remote"

URL_FIELDS = ("jobUrl", "url", "link", "jobLink", "permalink", "href")
TITLE_FIELDS = ("positionName", "PositionName", "jobTitle", "title")
EXTERNAL_ID_FIELDS = ("id", "jobKey", "jobId")


class PostingRejected(ValueError):
    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


def text_field(name: str) -> FieldExtractor:
    def extract(item: RawPosting) -> str | None:
        value = item.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            return None
        cleaned = normalize_whitespace(value)
        return cleaned or None

    extract.__name__ = f"text_field_{name}"
    return extract


def first_list_item(name: str) -> FieldExtractor:
    def extract(item: RawPosting) -> str | None:
        value = item.get(name)
        if not isinstance(value, list):
            return None
        for entry in value:
            if isinstance(entry, str) and entry.strip():
                return normalize_whitespace(entry)
        return None

    extract.__name__ = f"first_list_item_{name}"
    return extract


def first_value(item: RawPosting, extractors: Iterable[FieldExtractor]) -> str | None:
    for extractor in extractors:
        value = extractor(item)
        if value is not None:
            return value
    return None


COMPANY = (text_field("company"), text_field("companyName"))
LOCATION = (text_field("location"), text_field("jobLocation"), text_field("formattedLocation"))
DESCRIPTION = (text_field("description"), text_field("descriptionText"))
SALARY = (text_field("salary"), text_field("salaryText"), text_field("salarySnippet"))
POSTED_AT = (text_field("postedAt"), text_field("postedDate"), text_field("postingDateParsed"))
EMPLOYMENT_TYPE = (
    text_field("jobType"),
    first_list_item("jobType"),
    first_list_item("employmentTypes"),
    text_field("employmentType"),
)
EXPERIENCE_LEVEL = (text_field("seniorityLevel"), text_field("experienceLevel"))
APPLY_URL = (text_field("applyUrl"), text_field("externalApplyLink"))
EXTERNAL_ID = tuple(text_field(name) for name in EXTERNAL_ID_FIELDS)
TITLE = tuple(text_field(name) for name in TITLE_FIELDS)
URL = tuple(text_field(name) for name in URL_FIELDS)


def normalize_url(raw: str, origin: str) -> str | None:
    url = raw.strip()
    if url.startswith(("http://", "https://")):
        return url
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("/"):
        return urljoin(origin, url)
    return None


def resolve_canonical_url(item: RawPosting, origin: str) -> str | None:
    for extractor in URL:
        raw = extractor(item)
        if raw is None:
            continue
        resolved = normalize_url(raw, origin)
        if resolved:
            return resolved
    return None


def extract_title(item: RawPosting) -> str | None:
    for extractor in TITLE:
        candidate = extractor(item)
        if candidate and is_valid_title(candidate):
            return candidate
    return None


def raw_title(item: RawPosting) -> str | None:
    return first_value(item, TITLE)


def is_remote(item: RawPosting) -> bool:
    for name in ("remote", "isRemote"):
        value = item.get(name)
        if isinstance(value, bool):
            return value
    return False


def to_normalized_job(
    item: RawPosting,
    *,
    requested_location: str,
    origin: str,
    job_board: str,
    quality_score: int,
    scraped_at: str,
) -> NormalizedJob:
    canonical_url = resolve_canonical_url(item, origin)
    if canonical_url is None:
        raise PostingRejected("missing_url")

    title = extract_title(item)
    if title is None:
        raise PostingRejected("invalid_title", raw_title(item) or "N/A")

    external_id = first_value(item, EXTERNAL_ID)
    apply_url = first_value(item, APPLY_URL)
    if apply_url is not None:
        apply_url = normalize_url(apply_url, origin)

    return NormalizedJob(
        external_id=external_id or canonical_url,
        title=title,
        company=first_value(item, COMPANY) or UNKNOWN_COMPANY,
        location=(
            first_value(item, LOCATION)
            or normalize_whitespace(requested_location)
            or DEFAULT_LOCATION
        ),
        description=first_value(item, DESCRIPTION) or "",
        salary_text=first_value(item, SALARY),
        canonical_url=canonical_url,
        apply_url=apply_url or canonical_url,
        employment_type=first_value(item, EMPLOYMENT_TYPE),
        remote_type="remote" if is_remote(item) else None,
        experience_level=first_value(item, EXPERIENCE_LEVEL),
        job_board=job_board,
        quality_score=quality_score,
        posted_at=first_value(item, POSTED_AT),
        scraped_at=scraped_at,
    )
