from __future__ import annotations

import pytest

from jobfeed.titles import is_valid_title

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "title",
    [
        "Senior Backend Engineer",
        "Business Analyst II",
        "Registered Nurse - ICU",
        "Sr. Data Engineer",
    ],
)
def test_accepts_real_job_titles(title: str) -> None:
    assert is_valid_title(title) is True


@pytest.mark.parametrize(
    "title",
    [
        "Tampa, FL",
        "Austin, TX, USA",
        "NY",
        "Seattle",
        "Description: build great things",
        "About the team",
        "We are hiring engineers",
        "Looking for a rockstar",
        "The ideal candidate",
        "*Urgent opening*",
        "Time Type: Full time",
        "Responsibilities: own the roadmap",
        "Software Engineer",
        "business analyst",
        "Remote",
        "12345",
        "40 - 60",
        "Apply Now",
        "Monday",
        "October",
        "LLC",
        "Great team. Great pay. Apply today.",
    ],
)
def test_rejects_strings_that_are_not_titles(title: str) -> None:
    assert is_valid_title(title) is False


def test_length_bounds_are_exclusive() -> None:
    assert is_valid_title("A") is False
    assert is_valid_title("QA ") is False
    assert is_valid_title("x" * 85) is False
    assert is_valid_title("Data Engineer " + "x" * 65) is True
    assert is_valid_title("Data Engineer " + "x" * 66) is False
    assert is_valid_title("  Staff Engineer  ") is True


def test_lead_in_words_only_match_whole_words() -> None:
    assert is_valid_title("Theater Technician") is True
    assert is_valid_title("Weld Inspector") is True
