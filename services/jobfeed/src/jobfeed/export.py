from __future__ import annotations

import csv
import io
from typing import Any

CSV_COLUMNS = (
    ("User Email", "user_email"),
    ("User Name", "user_name"),
    ("User Desired Title", "user_desired_title"),
    ("User Experience Level", "user_experience_level"),
    ("Job Title", "job_title"),
    ("Company", "company"),
    ("Location", "location"),
    ("Salary", "salary"),
    ("Job Experience Level", "job_experience_level"),
    ("Job URL", "job_url"),
    ("Match Score", "match_score"),
    ("Title Similarity", "title_similarity"),
    ("Experience Match", "experience_match"),
    ("Job Quality Score", "job_quality_score"),
    ("Recommended At", "recommended_at"),
)
SCORE_KEYS = {"match_score", "title_similarity", "experience_match"}


def _cell(key: str, value: Any) -> str:
    if key in SCORE_KEYS:
        return f"{float(value or 0):.2f}"
    if value is None:
        return ""
    return str(value)


def render_recommendations_csv(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([header for header, _ in CSV_COLUMNS])
    for row in rows:
        writer.writerow([_cell(key, row.get(key)) for _, key in CSV_COLUMNS])
    return buffer.getvalue()
