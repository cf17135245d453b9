"""Validation of push payloads accepted by the registry."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


FULLNAME_MIN = 3
FULLNAME_MAX = 200
REFERENCE_NAME_MIN = 2
REFERENCE_NAME_MAX = 80
DESCRIPTION_MAX = 200
CONTENT_MIN = 500
CONTENT_MAX = 200_000

FULLNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
REFERENCE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-_.]*$")
COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-f]{40}$")

HTML_TAG_PATTERN = re.compile(r"<\s*/?\s*[a-zA-Z][^>]*>")
UNSAFE_LINK_PATTERN = re.compile(r"\]\(\s*(javascript:|data:|vbscript:)", re.IGNORECASE)
HEADING_PATTERN = re.compile(r"^#\s+.+", re.MULTILINE)

REQUIRED_PUSH_FIELDS = ("fullName", "referenceName", "description", "content", "commitSha", "analyzedAt")
OPTIONAL_STRING_FIELDS = ("repoDescription", "repoLanguage", "repoDefaultBranch")


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    field: Optional[str] = None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are read as UTC.

    Raises:
        ValueError: If the value is not a timestamp
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def missing_fields(payload: Dict[str, Any]) -> list:
    return [name for name in REQUIRED_PUSH_FIELDS if not payload.get(name)]


def validate_push_fields(payload: Dict[str, Any]) -> ValidationResult:
    """Check field formats; returns the first error found."""
    missing = missing_fields(payload)
    if missing:
        return ValidationResult(False, f"Missing required fields: {', '.join(missing)}", missing[0])

    for name in REQUIRED_PUSH_FIELDS:
        if not isinstance(payload[name], str):
            return ValidationResult(False, f"{name} must be a string", name)

    full_name = str(payload.get("fullName", ""))
    if not FULLNAME_MIN <= len(full_name) <= FULLNAME_MAX:
        return ValidationResult(False, f"fullName must be {FULLNAME_MIN}-{FULLNAME_MAX} chars", "fullName")
    if not FULLNAME_PATTERN.match(full_name):
        return ValidationResult(False, "Invalid repo format (expected owner/repo)", "fullName")

    reference_name = str(payload.get("referenceName", ""))
    if not REFERENCE_NAME_MIN <= len(reference_name) <= REFERENCE_NAME_MAX:
        return ValidationResult(
            False,
            f"referenceName must be {REFERENCE_NAME_MIN}-{REFERENCE_NAME_MAX} chars",
            "referenceName",
        )
    if not REFERENCE_NAME_PATTERN.match(reference_name):
        return ValidationResult(False, "Invalid referenceName format", "referenceName")

    description = str(payload.get("description", ""))
    if not 0 < len(description) <= DESCRIPTION_MAX:
        return ValidationResult(False, f"description must be 1-{DESCRIPTION_MAX} chars", "description")

    if not COMMIT_SHA_PATTERN.match(str(payload.get("commitSha", ""))):
        return ValidationResult(False, "commitSha must be a 40-character hex SHA", "commitSha")

    try:
        parse_timestamp(str(payload.get("analyzedAt", "")))
    except ValueError:
        return ValidationResult(False, "analyzedAt must be an ISO-8601 timestamp", "analyzedAt")

    for name in OPTIONAL_STRING_FIELDS:
        value = payload.get(name)
        if value is not None and not isinstance(value, str):
            return ValidationResult(False, f"{name} must be a string", name)

    stars = payload.get("repoStars")
    if stars is not None and (not isinstance(stars, int) or isinstance(stars, bool) or stars < 0):
        return ValidationResult(False, "repoStars must be a non-negative integer", "repoStars")

    return ValidationResult(True)


def validate_reference_content(content: str) -> ValidationResult:
    """Lightweight safety and structure checks on reference markdown."""
    if len(content) < CONTENT_MIN:
        return ValidationResult(False, f"Content too short (min {CONTENT_MIN} chars)", "content")
    if len(content) > CONTENT_MAX:
        return ValidationResult(False, "Content too large (max 200KB)", "content")
    if HTML_TAG_PATTERN.search(content):
        return ValidationResult(False, "Raw HTML not allowed in reference content", "content")
    if UNSAFE_LINK_PATTERN.search(content):
        return ValidationResult(False, "Unsafe link protocol", "content")
    if not HEADING_PATTERN.search(content):
        return ValidationResult(False, "Reference must contain at least one markdown heading", "content")
    return ValidationResult(True)
