from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from lrsstore.domain.patch import ABSENT, supplied_fields


class CompletionStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({CompletionStatus.COMPLETED, CompletionStatus.PASSED, CompletionStatus.FAILED})


def is_terminal_status(value: str | None) -> bool:
    # Unknown status strings are treated as open, matching legacy records.
    try:
        return CompletionStatus(value).is_terminal
    except ValueError:
        return False


@dataclass
class Attempt:
    registration_id: str
    user_email: str
    course_id: str | None = None
    user_name: str | None = None
    activity_id: str | None = None
    launched_at: str | None = None
    completion_status: str = CompletionStatus.IN_PROGRESS.value
    completion_verb: str | None = None
    completion_statement_id: str | None = None
    success: bool | None = None
    score: float | None = None
    progress_percent: float | None = None
    time_spent: float = 0
    completed_at: str | None = None
    eligible_for_raise: bool | None = None
    # Open-ended per-course shape; stored as a JSON string attribute.
    module_progress: dict[str, Any] | None = None
    updated_at: str | None = None

    @property
    def is_open(self) -> bool:
        return not is_terminal_status(self.completion_status)


@dataclass
class AttemptUpdate:
    """Partial attempt update.

    Every field defaults to ``ABSENT`` (keep the prior value); ``CLEARED`` resets a
    field to its default; anything else, including ``0``, ``False`` and ``""``,
    overrides the prior value.
    """

    user_name: Any = ABSENT
    course_id: Any = ABSENT
    activity_id: Any = ABSENT
    launched_at: Any = ABSENT
    completion_status: Any = ABSENT
    completion_verb: Any = ABSENT
    completion_statement_id: Any = ABSENT
    success: Any = ABSENT
    score: Any = ABSENT
    progress_percent: Any = ABSENT
    time_spent: Any = ABSENT
    completed_at: Any = ABSENT
    eligible_for_raise: Any = ABSENT
    module_progress: Any = ABSENT

    def as_patch(self) -> dict[str, Any]:
        return supplied_fields({f.name: getattr(self, f.name) for f in fields(self)})


@dataclass
class KnowledgeCheckAttempt:
    attempt_id: str
    user_email: str
    assessment_id: str
    registration_id: str | None = None
    course_id: str | None = None
    activity_id: str | None = None
    assessment_name: str | None = None
    verb_id: str | None = None
    success: bool | None = None
    score_scaled: float | None = None
    score_raw: float | None = None
    score_max: float | None = None
    response: str | None = None
    interaction_type: str | None = None
    timestamp: str | None = None
    stored_at: str | None = None


@dataclass
class ModuleRules:
    course_id: str
    # Opaque per-course rule documents, stored as one JSON blob.
    rules: list[Any] = field(default_factory=list)
    updated_at: str | None = None


@dataclass
class Provider:
    provider_id: str
    name: str
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class ProviderCourse:
    provider_id: str
    course_id: str
    assigned_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class UserAssignment:
    provider_id: str
    user_id: str
    course_id: str
    assigned_at: str | None = None
    due_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Lockout:
    email: str
    failed_attempts: int = 0
    lockout_until: str | None = None
    last_attempt: str | None = None

    def locked_until(self) -> datetime | None:
        return parse_timestamp(self.lockout_until)


@dataclass
class Page:
    # One page of domain objects plus the opaque cursor for the next page.
    items: list[Any] = field(default_factory=list)
    continuation: Any = None


def parse_timestamp(value: str | None) -> datetime | None:
    # Accept both "Z" and offset forms of ISO-8601; unparseable values read as missing.
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")
