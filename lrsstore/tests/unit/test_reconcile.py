from __future__ import annotations

from lrsstore.domain.models import Attempt, AttemptUpdate, CompletionStatus, is_terminal_status
from lrsstore.domain.patch import ABSENT, CLEARED, is_supplied
from lrsstore.services.reconcile import reconcile, resolve_completion

NOW = "2024-03-01T12:00:00Z"
DEFAULTS = {"score": None, "time_spent": 0, "completion_status": "in_progress", "completed_at": None}


def test_supplied_value_wins_over_prior() -> None:
    merged = reconcile({"score": 50, "time_spent": 120}, {"score": 80}, DEFAULTS)
    assert merged["score"] == 80
    assert merged["time_spent"] == 120


def test_supplied_zero_overrides_prior() -> None:
    merged = reconcile({"score": 50, "time_spent": 120}, {"time_spent": 0}, DEFAULTS)
    assert merged["time_spent"] == 0
    assert merged["score"] == 50


def test_absent_field_keeps_prior_value() -> None:
    patch = AttemptUpdate(score=90).as_patch()
    assert patch == {"score": 90}
    merged = reconcile({"score": 50, "time_spent": 300}, patch, DEFAULTS)
    assert merged["time_spent"] == 300


def test_no_prior_falls_back_to_defaults() -> None:
    merged = reconcile(None, {"score": 70}, DEFAULTS)
    assert merged == {"score": 70, "time_spent": 0, "completion_status": "in_progress", "completed_at": None}


def test_cleared_resets_to_default() -> None:
    merged = reconcile({"score": 50, "time_spent": 120}, {"score": CLEARED, "time_spent": CLEARED}, DEFAULTS)
    assert merged["score"] is None
    assert merged["time_spent"] == 0


def test_stored_none_does_not_shadow_default() -> None:
    merged = reconcile({"time_spent": None}, {}, DEFAULTS)
    assert merged["time_spent"] == 0


def test_markers_are_falsy_and_distinct() -> None:
    assert not ABSENT
    assert not CLEARED
    assert ABSENT is not CLEARED


def test_terminal_transition_stamps_completed_at() -> None:
    prior = {"completion_status": "in_progress", "launched_at": "2024-02-01T00:00:00Z"}
    update = {"completion_status": "passed"}
    merged = resolve_completion(reconcile(prior, update, DEFAULTS), prior, update, now=NOW)
    assert merged["completion_status"] == "passed"
    assert merged["completed_at"] == NOW
    assert merged["launched_at"] == "2024-02-01T00:00:00Z"


def test_terminal_status_is_frozen() -> None:
    prior = {"completion_status": "passed", "completed_at": "2024-02-02T00:00:00Z"}
    update = {"completion_status": "in_progress"}
    merged = resolve_completion(reconcile(prior, update, DEFAULTS), prior, update, now=NOW)
    assert merged["completion_status"] == "passed"
    assert merged["completed_at"] == "2024-02-02T00:00:00Z"


def test_launched_at_never_overwritten_once_stored() -> None:
    prior = {"launched_at": "2024-02-01T00:00:00Z"}
    update = {"launched_at": "2024-02-05T00:00:00Z"}
    merged = resolve_completion(reconcile(prior, update, DEFAULTS), prior, update, now=NOW)
    assert merged["launched_at"] == "2024-02-01T00:00:00Z"


def test_first_write_stamps_launched_at() -> None:
    merged = resolve_completion(reconcile(None, {}, DEFAULTS), None, {}, now=NOW)
    assert merged["launched_at"] == NOW
    assert merged["completion_status"] == "in_progress"
    assert merged["completed_at"] is None


def test_terminal_status_and_open_attempts() -> None:
    assert CompletionStatus.PASSED.is_terminal
    assert not CompletionStatus.IN_PROGRESS.is_terminal
    assert is_terminal_status("failed")
    # Unknown and missing statuses count as open.
    assert not is_terminal_status("browsed")
    assert not is_terminal_status(None)
    assert Attempt(registration_id="r", user_email="e", completion_status="browsed").is_open
    assert not Attempt(registration_id="r", user_email="e", completion_status="completed").is_open
    assert is_supplied(CLEARED)
    assert is_supplied(0)
    assert not is_supplied(ABSENT)
