from __future__ import annotations

import logging
from typing import Any, Mapping

from lrsstore.domain.models import CompletionStatus, is_terminal_status
from lrsstore.domain.patch import ABSENT, CLEARED, is_supplied


logger = logging.getLogger(__name__)


def reconcile(
    prior: Mapping[str, Any] | None,
    update: Mapping[str, Any],
    defaults: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Combine a possibly-absent prior record with a partial update.

    Per field: a value supplied by the update wins (``CLEARED`` resolves to the
    field default), otherwise a stored prior value is kept, otherwise the default
    applies. A field missing from ``update`` is never treated like one explicitly
    set to an empty or zero value.
    """
    prior = prior or {}
    defaults = defaults or {}
    names = list(defaults)
    for source in (prior, update):
        names.extend(name for name in source if name not in names)

    result: dict[str, Any] = {}
    for name in names:
        default = defaults.get(name)
        supplied = update.get(name, ABSENT)
        if supplied is CLEARED:
            result[name] = default
        elif is_supplied(supplied):
            result[name] = supplied
        elif prior.get(name) is not None:
            result[name] = prior[name]
        else:
            result[name] = default
    return result


def resolve_completion(
    merged: dict[str, Any],
    prior: Mapping[str, Any] | None,
    update: Mapping[str, Any],
    *,
    now: str,
) -> dict[str, Any]:
    """Apply the attempt completion state machine to a reconciled record.

    ``in_progress`` may move to ``completed``, ``passed`` or ``failed``; all three
    are terminal, so a stored terminal status is never replaced. Entering a
    terminal state stamps ``completed_at`` unless one was supplied or stored.
    """
    prior_status = (prior or {}).get("completion_status")
    status = merged.get("completion_status") or CompletionStatus.IN_PROGRESS.value
    if is_terminal_status(prior_status):
        if status != prior_status:
            logger.info(
                "attempt_status_frozen current=%s requested=%s", prior_status, update.get("completion_status")
            )
        status = prior_status
    merged["completion_status"] = status
    if is_terminal_status(status) and not merged.get("completed_at"):
        merged["completed_at"] = now
    # Launch order defines attempt recency, so the first stored launch time sticks.
    prior_launch = (prior or {}).get("launched_at")
    if prior_launch:
        merged["launched_at"] = prior_launch
    elif not merged.get("launched_at"):
        merged["launched_at"] = now
    return merged
