"""Run state machine using the ``transitions`` library.

Defines 12 states and 11 transitions (each with a guard condition). The
guards make the stage dependencies explicit: a stage can only be entered
once the output it consumes has been recorded on the run state.
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine

from src.release_shared.constants import (
    STAGE_BUILD,
    STAGE_IMAGE_SCAN,
    STAGE_PUBLISH,
    STAGE_REGISTER,
    STAGE_REPORT,
    STAGE_RESOLVE,
    STAGE_SOURCE_SCAN,
    STAGE_UPDATE,
    STAGE_WAIT,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------
STATES: list[str] = [
    "init",
    "source_scanning",
    "building",
    "image_scanning",
    "publishing",
    "reporting",
    "registering",
    "updating",
    "waiting",
    "complete",
    "stable",
    "failed",
]

TERMINAL_STATES: frozenset[str] = frozenset({"complete", "stable", "failed"})

# Stage that runs while the machine sits in each non-terminal state
STAGE_FOR_STATE: dict[str, str] = {
    "init": STAGE_RESOLVE,
    "source_scanning": STAGE_SOURCE_SCAN,
    "building": STAGE_BUILD,
    "image_scanning": STAGE_IMAGE_SCAN,
    "publishing": STAGE_PUBLISH,
    "reporting": STAGE_REPORT,
    "registering": STAGE_REGISTER,
    "updating": STAGE_UPDATE,
    "waiting": STAGE_WAIT,
}

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {
        "trigger": "identity_resolved",
        "source": "init",
        "dest": "source_scanning",
        "conditions": ["has_identity"],
    },
    {
        "trigger": "source_scanned",
        "source": "source_scanning",
        "dest": "building",
        "conditions": ["has_fs_report"],
    },
    {
        "trigger": "image_built",
        "source": "building",
        "dest": "image_scanning",
        "conditions": ["has_local_image"],
    },
    {
        "trigger": "image_scanned",
        "source": "image_scanning",
        "dest": "publishing",
        "conditions": ["has_image_report"],
    },
    {
        "trigger": "image_published",
        "source": "publishing",
        "dest": "reporting",
        "conditions": ["image_pushed"],
    },
    {
        "trigger": "review_finished",
        "source": "reporting",
        "dest": "complete",
        "conditions": ["is_review_request"],
    },
    {
        "trigger": "start_deploy",
        "source": "reporting",
        "dest": "registering",
        "conditions": ["is_direct_integration"],
    },
    {
        "trigger": "revision_registered",
        "source": "registering",
        "dest": "updating",
        "conditions": ["has_revision"],
    },
    {
        "trigger": "update_accepted",
        "source": "updating",
        "dest": "waiting",
        "conditions": ["has_revision"],
    },
    {
        "trigger": "service_stable",
        "source": "waiting",
        "dest": "stable",
        "conditions": ["service_converged"],
    },
    {
        "trigger": "fail",
        "source": [s for s in STATES if s not in TERMINAL_STATES],
        "dest": "failed",
    },
]


def create_run_machine(model: Any, initial_state: str = "init") -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    The model object must implement the guard methods referenced in
    ``TRANSITIONS`` (e.g. ``has_identity``, ``has_fs_report``, ...).

    Args:
        model: The object whose state the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    machine = AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=True,
        ignore_invalid_triggers=True,
    )
    return machine
