"""Shared constants for the release pipeline."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Stage names
# ---------------------------------------------------------------------------
STAGE_RESOLVE = "resolve_identity"
STAGE_SOURCE_SCAN = "source_scan"
STAGE_BUILD = "build"
STAGE_IMAGE_SCAN = "image_scan"
STAGE_PUBLISH = "publish"
STAGE_REPORT = "report"
STAGE_REGISTER = "register"
STAGE_UPDATE = "update"
STAGE_WAIT = "wait"

BUILD_STAGES = [
    STAGE_RESOLVE,
    STAGE_SOURCE_SCAN,
    STAGE_BUILD,
    STAGE_IMAGE_SCAN,
    STAGE_PUBLISH,
    STAGE_REPORT,
]

DEPLOY_STAGES = [
    STAGE_REGISTER,
    STAGE_UPDATE,
    STAGE_WAIT,
]

ALL_STAGES = BUILD_STAGES + DEPLOY_STAGES

# ---------------------------------------------------------------------------
# Trigger events (GitHub event name -> trigger kind value)
# ---------------------------------------------------------------------------
GITHUB_EVENT_KINDS: dict[str, str] = {
    "pull_request": "review_request",
    "push": "direct_integration",
}

DEFAULT_BRANCHES = ["main"]

# ---------------------------------------------------------------------------
# Scan defaults
# ---------------------------------------------------------------------------
DEFAULT_SEVERITIES = ["CRITICAL", "HIGH"]
KNOWN_SEVERITIES = frozenset({"CRITICAL", "HIGH", "MEDIUM", "LOW", "UNKNOWN"})
DEFAULT_SCAN_TIMEOUT = 600  # seconds

FS_REPORT_FILE = "trivy-fs-results.json"
IMAGE_REPORT_FILE = "trivy-image-results.json"

# ---------------------------------------------------------------------------
# Build / deploy defaults
# ---------------------------------------------------------------------------
DEFAULT_BUILD_TIMEOUT = 1800  # 30 minutes
DEFAULT_WAIT_TIMEOUT = 600  # matches `aws ecs wait services-stable` (40 x 15s)
DEFAULT_POLL_INTERVAL = 15

# ---------------------------------------------------------------------------
# State persistence
# ---------------------------------------------------------------------------
STATE_DIR = ".release-pipeline"
STATE_FILE = "RUN_STATE.json"
