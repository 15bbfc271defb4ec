"""Quality gates applied to generated payloads before they are accepted."""

from insight_orchestrator.quality.placeholder_audit import (
    PLACEHOLDER_MARKERS,
    PlaceholderFinding,
    find_placeholder_markers,
    rejection_reason,
)

__all__ = [
    "PLACEHOLDER_MARKERS",
    "PlaceholderFinding",
    "find_placeholder_markers",
    "rejection_reason",
]
