"""
Pipeline Phase Configuration

The itinerary pipeline runs these stages in order. The external scheduler
owns the ordering; workers only need to know which label follows their own
stage and whether their stage is the last one.
"""

from typing import List, Optional

PIPELINE_PHASES = [
    {"stage": "scrape", "label": "Phase 1: Scraping Itinerary"},
    {"stage": "media", "label": "Phase 2: Processing Media"},
    {"stage": "enhance", "label": "Phase 3: Enhancing Content"},
    {"stage": "schema", "label": "Phase 4: Validating Schema"},
    {"stage": "publish", "label": "Phase 5: Publishing"},
]

COMPLETE_LABEL = "Complete"
RETRY_QUEUED_LABEL = "Queued (Retry)"
RETRY_FAILED_LABEL = "Phase 2: Retrying Failed Media"


def get_phases(stages: Optional[List[str]] = None) -> List[dict]:
    """Get the phase list, optionally restricted to the given stage names."""
    if not stages:
        return PIPELINE_PHASES
    return [p for p in PIPELINE_PHASES if p["stage"] in stages]


def phase_label(stage: str, phases: Optional[List[dict]] = None) -> str:
    for phase in phases or PIPELINE_PHASES:
        if phase["stage"] == stage:
            return phase["label"]
    raise KeyError(f"Unknown pipeline stage: {stage}")


def next_phase_label(stage: str, phases: Optional[List[dict]] = None) -> str:
    """Label of the stage after `stage`, or COMPLETE_LABEL for the last stage."""
    phases = phases or PIPELINE_PHASES
    stages = [p["stage"] for p in phases]
    if stage not in stages:
        raise KeyError(f"Unknown pipeline stage: {stage}")

    idx = stages.index(stage)
    if idx + 1 < len(phases):
        return phases[idx + 1]["label"]
    return COMPLETE_LABEL


def is_terminal_stage(stage: str, phases: Optional[List[dict]] = None) -> bool:
    phases = phases or PIPELINE_PHASES
    return bool(phases) and phases[-1]["stage"] == stage


def is_past_stage(current_label: Optional[str], stage: str, phases: Optional[List[dict]] = None) -> bool:
    """
    True when current_label belongs to a stage after `stage` (or is
    COMPLETE_LABEL). Queued and retry labels are not past any stage.
    """
    phases = phases or PIPELINE_PHASES
    stages = [p["stage"] for p in phases]
    if stage not in stages:
        raise KeyError(f"Unknown pipeline stage: {stage}")

    if current_label == COMPLETE_LABEL:
        return True
    later = {p["label"] for p in phases[stages.index(stage) + 1:]}
    return current_label in later
