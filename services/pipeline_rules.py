from __future__ import annotations

from typing import Any, Dict, List

TERMINAL_STAGE_ID = "10"
UNKNOWN_STAGE = "Unknown"
DEFAULT_STAGE_COLOR = "#808080"

DEFAULT_STAGES: List[Dict[str, str]] = [
    {"id": "16", "title": "16 - Yet to contact", "color": "#f0bc00"},
    {"id": "21", "title": "21 - Cheque Ready", "color": "#1ea34f"},
    {"id": "20.5", "title": "20.5 - Negotiations", "color": "#06aed7"},
    {"id": "20", "title": "20 - Hot", "color": "#eb7311"},
    {"id": "19", "title": "19 - Warm", "color": "#eb7311"},
    {"id": "18", "title": "18 - Luke Warm", "color": "#eb7311"},
    {"id": "17", "title": "17 - Follow Later", "color": "#754c9b"},
    {"id": TERMINAL_STAGE_ID, "title": "10 - Closed", "color": "#1ea34f"},
    {"id": "0", "title": "0 - Junk", "color": "#808080"},
]


def stage_key(stage: Any) -> str:
    text = str(stage or "").strip()
    return text or UNKNOWN_STAGE


def is_won(opportunity: Dict[str, Any]) -> bool:
    return opportunity.get("status") == "Won" or str(opportunity.get("stage") or "") == TERMINAL_STAGE_ID


def stage_transition_updates(opportunity: Dict[str, Any], destination: str) -> Dict[str, Any]:
    """
    Updates for moving an opportunity to another stage.

    Entering the closed stage marks it Won, leaving it reopens it. Direct
    status edits elsewhere are not constrained by this.
    """
    destination = str(destination or "").strip()
    if not destination:
        raise ValueError("stage is required")
    updates: Dict[str, Any] = {"stage": destination}
    current = str(opportunity.get("stage") or "")
    if destination == TERMINAL_STAGE_ID:
        updates["status"] = "Won"
    elif current == TERMINAL_STAGE_ID:
        updates["status"] = "Open"
    return updates


def normalize_stages(stages: Any) -> List[Dict[str, str]]:
    if not isinstance(stages, list) or not stages:
        raise ValueError("stages must be a non-empty list")
    seen = set()
    out: List[Dict[str, str]] = []
    for item in stages:
        if not isinstance(item, dict):
            raise ValueError("stage must be an object")
        stage_id = str(item.get("id") or "").strip()
        if not stage_id:
            raise ValueError("stage id is required")
        if stage_id in seen:
            raise ValueError(f"duplicate stage id: {stage_id}")
        seen.add(stage_id)
        out.append(
            {
                "id": stage_id,
                "title": str(item.get("title") or stage_id).strip(),
                "color": str(item.get("color") or DEFAULT_STAGE_COLOR).strip(),
            }
        )
    return out


def rename_stage(stages: List[Dict[str, str]], stage_id: str, title: str) -> List[Dict[str, str]]:
    """Change a stage title. The id stays put so opportunities keep pointing at it."""
    title = str(title or "").strip()
    if not title:
        raise ValueError("title is required")
    found = False
    out = []
    for stage in stages:
        if stage["id"] == str(stage_id):
            stage = {**stage, "title": title}
            found = True
        out.append(stage)
    if not found:
        raise ValueError(f"unknown stage: {stage_id}")
    return out


def reorder_stages(stages: List[Dict[str, str]], ordered_ids: List[str]) -> List[Dict[str, str]]:
    by_id = {stage["id"]: stage for stage in stages}
    if sorted(by_id) != sorted(str(item) for item in ordered_ids):
        raise ValueError("ordered ids must list every stage exactly once")
    return [by_id[str(stage_id)] for stage_id in ordered_ids]
