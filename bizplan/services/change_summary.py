"""
Display helpers for pending changes

Pure functions over a change and the current trees. None of them raise:
malformed proposed data or a target that no longer exists degrade to a
generic text or the raw id.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from bizplan.exceptions import ValidationError
from bizplan.models.ai_chat_models import ChangeType, PendingChange, PendingChangeView
from bizplan.models.section_content_models import parse_section_content

CHANGE_LABELS = {
    ChangeType.ADD_CHAPTER: "Add chapter",
    ChangeType.UPDATE_CHAPTER: "Update chapter",
    ChangeType.DELETE_CHAPTER: "Delete chapter",
    ChangeType.ADD_SECTION: "Add section",
    ChangeType.UPDATE_SECTION: "Update section",
    ChangeType.DELETE_SECTION: "Delete section",
    ChangeType.REORDER_CHAPTERS: "Reorder chapters",
    ChangeType.REORDER_SECTIONS: "Reorder sections",
    ChangeType.ADD_TASK: "Add task",
    ChangeType.UPDATE_TASK: "Update task",
    ChangeType.DELETE_TASK: "Delete task",
}

# Order in which task fields are listed in an update summary
TASK_SUMMARY_FIELDS = (
    ("title", ("title",)),
    ("status", ("status",)),
    ("instructions", ("instructions",)),
    ("ai_prompt", ("ai_prompt", "aiPrompt")),
)


def change_label(change_type: ChangeType) -> str:
    return CHANGE_LABELS[ChangeType(change_type)]


def summarize_section_content(content: Any) -> str:
    """Short preview of a section's content"""
    try:
        parsed = parse_section_content(content)
    except ValidationError:
        if isinstance(content, dict):
            return json.dumps(content, default=str)[:140]
        return ""

    kind = parsed.type
    if kind in ("section_title", "subsection", "text"):
        return parsed.text[:160]
    if kind == "list":
        return ", ".join(parsed.items[:5])
    if kind in ("table", "comparison_table"):
        return f"{len(parsed.headers)} columns, {len(parsed.rows)} rows"
    if kind == "image":
        return parsed.caption or parsed.alt_text or parsed.url
    if kind == "timeline":
        return f"{len(parsed.entries)} timeline entries"
    if kind == "embed":
        return parsed.embed_type
    if kind == "page_break":
        return "page break"
    if kind == "empty_space":
        return f"empty space ({parsed.height}px)"
    return ""


def summarize_change(change: PendingChange, doc=None, tasks=None) -> str:
    """
    Deterministic one-line description of what accepting the change does

    Args:
        change: Pending change to describe
        doc: DocumentTreeModel used to name chapters (optional)
        tasks: TaskTreeModel (optional)
    """
    data: Dict[str, Any] = change.proposed_data if isinstance(change.proposed_data, dict) else {}
    change_type = change.change_type

    if change_type in (ChangeType.ADD_CHAPTER, ChangeType.UPDATE_CHAPTER):
        title = _first(data, "title", "new_title", "newTitle")
        return f"Title: {title if isinstance(title, str) and title else 'Untitled chapter'}"

    if change_type == ChangeType.ADD_SECTION:
        chapter_id = _first(data, "chapter_id", "chapterId")
        chapter = doc.get_chapter(chapter_id) if doc is not None and chapter_id else None
        content = data.get("content")
        section_type = _first(data, "section_type", "sectionType") or (
            content.get("type") if isinstance(content, dict) else None
        )
        return f"Add {section_type or 'section'} to {chapter.title if chapter else 'selected chapter'}"

    if change_type == ChangeType.UPDATE_SECTION:
        content = _first(data, "content", "new_content", "newContent")
        if content:
            return summarize_section_content(content) or "Update section content"
        return "Update section content"

    if change_type == ChangeType.DELETE_CHAPTER:
        return "Remove this chapter and its sections"
    if change_type == ChangeType.DELETE_SECTION:
        return "Remove this section from the plan"
    if change_type == ChangeType.REORDER_CHAPTERS:
        return "Update chapter order"
    if change_type == ChangeType.REORDER_SECTIONS:
        return "Update section order"

    if change_type == ChangeType.ADD_TASK:
        level = str(_first(data, "hierarchy_level", "hierarchyLevel") or "h1").upper()
        return f"{level} task: {data.get('title') or 'Untitled task'}"

    if change_type == ChangeType.UPDATE_TASK:
        parts = []
        for label, keys in TASK_SUMMARY_FIELDS:
            value = _first(data, *keys)
            if value is not None:
                parts.append(f"{label}: {value}")
        return " | ".join(parts) if parts else "No task fields changed"

    if change_type == ChangeType.DELETE_TASK:
        return "Remove this task and its subtasks"

    return "Proposed change"


def target_label(change: PendingChange, doc=None, tasks=None) -> str:
    """Name of the entity a change points at, or its raw id once it is gone"""
    value = change.change_type.value
    target_id: Optional[str] = change.target_id

    if "chapter" in value:
        if change.change_type == ChangeType.REORDER_CHAPTERS:
            return "Chapter order"
        if not target_id:
            return "New chapter"
        chapter = doc.get_chapter(target_id) if doc is not None else None
        return f"Chapter: {chapter.title}" if chapter else f"Chapter ID: {target_id}"

    if "section" in value:
        if change.change_type == ChangeType.REORDER_SECTIONS:
            return "Section order"
        if not target_id:
            return "New section"
        section = doc.get_section(target_id) if doc is not None else None
        return f"Section: {section.section_type}" if section else f"Section ID: {target_id}"

    if "task" in value:
        if not target_id:
            return "New task"
        task = tasks.get_task(target_id) if tasks is not None else None
        return f"Task: {task.title}" if task else f"Task ID: {target_id}"

    return "Pending change"


def _first(data: Dict[str, Any], *keys: str):
    for key in keys:
        if data.get(key) is not None:
            value = data[key]
            return value.value if isinstance(value, Enum) else value
    return None


def describe_change(change: PendingChange, doc=None, tasks=None) -> PendingChangeView:
    """Attach label, summary and target label to a change for display"""
    return PendingChangeView(
        **change.model_dump(),
        label=change_label(change.change_type),
        summary=summarize_change(change, doc, tasks),
        target_label=target_label(change, doc, tasks),
    )
