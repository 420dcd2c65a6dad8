"""
Plan context for the drafting model

Renders the current chapter/section tree and task tree as plain text with ids,
so proposed changes can reference real entities, and wraps it in the system
prompt used for every chat turn.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from bizplan.models.business_plan_models import BusinessPlan, Chapter, ChapterNode, Task, TaskNode
from bizplan.services.change_summary import summarize_section_content

SYSTEM_PROMPT_TEMPLATE = """You are an expert business plan assistant.
You help users write, improve and organize the chapters, sections and tasks of their business plan.

How to work:
- When the user asks to change chapters or sections, propose the changes with the tools.
- When the user asks to create, edit or remove plan tasks, propose task changes with the tools.
- "chapter" or "subchapter" means chapter tools, never task tools.
- "add subchapter X under Y" is exactly one chapter proposal for X with Y as parent.
- Use one tool call per proposed chapter, section or task instead of describing them in text only.
- Use H1 tasks for chapter-level work and H2 tasks for sub-items of an existing H1.
- Never apply changes directly. Every change is a proposal the user accepts or rejects.
- Ask a clarifying question when the target chapter, section or task is ambiguous.
- Keep answers concise and actionable.
- The plan context below is authoritative. If earlier messages disagree with it, trust the context.

Current business plan context:
{context}
"""


class DraftingContext(BaseModel):
    """Everything the drafting collaborator needs for one chat turn"""

    system_prompt: str
    user_message: str
    history: List[Dict[str, str]] = Field(
        default_factory=list, description="Earlier turns as {role, content} dicts"
    )
    selected_chapter_id: Optional[str] = None
    selected_task_id: Optional[str] = None


def _chapter_lines(chapters: List[ChapterNode], depth: int) -> List[str]:
    lines = []
    for chapter in chapters:
        indent = "  " * depth
        lines.append(f"{indent}- Chapter: {chapter.title} (id: {chapter.id})")
        for section in chapter.sections:
            preview = summarize_section_content(section.content)
            lines.append(
                f"{indent}  - Section: {section.section_type} (id: {section.id})"
                + (f" -> {preview}" if preview else "")
            )
        if chapter.children:
            lines.extend(_chapter_lines(chapter.children, depth + 1))
    return lines


def _task_lines(tasks: List[TaskNode]) -> List[str]:
    lines = []
    for task in tasks:
        lines.append(
            f"- [H1] {task.title} (id: {task.id}, status: {task.status.value})"
        )
        for child in task.children:
            lines.append(
                f"  - [H2] {child.title} (id: {child.id}, status: {child.status.value})"
            )
    return lines


def build_plan_context(
    business_plan: Optional[BusinessPlan],
    chapters: List[ChapterNode],
    tasks: Optional[List[TaskNode]] = None,
    selected_chapter: Optional[Chapter] = None,
    selected_task: Optional[Task] = None,
) -> str:
    if business_plan is None:
        return "No business plan exists yet."

    chapter_lines = _chapter_lines(chapters, 0)
    task_lines = _task_lines(tasks or [])
    parts = [
        f"Business Plan Title: {business_plan.title}",
        f"Status: {business_plan.status.value}",
        "Chapters & Sections:",
        "\n".join(chapter_lines) if chapter_lines else "- No chapters yet",
        "Tasks:",
        "\n".join(task_lines) if task_lines else "- No tasks yet",
    ]
    if selected_chapter is not None:
        parts.append(f"Selected chapter: {selected_chapter.title} (id: {selected_chapter.id})")
    if selected_task is not None:
        parts.append(f"Selected task: {selected_task.title} (id: {selected_task.id})")
    return "\n".join(parts)


def build_system_prompt(context: str) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(context=context)
