"""
Business Plan API Routes
Plan tree, chapters, sections, tasks, AI chat and pending change resolution
for one workspace's business plan.

Errors are raised as BusinessPlanError subclasses and mapped to HTTP status
codes by the global handler in bizplan.app.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from bizplan.exceptions import TransientError, ValidationError
from bizplan.models.ai_chat_models import (
    ChatRequest,
    ChatTurnResult,
    PendingChangeAction,
    PendingChangeResolution,
    PendingChangeView,
    ThreadEntry,
    normalize_change_status,
)
from bizplan.models.business_plan_models import (
    BusinessPlan,
    BusinessPlanTree,
    BusinessPlanUpdate,
    Chapter,
    ChapterCreate,
    ChapterReorder,
    ChapterUpdate,
    Section,
    SectionCreate,
    SectionReorder,
    SectionUpdate,
    Task,
    TaskCreate,
    TaskPatch,
    TaskReorder,
    TaskTreeResponse,
)
from bizplan.services.business_plan_session import BusinessPlanSession

router = APIRouter(
    prefix="/api/v1/workspaces/{workspace_id}/business-plan", tags=["Business Plan"]
)


async def get_session(workspace_id: str, request: Request) -> BusinessPlanSession:
    """Open (or reuse) the session for the workspace's business plan"""
    return await request.app.state.session_registry.get(workspace_id)


def _completed(result):
    # None means the session closed before the store answered
    if result is None:
        raise TransientError("Business plan session closed before the request completed")
    return result


# ============ PLAN ============


@router.get("", response_model=BusinessPlanTree)
async def get_business_plan(session: BusinessPlanSession = Depends(get_session)):
    """
    Get the business plan with its full chapter tree

    Creates an empty plan for the workspace on first access.
    """
    return session.document_tree()


@router.put("", response_model=BusinessPlan)
async def update_business_plan(
    update: BusinessPlanUpdate, session: BusinessPlanSession = Depends(get_session)
):
    return _completed(await session.update_plan(update))


# ============ CHAPTERS ============


@router.post("/chapters", response_model=Chapter, status_code=status.HTTP_201_CREATED)
async def create_chapter(
    chapter_data: ChapterCreate, session: BusinessPlanSession = Depends(get_session)
):
    """
    Add a chapter after its last sibling

    **Request Body:**
    - title: Chapter title (1-200 chars) [REQUIRED]
    - parent_id: Parent chapter ID (null for root chapters)

    **Returns:**
    - 201: Chapter created
    - 404: Parent chapter not found
    - 422: Invalid title
    """
    return _completed(await session.doc.add_chapter(chapter_data.title, chapter_data.parent_id))


@router.put("/chapters/reorder", response_model=List[Chapter])
async def reorder_chapters(
    reorder: ChapterReorder, session: BusinessPlanSession = Depends(get_session)
):
    """
    Reorder one set of sibling chapters

    ordered_ids must list every sibling under parent_id exactly once;
    otherwise nothing changes and 422 is returned.
    """
    return await session.doc.reorder_chapters(reorder.ordered_ids, reorder.parent_id)


@router.put("/chapters/{chapter_id}", response_model=Chapter)
async def update_chapter(
    chapter_id: str,
    chapter_data: ChapterUpdate,
    session: BusinessPlanSession = Depends(get_session),
):
    return _completed(await session.doc.update_chapter(chapter_id, chapter_data.title))


@router.delete("/chapters/{chapter_id}")
async def delete_chapter(chapter_id: str, session: BusinessPlanSession = Depends(get_session)):
    """Delete a chapter together with its subchapters and all their sections"""
    deleted_ids = await session.doc.delete_chapter(chapter_id)
    return {"success": True, "deleted_ids": deleted_ids}


# ============ SECTIONS ============


@router.post("/sections", response_model=Section, status_code=status.HTTP_201_CREATED)
async def create_section(
    section_data: SectionCreate, session: BusinessPlanSession = Depends(get_session)
):
    return _completed(
        await session.doc.add_section(section_data.chapter_id, section_data.content)
    )


@router.put("/sections/reorder", response_model=List[Section])
async def reorder_sections(
    reorder: SectionReorder, session: BusinessPlanSession = Depends(get_session)
):
    return await session.doc.reorder_sections(reorder.chapter_id, reorder.ordered_ids)


@router.put("/sections/{section_id}", response_model=Section)
async def update_section(
    section_id: str,
    section_data: SectionUpdate,
    session: BusinessPlanSession = Depends(get_session),
):
    """Replace a section's content; the section type cannot change"""
    return _completed(await session.doc.update_section(section_id, section_data.content))


@router.delete("/sections/{section_id}")
async def delete_section(section_id: str, session: BusinessPlanSession = Depends(get_session)):
    deleted_id = _completed(await session.doc.delete_section(section_id))
    return {"success": True, "deleted_id": deleted_id}


# ============ TASKS ============


@router.get("/tasks", response_model=TaskTreeResponse)
async def get_tasks(session: BusinessPlanSession = Depends(get_session)):
    return session.task_tree()


@router.post("/tasks", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, session: BusinessPlanSession = Depends(get_session)):
    """
    Add an H1 task, or an H2 subtask under an existing H1

    **Returns:**
    - 201: Task created
    - 422: H2 without a valid H1 parent, H1 with a parent, empty title
    """
    return _completed(
        await session.tasks.add_task(
            task_data.title,
            task_data.hierarchy_level,
            parent_task_id=task_data.parent_task_id,
            status=task_data.status,
            instructions=task_data.instructions,
            ai_prompt=task_data.ai_prompt,
        )
    )


@router.put("/tasks/reorder", response_model=List[Task])
async def reorder_tasks(reorder: TaskReorder, session: BusinessPlanSession = Depends(get_session)):
    return await session.tasks.reorder_tasks(reorder.ordered_ids, reorder.parent_task_id)


@router.put("/tasks/{task_id}", response_model=Task)
async def update_task(
    task_id: str, patch: TaskPatch, session: BusinessPlanSession = Depends(get_session)
):
    return _completed(await session.tasks.update_task(task_id, patch))


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, session: BusinessPlanSession = Depends(get_session)):
    """Delete a task; deleting an H1 also deletes its H2 subtasks"""
    deleted_ids = await session.tasks.delete_task(task_id)
    return {"success": True, "deleted_ids": deleted_ids}


# ============ AI CHAT ============


@router.get("/ai/conversation", response_model=List[ThreadEntry])
async def get_conversation(session: BusinessPlanSession = Depends(get_session)):
    """Chat messages in order, each with the pending changes it proposed"""
    return session.thread()


@router.post("/ai/chat", response_model=ChatTurnResult)
async def chat(request: ChatRequest, session: BusinessPlanSession = Depends(get_session)):
    """
    Send a chat message to the business plan assistant

    The reply may propose changes; they are staged as pending and nothing is
    applied until each one is accepted.
    """
    return _completed(
        await session.send_chat_message(
            request.message,
            selected_chapter_id=request.selected_chapter_id,
            selected_task_id=request.selected_task_id,
        )
    )


@router.get("/ai/pending-changes", response_model=List[PendingChangeView])
async def list_pending_changes(
    status_filter: Optional[str] = Query(None, alias="status"),
    target_id: Optional[str] = Query(None, description="Only changes targeting this entity"),
    session: BusinessPlanSession = Depends(get_session),
):
    """
    List pending changes with their review card text

    Each change carries label, summary and target_label (the current title
    of its target, or the raw id once the target is gone).
    """
    if status_filter is not None:
        try:
            normalize_change_status(status_filter)
        except ValueError as e:
            raise ValidationError(f"Invalid status filter: {status_filter}", field="status") from e
    return session.list_changes(status_filter, target_id)


@router.post("/ai/pending-changes/{change_id}", response_model=PendingChangeResolution)
async def resolve_pending_change(
    change_id: str,
    action: PendingChangeAction,
    session: BusinessPlanSession = Depends(get_session),
):
    """
    Accept or reject a pending change

    **Returns:**
    - 200: Change approved (and applied) or rejected
    - 404: Change or its target not found (change stays pending unless auto-rejected)
    - 409: Change already resolved
    - 422: Proposed data invalid for the change type
    - 503: Store unavailable; retry
    """
    if action.action == "accept":
        return _completed(await session.accept_change(change_id))
    return _completed(await session.reject_change(change_id))
