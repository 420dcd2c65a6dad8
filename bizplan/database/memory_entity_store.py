"""
In-process Entity Store

Same contract as MongoEntityStore, kept in dicts. Used for local development
without MongoDB and by the test suite. Every returned entity is a deep copy so
callers never share state with the store.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import NotFoundError, ValidationError
from bizplan.models.ai_chat_models import ChatMessage, PendingChange
from bizplan.models.business_plan_models import BusinessPlan, Chapter, Section, Task
from bizplan.models.section_content_models import parse_section_content
from bizplan.utils.id_generator import generate_entity_id


def _plain(value):
    return value.model_dump() if isinstance(value, BaseModel) else value


class InMemoryEntityStore(EntityStore):
    def __init__(self):
        self.plans: Dict[str, BusinessPlan] = {}
        self.chapters: Dict[str, Chapter] = {}
        self.sections: Dict[str, Section] = {}
        self.tasks: Dict[str, Task] = {}
        self.messages: Dict[str, ChatMessage] = {}
        self.pending_changes: Dict[str, PendingChange] = {}

    # ============ BUSINESS PLAN ============

    async def get_or_create_business_plan(self, workspace_id: str) -> BusinessPlan:
        for plan in self.plans.values():
            if plan.workspace_id == workspace_id:
                return plan.model_copy(deep=True)
        plan = BusinessPlan(id=generate_entity_id("plan"), workspace_id=workspace_id)
        self.plans[plan.id] = plan
        return plan.model_copy(deep=True)

    async def update_business_plan(
        self, business_plan_id: str, patch: Dict[str, Any]
    ) -> BusinessPlan:
        return self._update(self.plans, "business_plan", business_plan_id, patch)

    # ============ CHAPTERS ============

    async def list_chapters(self, business_plan_id: str) -> List[Chapter]:
        rows = [c for c in self.chapters.values() if c.business_plan_id == business_plan_id]
        return self._copies(sorted(rows, key=lambda c: c.order_index))

    async def create_chapter(self, business_plan_id: str, data: Dict[str, Any]) -> Chapter:
        parent_id = data.get("parent_id")
        if parent_id is not None and parent_id not in self.chapters:
            raise NotFoundError("chapter", parent_id)
        chapter = Chapter(
            id=generate_entity_id("chapter"),
            business_plan_id=business_plan_id,
            parent_id=parent_id,
            title=data["title"],
            order_index=data.get("order_index", 0),
        )
        self.chapters[chapter.id] = chapter
        return chapter.model_copy(deep=True)

    async def update_chapter(self, chapter_id: str, patch: Dict[str, Any]) -> Chapter:
        return self._update(self.chapters, "chapter", chapter_id, patch)

    async def delete_chapters(self, chapter_ids: List[str]) -> int:
        present = [cid for cid in chapter_ids if cid in self.chapters]
        if not present:
            raise NotFoundError("chapter", chapter_ids[0] if chapter_ids else None)
        doomed = set(present)
        for section_id in [s.id for s in self.sections.values() if s.chapter_id in doomed]:
            del self.sections[section_id]
        for chapter_id in present:
            del self.chapters[chapter_id]
        return len(present)

    async def reorder_chapters(
        self, business_plan_id: str, parent_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        siblings = [
            c.id
            for c in self.chapters.values()
            if c.business_plan_id == business_plan_id and c.parent_id == parent_id
        ]
        self._check_permutation("chapters", siblings, ordered_ids)
        for index, chapter_id in enumerate(ordered_ids):
            self.chapters[chapter_id].order_index = index

    # ============ SECTIONS ============

    async def list_sections(self, business_plan_id: str) -> List[Section]:
        rows = [
            s
            for s in self.sections.values()
            if s.chapter_id in self.chapters
            and self.chapters[s.chapter_id].business_plan_id == business_plan_id
        ]
        return self._copies(sorted(rows, key=lambda s: s.order_index))

    async def create_section(self, chapter_id: str, data: Dict[str, Any]) -> Section:
        if chapter_id not in self.chapters:
            raise NotFoundError("chapter", chapter_id)
        section = Section(
            id=generate_entity_id("section"),
            chapter_id=chapter_id,
            order_index=data.get("order_index", 0),
            content=parse_section_content(data["content"]),
        )
        self.sections[section.id] = section
        return section.model_copy(deep=True)

    async def update_section(self, section_id: str, patch: Dict[str, Any]) -> Section:
        return self._update(self.sections, "section", section_id, patch)

    async def delete_sections(self, section_ids: List[str]) -> int:
        present = [sid for sid in section_ids if sid in self.sections]
        if not present:
            raise NotFoundError("section", section_ids[0] if section_ids else None)
        for section_id in present:
            del self.sections[section_id]
        return len(present)

    async def reorder_sections(self, chapter_id: str, ordered_ids: List[str]) -> None:
        if chapter_id not in self.chapters:
            raise NotFoundError("chapter", chapter_id)
        siblings = [s.id for s in self.sections.values() if s.chapter_id == chapter_id]
        self._check_permutation("sections", siblings, ordered_ids)
        for index, section_id in enumerate(ordered_ids):
            self.sections[section_id].order_index = index

    # ============ TASKS ============

    async def list_tasks(self, business_plan_id: str) -> List[Task]:
        rows = [t for t in self.tasks.values() if t.business_plan_id == business_plan_id]
        return self._copies(sorted(rows, key=lambda t: t.order_index))

    async def create_task(self, business_plan_id: str, data: Dict[str, Any]) -> Task:
        parent_id = data.get("parent_task_id")
        if parent_id is not None and parent_id not in self.tasks:
            raise NotFoundError("task", parent_id)
        task = Task(id=generate_entity_id("task"), business_plan_id=business_plan_id, **data)
        self.tasks[task.id] = task
        return task.model_copy(deep=True)

    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> Task:
        return self._update(self.tasks, "task", task_id, patch)

    async def delete_tasks(self, task_ids: List[str]) -> int:
        present = [tid for tid in task_ids if tid in self.tasks]
        if not present:
            raise NotFoundError("task", task_ids[0] if task_ids else None)
        for task_id in present:
            del self.tasks[task_id]
        return len(present)

    async def reorder_tasks(
        self, business_plan_id: str, parent_task_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        siblings = [
            t.id
            for t in self.tasks.values()
            if t.business_plan_id == business_plan_id and t.parent_task_id == parent_task_id
        ]
        self._check_permutation("tasks", siblings, ordered_ids)
        for index, task_id in enumerate(ordered_ids):
            self.tasks[task_id].order_index = index

    # ============ CONVERSATION ============

    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        rows = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        return self._copies(sorted(rows, key=lambda m: m.created_at))

    async def create_message(self, conversation_id: str, data: Dict[str, Any]) -> ChatMessage:
        message = ChatMessage(
            id=generate_entity_id("msg"), conversation_id=conversation_id, **data
        )
        self.messages[message.id] = message
        return message

    async def list_pending_changes(self, message_ids: List[str]) -> List[PendingChange]:
        wanted = set(message_ids)
        rows = [c for c in self.pending_changes.values() if c.message_id in wanted]
        return self._copies(sorted(rows, key=lambda c: c.created_at))

    async def create_pending_change(self, data: Dict[str, Any]) -> PendingChange:
        change = PendingChange(id=generate_entity_id("change"), **data)
        self.pending_changes[change.id] = change
        return change.model_copy(deep=True)

    async def update_pending_change(
        self, change_id: str, patch: Dict[str, Any]
    ) -> PendingChange:
        return self._update(self.pending_changes, "pending_change", change_id, patch)

    # ============ HELPERS ============

    @staticmethod
    def _copies(rows):
        return [row.model_copy(deep=True) for row in rows]

    @staticmethod
    def _update(table: Dict[str, Any], entity: str, entity_id: str, patch: Dict[str, Any]):
        current = table.get(entity_id)
        if current is None:
            raise NotFoundError(entity, entity_id)
        data = current.model_dump()
        data.update({key: _plain(value) for key, value in patch.items()})
        if "updated_at" in type(current).model_fields:
            data["updated_at"] = datetime.utcnow()
        updated = type(current).model_validate(data)
        table[entity_id] = updated
        return updated.model_copy(deep=True)

    @staticmethod
    def _check_permutation(kind: str, siblings: List[str], ordered_ids: List[str]):
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(siblings):
            raise ValidationError(
                f"Reorder of {kind} must list every sibling exactly once", field="ordered_ids"
            )
