"""
Entity Store interface

The authoritative persistence layer for one business plan's chapters,
sections, tasks, messages and pending changes. The core only talks to it
through these verb-scoped async calls. Implementations report failures as
NotFoundError, ValidationError or TransientError so callers can tell
"gone" from "rejected" from "retry later".
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from bizplan.models.ai_chat_models import ChatMessage, PendingChange
from bizplan.models.business_plan_models import BusinessPlan, Chapter, Section, Task


class EntityStore(ABC):
    # ---------- Business plan ----------

    @abstractmethod
    async def get_or_create_business_plan(self, workspace_id: str) -> BusinessPlan:
        ...

    @abstractmethod
    async def update_business_plan(
        self, business_plan_id: str, patch: Dict[str, Any]
    ) -> BusinessPlan:
        ...

    # ---------- Chapters ----------

    @abstractmethod
    async def list_chapters(self, business_plan_id: str) -> List[Chapter]:
        ...

    @abstractmethod
    async def create_chapter(self, business_plan_id: str, data: Dict[str, Any]) -> Chapter:
        """data: title, parent_id, order_index"""

    @abstractmethod
    async def update_chapter(self, chapter_id: str, patch: Dict[str, Any]) -> Chapter:
        ...

    @abstractmethod
    async def delete_chapters(self, chapter_ids: List[str]) -> int:
        """
        Delete chapters and every section they own as one batch.

        Returns number of chapters deleted.
        """

    @abstractmethod
    async def reorder_chapters(
        self, business_plan_id: str, parent_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        ...

    # ---------- Sections ----------

    @abstractmethod
    async def list_sections(self, business_plan_id: str) -> List[Section]:
        ...

    @abstractmethod
    async def create_section(self, chapter_id: str, data: Dict[str, Any]) -> Section:
        """data: content, order_index"""

    @abstractmethod
    async def update_section(self, section_id: str, patch: Dict[str, Any]) -> Section:
        ...

    @abstractmethod
    async def delete_sections(self, section_ids: List[str]) -> int:
        ...

    @abstractmethod
    async def reorder_sections(self, chapter_id: str, ordered_ids: List[str]) -> None:
        ...

    # ---------- Tasks ----------

    @abstractmethod
    async def list_tasks(self, business_plan_id: str) -> List[Task]:
        ...

    @abstractmethod
    async def create_task(self, business_plan_id: str, data: Dict[str, Any]) -> Task:
        ...

    @abstractmethod
    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> Task:
        ...

    @abstractmethod
    async def delete_tasks(self, task_ids: List[str]) -> int:
        """Delete tasks as one batch (an H1 and its H2 children)"""

    @abstractmethod
    async def reorder_tasks(
        self, business_plan_id: str, parent_task_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        ...

    # ---------- Conversation ----------

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        ...

    @abstractmethod
    async def create_message(self, conversation_id: str, data: Dict[str, Any]) -> ChatMessage:
        ...

    @abstractmethod
    async def list_pending_changes(self, message_ids: List[str]) -> List[PendingChange]:
        ...

    @abstractmethod
    async def create_pending_change(self, data: Dict[str, Any]) -> PendingChange:
        ...

    @abstractmethod
    async def update_pending_change(
        self, change_id: str, patch: Dict[str, Any]
    ) -> PendingChange:
        ...
