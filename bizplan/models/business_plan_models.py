"""
Pydantic Models for Business Plans
Chapters (nested), typed sections and the parallel H1/H2 task hierarchy
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bizplan.models.section_content_models import SectionContent


class BusinessPlanStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class HierarchyLevel(str, Enum):
    H1 = "h1"
    H2 = "h2"


class BusinessPlan(BaseModel):
    """One business plan per workspace"""

    id: str
    workspace_id: str
    title: str = "Business Plan"
    status: BusinessPlanStatus = BusinessPlanStatus.DRAFT
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Chapter(BaseModel):
    """Flat chapter row as stored"""

    id: str
    business_plan_id: str
    parent_id: Optional[str] = Field(
        None, description="Parent chapter ID for nesting (null for root)"
    )
    title: str = Field(..., min_length=1, max_length=200)
    order_index: int = Field(default=0, ge=0, description="Order among siblings")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Section(BaseModel):
    """Typed content block owned by exactly one chapter"""

    id: str
    chapter_id: str
    order_index: int = Field(default=0, ge=0, description="Order within chapter")
    content: SectionContent
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def section_type(self) -> str:
        return self.content.type


class Task(BaseModel):
    """H1 task or H2 subtask"""

    id: str
    business_plan_id: str
    parent_task_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=300)
    instructions: str = ""
    ai_prompt: str = ""
    hierarchy_level: HierarchyLevel = HierarchyLevel.H1
    status: TaskStatus = TaskStatus.TODO
    order_index: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ChapterNode(Chapter):
    """Chapter with its ordered sections and nested children (tree structure)"""

    sections: List[Section] = Field(default_factory=list)
    children: List["ChapterNode"] = Field(default_factory=list)


ChapterNode.model_rebuild()


class TaskNode(Task):
    """H1 task with ordered H2 children"""

    children: List[Task] = Field(default_factory=list)


class BusinessPlanTree(BaseModel):
    """Response for the full plan"""

    business_plan: BusinessPlan
    chapters: List[ChapterNode]


class TaskTreeResponse(BaseModel):
    business_plan_id: str
    tasks: List[TaskNode]


# ============ REQUEST MODELS ============


class BusinessPlanUpdate(BaseModel):
    """Request model to rename the plan or change its status"""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    status: Optional[BusinessPlanStatus] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


class ChapterCreate(BaseModel):
    """Request model to add a chapter"""

    title: str = Field(..., min_length=1, max_length=200, description="Chapter title")
    parent_id: Optional[str] = Field(
        None, description="Parent chapter ID for nesting (null for root)"
    )


class ChapterUpdate(BaseModel):
    """Request model to rename a chapter"""

    title: str = Field(..., min_length=1, max_length=200)


class ChapterReorder(BaseModel):
    """Complete new ordering of one sibling set"""

    ordered_ids: List[str] = Field(..., min_length=1)
    parent_id: Optional[str] = None


class SectionCreate(BaseModel):
    chapter_id: str
    content: SectionContent


class SectionUpdate(BaseModel):
    content: SectionContent


class SectionReorder(BaseModel):
    chapter_id: str
    ordered_ids: List[str] = Field(..., min_length=1)


class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    hierarchy_level: HierarchyLevel = HierarchyLevel.H1
    parent_task_id: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    instructions: str = ""
    ai_prompt: str = ""


class TaskPatch(BaseModel):
    """
    Partial task update. Only fields explicitly set are applied; hierarchy
    and parent are not patchable (delete and re-add instead).
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=300)
    status: Optional[TaskStatus] = None
    instructions: Optional[str] = None
    ai_prompt: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v):
        return v.strip() if v is not None else v

    def changes(self) -> dict:
        """Fields actually present in the patch"""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class TaskReorder(BaseModel):
    ordered_ids: List[str] = Field(..., min_length=1)
    parent_task_id: Optional[str] = None
