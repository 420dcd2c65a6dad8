"""
Typed payloads for pending changes

PendingChange.proposed_data is stored type-erased; at accept time it is parsed
into exactly one of these models, selected by change_type. Keys written by the
drafting model in camelCase are accepted alongside snake_case.
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from bizplan.exceptions import ValidationError
from bizplan.models.ai_chat_models import ChangeType
from bizplan.models.business_plan_models import HierarchyLevel, TaskPatch, TaskStatus
from bizplan.models.section_content_models import SectionContent


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AddChapterPayload(_Payload):
    title: str = Field(..., min_length=1)
    parent_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("parent_id", "parentId", "parent_chapter_id"),
    )


class UpdateChapterPayload(_Payload):
    title: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("title", "new_title", "newTitle")
    )


class EmptyPayload(_Payload):
    """Deletes carry no data beyond the target id"""


class AddSectionPayload(_Payload):
    chapter_id: str = Field(..., validation_alias=AliasChoices("chapter_id", "chapterId"))
    section_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("section_type", "sectionType")
    )
    content: SectionContent

    @model_validator(mode="before")
    @classmethod
    def _content_type_from_section_type(cls, data: Any):
        # drafts sometimes send {"section_type": "text", "content": {"text": ...}}
        if isinstance(data, dict):
            section_type = data.get("section_type") or data.get("sectionType")
            content = data.get("content")
            if isinstance(content, dict) and "type" not in content and section_type:
                data = {**data, "content": {**content, "type": section_type}}
        return data

    @model_validator(mode="after")
    def _section_type_matches_content(self):
        if self.section_type and self.section_type != self.content.type:
            raise ValueError(
                f"section_type {self.section_type!r} does not match content type "
                f"{self.content.type!r}"
            )
        return self


class UpdateSectionPayload(_Payload):
    content: SectionContent = Field(
        ..., validation_alias=AliasChoices("content", "new_content", "newContent")
    )


class ReorderChaptersPayload(_Payload):
    ordered_ids: List[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "ordered_ids", "orderedIds", "ordered_chapter_ids", "orderedChapterIds"
        ),
    )
    parent_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("parent_id", "parentId")
    )


class ReorderSectionsPayload(_Payload):
    chapter_id: str = Field(..., validation_alias=AliasChoices("chapter_id", "chapterId"))
    ordered_ids: List[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices(
            "ordered_ids", "orderedIds", "ordered_section_ids", "orderedSectionIds"
        ),
    )


class AddTaskPayload(_Payload):
    title: str = Field(..., min_length=1)
    hierarchy_level: HierarchyLevel = Field(
        HierarchyLevel.H1,
        validation_alias=AliasChoices("hierarchy_level", "hierarchyLevel"),
    )
    parent_task_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("parent_task_id", "parentTaskId")
    )
    status: TaskStatus = TaskStatus.TODO
    instructions: str = ""
    ai_prompt: str = Field("", validation_alias=AliasChoices("ai_prompt", "aiPrompt"))


class UpdateTaskPayload(_Payload):
    title: Optional[str] = Field(None, min_length=1)
    status: Optional[TaskStatus] = None
    instructions: Optional[str] = None
    ai_prompt: Optional[str] = Field(
        None, validation_alias=AliasChoices("ai_prompt", "aiPrompt")
    )

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.to_patch().changes():
            raise ValueError("no updates provided")
        return self

    def to_patch(self) -> TaskPatch:
        fields = self.model_dump(exclude_none=True)
        return TaskPatch(**fields)


CHANGE_PAYLOAD_MODELS: Dict[ChangeType, Type[_Payload]] = {
    ChangeType.ADD_CHAPTER: AddChapterPayload,
    ChangeType.UPDATE_CHAPTER: UpdateChapterPayload,
    ChangeType.DELETE_CHAPTER: EmptyPayload,
    ChangeType.ADD_SECTION: AddSectionPayload,
    ChangeType.UPDATE_SECTION: UpdateSectionPayload,
    ChangeType.DELETE_SECTION: EmptyPayload,
    ChangeType.REORDER_CHAPTERS: ReorderChaptersPayload,
    ChangeType.REORDER_SECTIONS: ReorderSectionsPayload,
    ChangeType.ADD_TASK: AddTaskPayload,
    ChangeType.UPDATE_TASK: UpdateTaskPayload,
    ChangeType.DELETE_TASK: EmptyPayload,
}


def parse_change_payload(change_type: ChangeType, data: Dict[str, Any]) -> _Payload:
    """
    Validate proposed_data against the shape required by change_type

    Raises:
        ValidationError: payload is missing required fields or malformed
    """
    change_type = ChangeType(change_type)
    model = CHANGE_PAYLOAD_MODELS[change_type]
    if not isinstance(data, dict):
        raise ValidationError(
            f"{change_type.value}: proposed data must be an object", field="proposed_data"
        )
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "proposed_data"
        raise ValidationError(
            f"{change_type.value}: {location} is missing or invalid ({first['msg']})",
            field=location,
        ) from e
