"""
Pydantic Models for Section Content
Closed tagged union keyed on `type`: one model per content kind
"""

from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from bizplan.exceptions import ValidationError


SECTION_TYPES = (
    "section_title",
    "subsection",
    "text",
    "list",
    "table",
    "comparison_table",
    "image",
    "timeline",
    "embed",
    "page_break",
    "empty_space",
)


class SectionTitleContent(BaseModel):
    type: Literal["section_title"] = "section_title"
    text: str = Field(default="", description="Heading text")


class SubsectionContent(BaseModel):
    type: Literal["subsection"] = "subsection"
    text: str = Field(default="", description="Subheading text")


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str = Field(default="", description="Paragraph text (markdown)")


class ListContent(BaseModel):
    type: Literal["list"] = "list"
    items: List[str] = Field(default_factory=list)
    ordered: bool = Field(default=False, description="Numbered vs bulleted")


class _TableBase(BaseModel):
    headers: List[str] = Field(..., min_length=1, description="Column headers")
    rows: List[List[str]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _fit_rows_to_headers(self):
        # every row is exactly len(headers) cells wide
        width = len(self.headers)
        self.rows = [
            (list(row) + [""] * width)[:width] for row in self.rows
        ]
        return self


class TableContent(_TableBase):
    type: Literal["table"] = "table"


class ComparisonTableContent(_TableBase):
    type: Literal["comparison_table"] = "comparison_table"


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    url: str
    alt_text: str = ""
    caption: str = ""


class TimelineEntry(BaseModel):
    date: str
    title: str
    description: str = ""


class TimelineContent(BaseModel):
    type: Literal["timeline"] = "timeline"
    entries: List[TimelineEntry] = Field(default_factory=list)


class EmbedContent(BaseModel):
    type: Literal["embed"] = "embed"
    embed_type: Literal["html", "iframe", "video"] = "html"
    code: str = Field(default="", description="HTML/iframe markup or video URL")


class PageBreakContent(BaseModel):
    type: Literal["page_break"] = "page_break"


class EmptySpaceContent(BaseModel):
    type: Literal["empty_space"] = "empty_space"
    height: int = Field(default=40, ge=10, le=500, description="Height in pixels")


SectionContent = Annotated[
    Union[
        SectionTitleContent,
        SubsectionContent,
        TextContent,
        ListContent,
        TableContent,
        ComparisonTableContent,
        ImageContent,
        TimelineContent,
        EmbedContent,
        PageBreakContent,
        EmptySpaceContent,
    ],
    Field(discriminator="type"),
]

_SECTION_CONTENT_ADAPTER = TypeAdapter(SectionContent)


def parse_section_content(data: Any) -> SectionContent:
    """
    Validate raw content into its tagged model

    Raises:
        ValidationError: unknown type or fields invalid for the type
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        raise ValidationError("Section content must be an object", field="content")
    if data.get("type") not in SECTION_TYPES:
        raise ValidationError(
            f"Invalid section type: {data.get('type')!r}", field="content.type"
        )
    try:
        return _SECTION_CONTENT_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {data['type']} content: {e.errors()[0]['msg']}",
            field="content",
        ) from e


def dump_section_content(content: SectionContent) -> Dict[str, Any]:
    return _SECTION_CONTENT_ADAPTER.dump_python(content, mode="json")
