"""
Unit Tests for pending change display helpers

Run tests:
python -m pytest tests/test_change_summary.py -v
"""

import pytest

from bizplan.models.ai_chat_models import ChangeType, PendingChange
from bizplan.services.change_summary import (
    change_label,
    describe_change,
    summarize_change,
    summarize_section_content,
    target_label,
)


def _change(change_type, target_id=None, **data):
    return PendingChange(
        id="change_1",
        message_id="msg_1",
        change_type=change_type,
        target_id=target_id,
        proposed_data=data,
    )


class TestSummarizeSectionContent:
    @pytest.mark.parametrize(
        "content,expected",
        [
            ({"type": "text", "text": "Hello world"}, "Hello world"),
            ({"type": "list", "items": ["a", "b", "c", "d", "e", "f"]}, "a, b, c, d, e"),
            (
                {"type": "table", "headers": ["A", "B"], "rows": [["1", "2"]]},
                "2 columns, 1 rows",
            ),
            ({"type": "image", "url": "https://x/y.png", "alt_text": "Logo"}, "Logo"),
            ({"type": "page_break"}, "page break"),
            ({"type": "empty_space", "height": 80}, "empty space (80px)"),
        ],
    )
    def test_previews(self, content, expected):
        assert summarize_section_content(content) == expected

    def test_long_text_truncated(self):
        assert len(summarize_section_content({"type": "text", "text": "x" * 500})) == 160

    def test_invalid_content_degrades(self):
        assert summarize_section_content({"type": "chart"}) == '{"type": "chart"}'
        assert summarize_section_content(None) == ""


class TestSummarizeChange:
    def test_add_chapter(self):
        assert summarize_change(_change("add_chapter", title="Team")) == "Title: Team"

    def test_update_chapter_without_title(self):
        assert summarize_change(_change("update_chapter", "c1")) == "Title: Untitled chapter"

    @pytest.mark.asyncio
    async def test_add_section_names_chapter(self, doc):
        chapter = await doc.add_chapter("Market Analysis")
        change = _change(
            "add_section", chapter_id=chapter.id, content={"type": "text", "text": "x"}
        )

        assert summarize_change(change, doc) == "Add text to Market Analysis"

    def test_add_section_unknown_chapter(self):
        change = _change("add_section", chapter_id="c9", section_type="list", content={})

        assert summarize_change(change) == "Add list to selected chapter"

    def test_update_section_preview(self):
        change = _change("update_section", "s1", newContent={"type": "text", "text": "New"})

        assert summarize_change(change) == "New"

    def test_add_task(self):
        change = _change("add_task", title="Hire CTO", hierarchy_level="h2")

        assert summarize_change(change) == "H2 task: Hire CTO"

    def test_update_task_lists_fields_in_order(self):
        change = _change("update_task", "t1", aiPrompt="Draft it", status="done", title="New")

        assert summarize_change(change) == "title: New | status: done | ai_prompt: Draft it"

    def test_delete_texts(self):
        assert summarize_change(_change("delete_chapter", "c1")) == (
            "Remove this chapter and its sections"
        )
        assert summarize_change(_change("reorder_sections", chapter_id="c1")) == (
            "Update section order"
        )


class TestTargetLabel:
    @pytest.mark.asyncio
    async def test_existing_and_deleted_targets(self, doc, tasks):
        chapter = await doc.add_chapter("Operations")
        task = await tasks.add_task("Lease office", "h1")

        assert target_label(_change("update_chapter", chapter.id), doc, tasks) == (
            "Chapter: Operations"
        )
        assert target_label(_change("delete_task", task.id), doc, tasks) == "Task: Lease office"
        assert target_label(_change("delete_section", "s_gone"), doc, tasks) == (
            "Section ID: s_gone"
        )

    def test_new_entities(self):
        assert target_label(_change("add_chapter")) == "New chapter"
        assert target_label(_change("add_task")) == "New task"
        assert target_label(_change("reorder_chapters")) == "Chapter order"


def test_every_change_type_has_a_label():
    assert all(change_label(t) for t in ChangeType)
    assert change_label("add_chapter") == "Add chapter"


@pytest.mark.asyncio
async def test_describe_change_keeps_change_fields(tasks):
    task = await tasks.add_task("Lease office", "h1")
    change = _change("update_task", task.id, title="Lease warehouse", status="in_progress")

    view = describe_change(change, tasks=tasks)

    assert view.id == change.id
    assert view.proposed_data == change.proposed_data
    assert view.label == "Update task"
    assert view.summary == "title: Lease warehouse | status: in_progress"
    assert view.target_label == "Task: Lease office"
