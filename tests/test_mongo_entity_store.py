"""
Unit Tests for MongoEntityStore
Motor collections are mocked; these tests cover document mapping and the
translation of pymongo failures into store errors.

Run tests:
python -m pytest tests/test_mongo_entity_store.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from bizplan.database.mongo_entity_store import MongoEntityStore
from bizplan.exceptions import NotFoundError, TransientError, ValidationError
from bizplan.models.business_plan_models import Chapter


class FakeCursor:
    """Async cursor over a fixed list of documents"""

    def __init__(self, docs):
        self.docs = list(docs)
        self.sort_args = None

    def sort(self, *args):
        self.sort_args = args
        return self

    def __aiter__(self):
        self._iter = iter(self.docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


@pytest.fixture
def mock_db():
    """Database mock handing out one AsyncMock collection per name"""
    collections = {}

    def collection(name):
        return collections.setdefault(name, AsyncMock())

    db = MagicMock()
    db.__getitem__.side_effect = collection
    return db


@pytest.fixture
def mongo_store(mock_db):
    return MongoEntityStore(mock_db)


@pytest.fixture
def chapter_doc():
    return {
        "id": "chapter_1",
        "business_plan_id": "plan_1",
        "parent_id": None,
        "title": "Market Analysis",
        "order_index": 0,
    }


class TestMongoEntityStore:
    @pytest.mark.asyncio
    async def test_list_chapters_sorted(self, mongo_store, chapter_doc):
        cursor = FakeCursor([chapter_doc])
        mongo_store.chapters.find = MagicMock(return_value=cursor)

        chapters = await mongo_store.list_chapters("plan_1")

        assert [c.id for c in chapters] == ["chapter_1"]
        assert isinstance(chapters[0], Chapter)
        assert cursor.sort_args == ("order_index", 1)
        mongo_store.chapters.find.assert_called_once_with(
            {"business_plan_id": "plan_1"}, {"_id": 0}
        )

    @pytest.mark.asyncio
    async def test_create_chapter_inserts_document(self, mongo_store):
        chapter = await mongo_store.create_chapter(
            "plan_1", {"title": "Team", "parent_id": None, "order_index": 2}
        )

        inserted = mongo_store.chapters.insert_one.call_args[0][0]
        assert inserted["id"] == chapter.id
        assert inserted["order_index"] == 2
        assert chapter.id.startswith("chapter_")

    @pytest.mark.asyncio
    async def test_duplicate_key_is_validation_error(self, mongo_store):
        mongo_store.chapters.insert_one.side_effect = DuplicateKeyError("dup id")

        with pytest.raises(ValidationError):
            await mongo_store.create_chapter("plan_1", {"title": "Team"})

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self, mongo_store):
        mongo_store.chapters.find = MagicMock(side_effect=ConnectionFailure("unreachable"))

        with pytest.raises(TransientError):
            await mongo_store.list_chapters("plan_1")

    @pytest.mark.asyncio
    async def test_other_pymongo_error_is_transient(self, mongo_store):
        mongo_store.tasks.find_one_and_update.side_effect = OperationFailure("boom")

        with pytest.raises(TransientError):
            await mongo_store.update_task("task_1", {"status": "done"})

    @pytest.mark.asyncio
    async def test_update_missing_entity(self, mongo_store):
        mongo_store.chapters.find_one_and_update.return_value = None

        with pytest.raises(NotFoundError) as exc_info:
            await mongo_store.update_chapter("chapter_missing", {"title": "X"})

        assert exc_info.value.entity == "chapter"

    @pytest.mark.asyncio
    async def test_update_sets_updated_at(self, mongo_store, chapter_doc):
        mongo_store.chapters.find_one_and_update.return_value = {**chapter_doc, "title": "New"}

        chapter = await mongo_store.update_chapter("chapter_1", {"title": "New"})

        assert chapter.title == "New"
        update = mongo_store.chapters.find_one_and_update.call_args[0][1]
        assert update["$set"]["title"] == "New"
        assert "updated_at" in update["$set"]

    @pytest.mark.asyncio
    async def test_create_section_requires_chapter(self, mongo_store):
        mongo_store.chapters.find_one.return_value = None

        with pytest.raises(NotFoundError):
            await mongo_store.create_section(
                "chapter_missing", {"content": {"type": "text", "text": "x"}}
            )

    @pytest.mark.asyncio
    async def test_create_section_stores_plan_and_content(self, mongo_store, chapter_doc):
        mongo_store.chapters.find_one.return_value = chapter_doc

        section = await mongo_store.create_section(
            "chapter_1", {"content": {"type": "list", "items": ["a"]}, "order_index": 0}
        )

        inserted = mongo_store.sections.insert_one.call_args[0][0]
        assert inserted["business_plan_id"] == "plan_1"
        assert inserted["content"] == {"type": "list", "items": ["a"], "ordered": False}
        assert section.section_type == "list"

    @pytest.mark.asyncio
    async def test_partial_task_delete_is_transient(self, mongo_store):
        mongo_store.tasks.delete_many.return_value = MagicMock(deleted_count=1)

        with pytest.raises(TransientError):
            await mongo_store.delete_tasks(["task_1", "task_2"])

    @pytest.mark.asyncio
    async def test_partial_chapter_delete_is_transient(self, mongo_store):
        mongo_store.chapters.delete_many.return_value = MagicMock(deleted_count=1)

        with pytest.raises(TransientError):
            await mongo_store.delete_chapters(["chapter_1", "chapter_2"])

        mongo_store.sections.delete_many.assert_awaited_once_with(
            {"chapter_id": {"$in": ["chapter_1", "chapter_2"]}}
        )

    @pytest.mark.asyncio
    async def test_delete_nothing_found(self, mongo_store):
        mongo_store.chapters.delete_many.return_value = MagicMock(deleted_count=0)

        with pytest.raises(NotFoundError):
            await mongo_store.delete_chapters(["chapter_missing"])

    @pytest.mark.asyncio
    async def test_reorder_requires_full_permutation(self, mongo_store):
        mongo_store.chapters.distinct.return_value = ["chapter_1", "chapter_2"]

        with pytest.raises(ValidationError):
            await mongo_store.reorder_chapters("plan_1", None, ["chapter_2"])

        mongo_store.chapters.bulk_write.assert_not_called()

    @pytest.mark.asyncio
    async def test_reorder_writes_indices_in_bulk(self, mongo_store):
        mongo_store.sections.distinct.return_value = ["s1", "s2"]

        await mongo_store.reorder_sections("chapter_1", ["s2", "s1"])

        operations = mongo_store.sections.bulk_write.call_args[0][0]
        assert len(operations) == 2
        assert mongo_store.sections.bulk_write.call_args[1] == {"ordered": True}

    @pytest.mark.asyncio
    async def test_legacy_change_status_normalized_on_read(self, mongo_store):
        mongo_store.pending_changes.find = MagicMock(
            return_value=FakeCursor(
                [
                    {
                        "id": "change_1",
                        "message_id": "msg_1",
                        "change_type": "add_chapter",
                        "proposed_data": {"title": "X"},
                        "status": "accepted",
                    }
                ]
            )
        )

        changes = await mongo_store.list_pending_changes(["msg_1"])

        assert changes[0].status.value == "approved"
