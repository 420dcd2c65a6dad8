"""
Unit Tests for ChangeProposalEngine
Staging, accepting and rejecting pending changes

Run tests:
python -m pytest tests/test_change_proposal_engine.py -v
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bizplan.exceptions import (
    NotFoundError,
    StaleChangeError,
    TransientError,
    ValidationError,
)
from bizplan.models.ai_chat_models import ChangeStatus, ChangeType, MessageRole
from bizplan.models.business_plan_models import TaskStatus
from bizplan.services.change_proposal_engine import ChangeProposalEngine
from bizplan.services.document_tree import DocumentTreeModel
from bizplan.services.task_tree import TaskTreeModel


@pytest.fixture
def assistant_message(log):
    async def _make(content="Here is a proposal."):
        return await log.append(MessageRole.ASSISTANT, content)

    return _make


async def _stage_one(engine, assistant_message, change_type, target_id=None, **data):
    message = await assistant_message()
    staged = await engine.stage_changes(
        message,
        [{"change_type": change_type, "target_id": target_id, "proposed_data": data}],
    )
    assert len(staged) == 1
    return staged[0]


class TestStaging:
    @pytest.mark.asyncio
    async def test_stage_creates_pending_changes(self, engine, store, assistant_message):
        message = await assistant_message()

        staged = await engine.stage_changes(
            message,
            [
                {"change_type": "add_chapter", "proposed_data": {"title": "Market Analysis"}},
                {"change_type": "add_task", "proposed_data": {"title": "Size the market"}},
            ],
        )

        assert [c.change_type for c in staged] == [ChangeType.ADD_CHAPTER, ChangeType.ADD_TASK]
        assert all(c.status == ChangeStatus.PENDING for c in staged)
        assert all(c.message_id == message.id for c in staged)
        assert set(store.pending_changes) == {c.id for c in staged}
        assert engine.changes_for_message(message.id) == staged

    @pytest.mark.asyncio
    async def test_staging_does_not_touch_trees(self, engine, doc, tasks, assistant_message):
        await _stage_one(engine, assistant_message, "add_chapter", title="Not yet")

        assert doc.tree() == []
        assert tasks.tree() == []

    @pytest.mark.asyncio
    async def test_user_message_cannot_propose(self, engine, log):
        message = await log.append(MessageRole.USER, "Add a chapter please")

        with pytest.raises(ValidationError):
            await engine.stage_changes(
                message, [{"change_type": "add_chapter", "proposed_data": {"title": "X"}}]
            )

    @pytest.mark.asyncio
    async def test_duplicates_and_invalid_drafts_dropped(self, engine, assistant_message):
        message = await assistant_message()
        draft = {"change_type": "add_chapter", "proposed_data": {"title": "Team"}}

        staged = await engine.stage_changes(
            message,
            [
                draft,
                dict(draft),
                {"change_type": "update_chapter", "target_id": "chapter_1", "proposed_data": {}},
                {"change_type": "delete_task", "proposed_data": {}},
                {"change_type": "rename_everything", "proposed_data": {}},
            ],
        )

        assert len(staged) == 1
        assert staged[0].proposed_data == {"title": "Team"}

    @pytest.mark.asyncio
    async def test_target_cleared_for_add_changes(self, engine, assistant_message):
        change = await _stage_one(
            engine, assistant_message, "add_chapter", target_id="chapter_1", title="Team"
        )

        assert change.target_id is None


class TestAccept:
    @pytest.mark.asyncio
    async def test_accept_add_section_to_existing_chapter(
        self, engine, doc, store, assistant_message
    ):
        """User asks for market content; the section appears only after accept"""
        chapter = await doc.add_chapter("Market Analysis")
        change = await _stage_one(
            engine,
            assistant_message,
            "add_section",
            chapter_id=chapter.id,
            section_type="text",
            content={"text": "The regional market is worth $40M."},
        )
        assert doc.tree()[0].sections == []

        resolution = await engine.accept(change.id)

        assert resolution.action == "approved"
        assert resolution.pending_change.status == ChangeStatus.APPROVED
        assert resolution.pending_change.resolved_at is not None
        sections = doc.tree()[0].sections
        assert len(sections) == 1
        assert sections[0].content.text == "The regional market is worth $40M."
        assert resolution.result["entity"]["id"] == sections[0].id
        assert store.pending_changes[change.id].status == ChangeStatus.APPROVED

    @pytest.mark.asyncio
    async def test_accept_matches_direct_edit(self, store, assistant_message, engine, doc):
        """Accepting a change yields the same tree as performing the edit directly"""
        direct_store_doc = DocumentTreeModel(type(store)(), "plan_direct")
        await direct_store_doc.add_chapter("Go-to-market")
        await direct_store_doc.add_chapter("Pricing")

        change_a = await _stage_one(engine, assistant_message, "add_chapter", title="Go-to-market")
        change_b = await _stage_one(engine, assistant_message, "add_chapter", title="Pricing")
        await engine.accept(change_a.id)
        await engine.accept(change_b.id)

        def shape(model):
            return [(c.title, c.order_index, c.parent_id) for c in model.tree()]

        assert shape(doc) == shape(direct_store_doc)

    @pytest.mark.asyncio
    async def test_accept_update_task_status(self, engine, tasks, assistant_message):
        task = await tasks.add_task("Market sizing", "h1")
        change = await _stage_one(
            engine, assistant_message, "update_task", target_id=task.id, status="done"
        )

        await engine.accept(change.id)

        assert tasks.get_task(task.id).status == TaskStatus.DONE
        assert tasks.get_task(task.id).title == "Market sizing"

    @pytest.mark.asyncio
    async def test_accept_delete_chapter_returns_ids(self, engine, doc, assistant_message):
        chapter = await doc.add_chapter("Appendix")
        change = await _stage_one(engine, assistant_message, "delete_chapter", target_id=chapter.id)

        resolution = await engine.accept(change.id)

        assert resolution.result == {"ids": [chapter.id]}
        assert doc.tree() == []

    @pytest.mark.asyncio
    async def test_accept_twice_is_stale(self, engine, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Team")
        await engine.accept(change.id)

        with pytest.raises(StaleChangeError) as exc_info:
            await engine.accept(change.id)

        assert exc_info.value.status == "approved"

    @pytest.mark.asyncio
    async def test_unknown_change(self, engine):
        with pytest.raises(NotFoundError) as exc_info:
            await engine.accept("change_missing")

        assert exc_info.value.entity == "pending_change"

    @pytest.mark.asyncio
    async def test_malformed_payload_stays_pending(self, engine, doc, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", parent_id=None)

        with pytest.raises(ValidationError):
            await engine.accept(change.id)

        current = engine.get_change(change.id)
        assert current.status == ChangeStatus.PENDING
        assert "title" in current.last_error
        assert doc.tree() == []

    @pytest.mark.asyncio
    async def test_deleted_target_stays_pending(self, engine, doc, assistant_message):
        chapter = await doc.add_chapter("Soon gone")
        change = await _stage_one(
            engine, assistant_message, "update_chapter", target_id=chapter.id, title="Renamed"
        )
        await doc.delete_chapter(chapter.id)

        with pytest.raises(NotFoundError) as exc_info:
            await engine.accept(change.id)

        assert exc_info.value.auto_rejected is False
        current = engine.get_change(change.id)
        assert current.status == ChangeStatus.PENDING
        assert current.last_error == exc_info.value.message
        # still dismissable
        resolution = await engine.reject(change.id)
        assert resolution.pending_change.status == ChangeStatus.REJECTED

    @pytest.mark.asyncio
    async def test_deleted_target_auto_rejected(self, store, doc, tasks, lifetime, assistant_message):
        engine = ChangeProposalEngine(
            store, doc, tasks, auto_reject_orphaned=True, lifetime=lifetime
        )
        change = await _stage_one(
            engine, assistant_message, "delete_task", target_id="task_missing"
        )

        with pytest.raises(NotFoundError) as exc_info:
            await engine.accept(change.id)

        assert exc_info.value.auto_rejected is True
        assert engine.get_change(change.id).status == ChangeStatus.REJECTED
        assert store.pending_changes[change.id].status == ChangeStatus.REJECTED

    @pytest.mark.asyncio
    async def test_retry_after_status_write_failure_does_not_reapply(
        self, engine, doc, store, assistant_message
    ):
        """The tree mutation runs once even when marking approved has to be retried"""
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Once")
        real_update = store.update_pending_change
        calls = []

        async def flaky_update(change_id, patch_data):
            calls.append(change_id)
            if len(calls) == 1:
                raise TransientError("store down")
            return await real_update(change_id, patch_data)

        with patch.object(store, "update_pending_change", flaky_update):
            with pytest.raises(TransientError):
                await engine.accept(change.id)
            assert engine.get_change(change.id).status == ChangeStatus.PENDING

            resolution = await engine.accept(change.id)

        assert resolution.action == "approved"
        assert [c.title for c in doc.tree()] == ["Once"]
        assert len(store.chapters) == 1

    @pytest.mark.asyncio
    async def test_concurrent_accepts_apply_once(self, engine, doc, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Race")

        results = await asyncio.gather(
            engine.accept(change.id), engine.accept(change.id), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], StaleChangeError)
        assert len(doc.tree()) == 1


class TestAcceptReorder:
    @pytest.mark.asyncio
    async def test_accept_reorder_chapters(self, engine, doc, store, assistant_message):
        c1, c2, c3 = [await doc.add_chapter(t) for t in ("Summary", "Market", "Team")]
        change = await _stage_one(
            engine, assistant_message, "reorder_chapters", ordered_ids=[c3.id, c1.id, c2.id]
        )

        resolution = await engine.accept(change.id)

        assert resolution.pending_change.status == ChangeStatus.APPROVED
        assert [(c.id, c.order_index) for c in doc.tree()] == [(c3.id, 0), (c1.id, 1), (c2.id, 2)]
        assert [store.chapters[cid].order_index for cid in (c3.id, c1.id, c2.id)] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_incomplete_reorder_stays_pending(self, engine, doc, assistant_message):
        c1, c2, c3 = [await doc.add_chapter(t) for t in ("Summary", "Market", "Team")]
        change = await _stage_one(
            engine, assistant_message, "reorder_chapters", ordered_ids=[c3.id, c1.id]
        )

        with pytest.raises(ValidationError):
            await engine.accept(change.id)

        current = engine.get_change(change.id)
        assert current.status == ChangeStatus.PENDING
        assert current.last_error
        assert [c.id for c in doc.tree()] == [c1.id, c2.id, c3.id]

    @pytest.mark.asyncio
    async def test_accept_reorder_sections(self, engine, doc, store, assistant_message):
        chapter = await doc.add_chapter("Products")
        first = await doc.add_section(chapter.id, {"type": "text", "text": "Roasted beans"})
        second = await doc.add_section(chapter.id, {"type": "text", "text": "Subscriptions"})
        change = await _stage_one(
            engine,
            assistant_message,
            "reorder_sections",
            chapter_id=chapter.id,
            ordered_ids=[second.id, first.id],
        )

        await engine.accept(change.id)

        assert [s.id for s in doc.tree()[0].sections] == [second.id, first.id]
        assert store.sections[second.id].order_index == 0


class TestMixedResolution:
    @pytest.mark.asyncio
    async def test_accept_one_reject_other_from_same_message(
        self, engine, doc, tasks, assistant_message
    ):
        """Changes from one reply are resolved independently"""
        task = await tasks.add_task("Market sizing", "h1")
        message = await assistant_message("A market chapter and a finished task.")
        add_chapter, update_task = await engine.stage_changes(
            message,
            [
                {"change_type": "add_chapter", "proposed_data": {"title": "Market Analysis"}},
                {
                    "change_type": "update_task",
                    "target_id": task.id,
                    "proposed_data": {"status": "done"},
                },
            ],
        )

        await engine.accept(add_chapter.id)
        await engine.reject(update_task.id)

        assert [c.title for c in doc.tree()] == ["Market Analysis"]
        assert tasks.get_task(task.id).status == TaskStatus.TODO
        assert [c.status for c in engine.changes_for_message(message.id)] == [
            ChangeStatus.APPROVED,
            ChangeStatus.REJECTED,
        ]
        assert engine.pending_changes() == []


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_leaves_trees_unchanged(self, engine, doc, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Nope")

        resolution = await engine.reject(change.id)

        assert resolution.action == "rejected"
        assert resolution.result is None
        assert doc.tree() == []

    @pytest.mark.asyncio
    async def test_reject_twice_is_stale(self, engine, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Nope")
        await engine.reject(change.id)

        with pytest.raises(StaleChangeError):
            await engine.reject(change.id)
        with pytest.raises(StaleChangeError):
            await engine.accept(change.id)

    @pytest.mark.asyncio
    async def test_reject_store_failure_keeps_pending(self, engine, store, assistant_message):
        change = await _stage_one(engine, assistant_message, "add_chapter", title="Later")

        with patch.object(
            store, "update_pending_change", AsyncMock(side_effect=TransientError("down"))
        ):
            with pytest.raises(TransientError):
                await engine.reject(change.id)

        assert engine.get_change(change.id).status == ChangeStatus.PENDING
        assert (await engine.reject(change.id)).action == "rejected"


class TestLoading:
    @pytest.mark.asyncio
    async def test_legacy_accepted_rows_load_as_approved(
        self, store, doc, tasks, log, assistant_message
    ):
        message = await assistant_message()
        legacy = await store.create_pending_change(
            {
                "message_id": message.id,
                "change_type": "add_chapter",
                "proposed_data": {"title": "Old"},
                "status": "accepted",
            }
        )
        engine = ChangeProposalEngine(store, doc, tasks, auto_reject_orphaned=False)

        await engine.load(log.message_ids())

        assert engine.get_change(legacy.id).status == ChangeStatus.APPROVED
        assert engine.pending_changes() == []
        assert engine.all_changes("accepted") == [engine.get_change(legacy.id)]
        with pytest.raises(StaleChangeError):
            await engine.accept(legacy.id)

    @pytest.mark.asyncio
    async def test_changes_for_target(self, engine, tasks, assistant_message):
        task = await tasks.add_task("Hire CFO", "h1")
        change = await _stage_one(engine, assistant_message, "delete_task", target_id=task.id)

        assert engine.changes_for_target(task.id) == [change]
        assert engine.changes_for_target("task_other") == []


def test_handlers_cover_every_change_type(store):
    engine = ChangeProposalEngine(
        store, DocumentTreeModel(store, "p"), TaskTreeModel(store, "p"), auto_reject_orphaned=False
    )

    assert set(engine._handlers) == set(ChangeType)
