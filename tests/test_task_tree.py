"""
Unit Tests for TaskTreeModel
H1/H2 hierarchy rules, partial updates and cascade deletes

Run tests:
python -m pytest tests/test_task_tree.py -v
"""

from unittest.mock import AsyncMock, patch

import pytest

from bizplan.exceptions import NotFoundError, TransientError, ValidationError
from bizplan.models.business_plan_models import HierarchyLevel, TaskPatch, TaskStatus


class TestAddTask:
    @pytest.mark.asyncio
    async def test_add_h1_and_h2(self, tasks):
        h1 = await tasks.add_task("Validate market", "h1")
        h2 = await tasks.add_task("Interview 10 customers", HierarchyLevel.H2, h1.id)

        tree = tasks.tree()
        assert [t.id for t in tree] == [h1.id]
        assert [c.id for c in tree[0].children] == [h2.id]
        assert h2.parent_task_id == h1.id
        assert h2.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_h2_without_parent_rejected(self, tasks, store):
        with pytest.raises(ValidationError) as exc_info:
            await tasks.add_task("Floating subtask", "h2")

        assert exc_info.value.field == "parent_task_id"
        assert store.tasks == {}

    @pytest.mark.asyncio
    async def test_h2_under_unknown_parent_rejected(self, tasks):
        with pytest.raises(ValidationError):
            await tasks.add_task("Subtask", "h2", "task_missing")

    @pytest.mark.asyncio
    async def test_h2_under_h2_rejected(self, tasks):
        h1 = await tasks.add_task("Parent", "h1")
        h2 = await tasks.add_task("Child", "h2", h1.id)

        with pytest.raises(ValidationError):
            await tasks.add_task("Grandchild", "h2", h2.id)

    @pytest.mark.asyncio
    async def test_h1_with_parent_rejected(self, tasks):
        h1 = await tasks.add_task("Parent", "h1")

        with pytest.raises(ValidationError):
            await tasks.add_task("Nested H1", "h1", h1.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"title": "", "hierarchy_level": "h1"},
            {"title": "Task", "hierarchy_level": "h3"},
            {"title": "Task", "hierarchy_level": "h1", "status": "blocked"},
        ],
    )
    async def test_invalid_fields_rejected(self, tasks, kwargs):
        with pytest.raises(ValidationError):
            await tasks.add_task(**kwargs)

    @pytest.mark.asyncio
    async def test_siblings_ordered_by_insertion(self, tasks):
        h1 = await tasks.add_task("Parent", "h1")
        first = await tasks.add_task("First", "h2", h1.id)
        second = await tasks.add_task("Second", "h2", h1.id)

        assert (first.order_index, second.order_index) == (0, 1)


class TestUpdateTask:
    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, tasks, store):
        task = await tasks.add_task("Write pitch", "h1", instructions="Two pages")

        updated = await tasks.update_task(task.id, {"status": "done"})

        assert updated.status == TaskStatus.DONE
        assert updated.title == "Write pitch"
        assert updated.instructions == "Two pages"
        assert store.tasks[task.id].status == TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_update_with_task_patch(self, tasks):
        task = await tasks.add_task("Write pitch", "h1")

        updated = await tasks.update_task(task.id, TaskPatch(title=" Final pitch "))

        assert updated.title == "Final pitch"

    @pytest.mark.asyncio
    async def test_empty_patch_rejected(self, tasks):
        task = await tasks.add_task("Write pitch", "h1")

        with pytest.raises(ValidationError):
            await tasks.update_task(task.id, {})

    @pytest.mark.asyncio
    async def test_hierarchy_not_patchable(self, tasks):
        task = await tasks.add_task("Write pitch", "h1")

        with pytest.raises(ValidationError):
            await tasks.update_task(task.id, {"hierarchy_level": "h2"})

    @pytest.mark.asyncio
    async def test_update_unknown_task(self, tasks):
        with pytest.raises(NotFoundError):
            await tasks.update_task("task_missing", {"status": "done"})

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, tasks, store):
        task = await tasks.add_task("Write pitch", "h1")

        with patch.object(
            store, "update_task", AsyncMock(side_effect=TransientError("store down"))
        ):
            with pytest.raises(TransientError):
                await tasks.update_task(task.id, {"status": "in_progress"})

        assert tasks.get_task(task.id).status == TaskStatus.TODO


class TestDeleteAndReorder:
    @pytest.mark.asyncio
    async def test_delete_h1_cascades_to_h2(self, tasks, store):
        h1 = await tasks.add_task("Parent", "h1")
        h2a = await tasks.add_task("Child A", "h2", h1.id)
        h2b = await tasks.add_task("Child B", "h2", h1.id)
        other = await tasks.add_task("Other", "h1")

        deleted = await tasks.delete_task(h1.id)

        assert set(deleted) == {h1.id, h2a.id, h2b.id}
        assert list(tasks.working.tasks) == [other.id]
        assert set(store.tasks) == {other.id}
        assert store.tasks[other.id].order_index == 0

    @pytest.mark.asyncio
    async def test_delete_h2_renumbers_siblings(self, tasks):
        h1 = await tasks.add_task("Parent", "h1")
        first = await tasks.add_task("First", "h2", h1.id)
        second = await tasks.add_task("Second", "h2", h1.id)

        await tasks.delete_task(first.id)

        assert tasks.get_task(second.id).order_index == 0
        assert tasks.get_task(h1.id) is not None

    @pytest.mark.asyncio
    async def test_partial_batch_delete_reloads(self, tasks, store):
        """A store that deletes only part of the batch forces a reload"""
        h1 = await tasks.add_task("Parent", "h1")
        h2 = await tasks.add_task("Child", "h2", h1.id)

        with patch.object(store, "delete_tasks", AsyncMock(return_value=1)):
            with pytest.raises(TransientError):
                await tasks.delete_task(h1.id)

        # the mocked store removed nothing, so the reload restores both
        assert set(tasks.working.tasks) == {h1.id, h2.id}
        assert set(tasks.confirmed.tasks) == {h1.id, h2.id}

    @pytest.mark.asyncio
    async def test_reorder_tasks(self, tasks):
        first = await tasks.add_task("First", "h1")
        second = await tasks.add_task("Second", "h1")

        ordered = await tasks.reorder_tasks([second.id, first.id])

        assert [t.id for t in ordered] == [second.id, first.id]
        assert [t.id for t in tasks.tree()] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_reorder_partial_rejected(self, tasks):
        first = await tasks.add_task("First", "h1")
        await tasks.add_task("Second", "h1")

        with pytest.raises(ValidationError):
            await tasks.reorder_tasks([first.id])
