"""
Task Tree Model

H1 tasks owning ordered H2 subtasks. Same confirmed/working snapshot
discipline as the document tree: optimistic apply, store round-trip through
the write queue, rollback of working on failure.
"""

import copy
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import BusinessPlanError, NotFoundError, TransientError, ValidationError
from bizplan.models.business_plan_models import (
    HierarchyLevel,
    Task,
    TaskNode,
    TaskPatch,
    TaskStatus,
)
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.services.write_queue import EntityWriteQueue
from bizplan.utils.id_generator import generate_temp_id, is_temp_id
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

MAX_TASK_TITLE = 300


class TaskSnapshot:
    def __init__(self, tasks: Optional[Dict[str, Task]] = None):
        self.tasks: Dict[str, Task] = tasks or {}

    def copy(self) -> "TaskSnapshot":
        return TaskSnapshot(copy.deepcopy(self.tasks))

    def children(self, parent_task_id: Optional[str]) -> List[Task]:
        rows = [t for t in self.tasks.values() if t.parent_task_id == parent_task_id]
        return sorted(rows, key=lambda t: t.order_index)

    def build_tree(self) -> List[TaskNode]:
        return [
            TaskNode(**task.model_dump(), children=self.children(task.id))
            for task in self.children(None)
            if task.hierarchy_level == HierarchyLevel.H1
        ]

    def put(self, task: Task, replaces: Optional[str] = None):
        if replaces and replaces != task.id:
            self.tasks.pop(replaces, None)
            for child in self.tasks.values():
                if child.parent_task_id == replaces:
                    child.parent_task_id = task.id
        self.tasks[task.id] = task

    def remove(self, task_ids: List[str]):
        doomed = set(task_ids)
        parents = {self.tasks[tid].parent_task_id for tid in doomed if tid in self.tasks}
        for task_id in doomed:
            self.tasks.pop(task_id, None)
        for parent_id in parents:
            for index, task in enumerate(self.children(parent_id)):
                task.order_index = index

    def set_order(self, ordered_ids: List[str]):
        for index, task_id in enumerate(ordered_ids):
            if task_id in self.tasks:
                self.tasks[task_id].order_index = index


class TaskTreeModel:
    """H1/H2 task hierarchy of one business plan"""

    def __init__(
        self,
        store: EntityStore,
        business_plan_id: str,
        write_queue: Optional[EntityWriteQueue] = None,
        lifetime: Optional[SessionLifetime] = None,
    ):
        self.store = store
        self.business_plan_id = business_plan_id
        self.write_queue = write_queue or EntityWriteQueue()
        self.lifetime = lifetime or SessionLifetime()
        self.confirmed = TaskSnapshot()
        self.working = TaskSnapshot()
        self._resolved_ids: Dict[str, str] = {}

    async def load(self) -> bool:
        applied, tasks = await self.lifetime.guard(
            self.store.list_tasks(self.business_plan_id), "task load"
        )
        if not applied:
            return False
        self.confirmed = TaskSnapshot({t.id: t for t in tasks})
        self.working = self.confirmed.copy()
        self._resolved_ids.clear()
        logger.info(f"✅ Loaded {len(tasks)} tasks for {self.business_plan_id}")
        return True

    def tree(self) -> List[TaskNode]:
        return self.working.build_tree()

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.working.tasks.get(self._resolve(task_id))

    async def add_task(
        self,
        title: str,
        hierarchy_level: Union[HierarchyLevel, str],
        parent_task_id: Optional[str] = None,
        status: Union[TaskStatus, str] = TaskStatus.TODO,
        instructions: str = "",
        ai_prompt: str = "",
    ) -> Optional[Task]:
        """
        Append a task after its last sibling

        Raises:
            ValidationError: empty title, H2 without an existing H1 parent,
                H1 with a parent, unknown level or status
        """
        title = self._clean_title(title)
        level = self._coerce(HierarchyLevel, hierarchy_level, "hierarchy_level")
        status = self._coerce(TaskStatus, status, "status")

        if level == HierarchyLevel.H1:
            if parent_task_id is not None:
                raise ValidationError("H1 tasks cannot have a parent", field="parent_task_id")
        else:
            if not parent_task_id:
                raise ValidationError("H2 tasks require a parent H1 task", field="parent_task_id")
            parent_task_id = self._resolve(parent_task_id)
            parent = self.working.tasks.get(parent_task_id)
            if parent is None or parent.hierarchy_level != HierarchyLevel.H1:
                raise ValidationError(
                    f"Parent {parent_task_id} is not an existing H1 task",
                    field="parent_task_id",
                )

        temp_id = generate_temp_id("task")
        order_index = len(self.working.children(parent_task_id))
        fields = {
            "title": title,
            "hierarchy_level": level,
            "parent_task_id": parent_task_id,
            "status": status,
            "instructions": instructions or "",
            "ai_prompt": ai_prompt or "",
            "order_index": order_index,
        }
        placeholder = Task(id=temp_id, business_plan_id=self.business_plan_id, **fields)

        def settle(snapshot: TaskSnapshot, task: Task):
            self._resolved_ids[temp_id] = task.id
            snapshot.put(task.model_copy(deep=True), replaces=temp_id)

        task = await self._commit(
            [parent_task_id, temp_id] if parent_task_id and is_temp_id(parent_task_id) else [temp_id],
            lambda snapshot: snapshot.put(placeholder.model_copy(deep=True)),
            lambda: self.store.create_task(
                self.business_plan_id,
                {**fields, "parent_task_id": self._resolve(parent_task_id)},
            ),
            settle,
            "add task",
        )
        if task:
            logger.info(f"✅ Added {task.hierarchy_level.value} task {task.id}: {task.title}")
        return task

    async def update_task(
        self, task_id: str, patch: Union[TaskPatch, Dict[str, Any]]
    ) -> Optional[Task]:
        """
        Apply a partial update; omitted fields keep their values

        Raises:
            NotFoundError: unknown task
            ValidationError: empty patch or invalid field values
        """
        task_id = self._resolve(task_id)
        current = self._require(task_id)
        if not isinstance(patch, TaskPatch):
            try:
                patch = TaskPatch(**(patch or {}))
            except PydanticValidationError as e:
                raise ValidationError(
                    f"Invalid task update: {e.errors()[0]['msg']}", field="patch"
                ) from e
        changes = patch.changes()
        if not changes:
            raise ValidationError("Task update has no fields to change", field="patch")
        if "title" in changes:
            changes["title"] = self._clean_title(changes["title"])
        optimistic = current.model_copy(update=changes)

        return await self._commit(
            [task_id],
            lambda snapshot: snapshot.put(optimistic.model_copy(deep=True)),
            lambda: self.store.update_task(self._resolve(task_id), changes),
            lambda snapshot, task: snapshot.put(task.model_copy(deep=True)),
            "update task",
        )

    async def delete_task(self, task_id: str) -> List[str]:
        """
        Delete a task; an H1 takes its H2 children with it in one batch

        A partially applied batch raises TransientError after confirmed state
        has been reloaded from the store.
        """
        task_id = self._resolve(task_id)
        task = self._require(task_id)
        doomed = [task_id] + [child.id for child in self.working.children(task_id)]
        parent_id = task.parent_task_id

        async def write():
            ids = [self._resolve(tid) for tid in doomed]
            deleted = await self.store.delete_tasks(ids)
            if deleted != len(ids):
                raise TransientError(f"Deleted {deleted} of {len(ids)} tasks; reload required")
            siblings = sorted(
                [
                    t
                    for t in await self.store.list_tasks(self.business_plan_id)
                    if t.parent_task_id == self._resolve(parent_id)
                ],
                key=lambda t: t.order_index,
            )
            if [t.order_index for t in siblings] != list(range(len(siblings))):
                await self.store.reorder_tasks(
                    self.business_plan_id, self._resolve(parent_id), [t.id for t in siblings]
                )
            return ids

        try:
            removed = await self._commit(
                [task_id],
                lambda snapshot: snapshot.remove(doomed),
                write,
                lambda snapshot, ids: snapshot.remove(ids),
                "delete task",
            )
        except TransientError:
            logger.warning(f"⚠️ Task delete for {task_id} may be partial, reloading tasks")
            try:
                await self.load()
            except BusinessPlanError as reload_error:
                logger.error(f"❌ Reload after partial task delete failed: {reload_error}")
            raise
        if removed is None:
            return []
        logger.info(f"🗑️ Deleted task {task_id} with {len(removed) - 1} subtasks")
        return removed

    async def reorder_tasks(
        self, ordered_ids: List[str], parent_task_id: Optional[str] = None
    ) -> List[Task]:
        if parent_task_id is not None:
            parent_task_id = self._resolve(parent_task_id)
            self._require(parent_task_id)
        ordered_ids = [self._resolve(tid) for tid in ordered_ids]
        siblings = [t.id for t in self.working.children(parent_task_id)]
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(siblings):
            raise ValidationError(
                "Reorder of tasks must list every sibling exactly once", field="ordered_ids"
            )

        async def write():
            resolved = [self._resolve(tid) for tid in ordered_ids]
            await self.store.reorder_tasks(
                self.business_plan_id, self._resolve(parent_task_id), resolved
            )
            return resolved

        await self._commit(
            [parent_task_id or self.business_plan_id] + [t for t in ordered_ids if is_temp_id(t)],
            lambda snapshot: snapshot.set_order(ordered_ids),
            write,
            lambda snapshot, ids: snapshot.set_order(ids),
            "reorder tasks",
        )
        logger.info(f"🔄 Reordered {len(ordered_ids)} tasks under {parent_task_id or 'root'}")
        return self.working.children(parent_task_id)

    # ============ HELPERS ============

    async def _commit(
        self,
        lock_ids: List[str],
        optimistic: Callable[[TaskSnapshot], None],
        write: Callable[[], Awaitable[Any]],
        settle: Callable[[TaskSnapshot, Any], None],
        what: str,
    ):
        optimistic(self.working)
        try:
            async with AsyncExitStack() as stack:
                for lock_id in lock_ids:
                    await stack.enter_async_context(self.write_queue.hold(lock_id))
                applied, result = await self.lifetime.guard(write(), what)
        except Exception as e:
            logger.error(f"❌ Failed to {what}, rolling back: {e}")
            self.working = self.confirmed.copy()
            raise
        if not applied:
            return None
        settle(self.confirmed, result)
        settle(self.working, result)
        return result

    def _resolve(self, task_id: Optional[str]) -> Optional[str]:
        return self._resolved_ids.get(task_id, task_id)

    def _require(self, task_id: str) -> Task:
        task = self.working.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    @staticmethod
    def _clean_title(title: Optional[str]) -> str:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title cannot be empty", field="title")
        if len(title) > MAX_TASK_TITLE:
            raise ValidationError(f"Task title exceeds {MAX_TASK_TITLE} characters", field="title")
        return title

    @staticmethod
    def _coerce(enum_cls, value, field: str):
        try:
            return enum_cls(value)
        except ValueError as e:
            raise ValidationError(f"Invalid {field}: {value!r}", field=field) from e
