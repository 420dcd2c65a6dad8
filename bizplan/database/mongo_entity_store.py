"""
MongoDB Entity Store
Async (motor) persistence for business plans, chapters, sections, tasks,
chat messages and pending changes
"""

import functools
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument, UpdateOne
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import NotFoundError, TransientError, ValidationError
from bizplan.models.ai_chat_models import ChatMessage, PendingChange
from bizplan.models.business_plan_models import BusinessPlan, Chapter, Section, Task
from bizplan.models.section_content_models import dump_section_content, parse_section_content
from bizplan.utils.id_generator import generate_entity_id
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

NO_ID = {"_id": 0}


def _store_call(func):
    """Translate pymongo failures into the store error taxonomy"""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except DuplicateKeyError as e:
            logger.warning(f"⚠️ Duplicate key in {func.__name__}: {e}")
            raise ValidationError(f"Duplicate entity: {e.details}") from e
        except ConnectionFailure as e:
            logger.error(f"❌ MongoDB unreachable during {func.__name__}: {e}")
            raise TransientError(f"Entity store unavailable: {e}") from e
        except PyMongoError as e:
            logger.error(f"❌ MongoDB error during {func.__name__}: {e}")
            raise TransientError(f"Entity store error: {e}") from e

    return wrapper


class MongoEntityStore(EntityStore):
    """Quản lý business plan entities trong MongoDB"""

    def __init__(self, db):
        """
        Initialize MongoEntityStore

        Args:
            db: Motor AsyncIOMotorDatabase
        """
        self.db = db
        self.plans = db["business_plans"]
        self.chapters = db["business_plan_chapters"]
        self.sections = db["business_plan_sections"]
        self.tasks = db["business_plan_tasks"]
        self.messages = db["business_plan_ai_messages"]
        self.pending_changes = db["business_plan_pending_changes"]

    async def create_indexes(self):
        """Create indexes for business plan collections"""
        try:
            await self.plans.create_index("id", unique=True)
            await self.plans.create_index("workspace_id", unique=True)
            await self.chapters.create_index("id", unique=True)
            await self.chapters.create_index(
                [("business_plan_id", 1), ("parent_id", 1), ("order_index", 1)]
            )
            await self.sections.create_index("id", unique=True)
            await self.sections.create_index([("chapter_id", 1), ("order_index", 1)])
            await self.sections.create_index("business_plan_id")
            await self.tasks.create_index("id", unique=True)
            await self.tasks.create_index(
                [("business_plan_id", 1), ("parent_task_id", 1), ("order_index", 1)]
            )
            await self.messages.create_index([("conversation_id", 1), ("created_at", 1)])
            await self.pending_changes.create_index("id", unique=True)
            await self.pending_changes.create_index("message_id")
            await self.pending_changes.create_index("target_id", sparse=True)
            logger.info("✅ Business plan indexes verified/created")
        except PyMongoError as e:
            logger.error(f"❌ Error creating business plan indexes: {e}")
            raise

    # ============ BUSINESS PLAN ============

    @_store_call
    async def get_or_create_business_plan(self, workspace_id: str) -> BusinessPlan:
        doc = await self.plans.find_one({"workspace_id": workspace_id}, NO_ID)
        if doc:
            return BusinessPlan(**doc)

        plan = BusinessPlan(id=generate_entity_id("plan"), workspace_id=workspace_id)
        await self.plans.insert_one(plan.model_dump(mode="python"))
        logger.info(f"✅ Created business plan {plan.id} for workspace {workspace_id}")
        return plan

    @_store_call
    async def update_business_plan(
        self, business_plan_id: str, patch: Dict[str, Any]
    ) -> BusinessPlan:
        doc = await self._update_one(self.plans, "business_plan", business_plan_id, patch)
        return BusinessPlan(**doc)

    # ============ CHAPTERS ============

    @_store_call
    async def list_chapters(self, business_plan_id: str) -> List[Chapter]:
        cursor = self.chapters.find({"business_plan_id": business_plan_id}, NO_ID).sort(
            "order_index", 1
        )
        return [Chapter(**doc) async for doc in cursor]

    @_store_call
    async def create_chapter(self, business_plan_id: str, data: Dict[str, Any]) -> Chapter:
        chapter = Chapter(
            id=generate_entity_id("chapter"),
            business_plan_id=business_plan_id,
            parent_id=data.get("parent_id"),
            title=data["title"],
            order_index=data.get("order_index", 0),
        )
        await self.chapters.insert_one(chapter.model_dump(mode="python"))
        logger.info(f"✅ Created chapter: {chapter.id} in plan {business_plan_id}")
        return chapter

    @_store_call
    async def update_chapter(self, chapter_id: str, patch: Dict[str, Any]) -> Chapter:
        doc = await self._update_one(self.chapters, "chapter", chapter_id, patch)
        return Chapter(**doc)

    @_store_call
    async def delete_chapters(self, chapter_ids: List[str]) -> int:
        if not chapter_ids:
            return 0
        # sections first: a failure in between leaves chapters without
        # sections, never sections without a chapter
        await self.sections.delete_many({"chapter_id": {"$in": chapter_ids}})
        result = await self.chapters.delete_many({"id": {"$in": chapter_ids}})
        if result.deleted_count == 0:
            raise NotFoundError("chapter", chapter_ids[0])
        if result.deleted_count != len(chapter_ids):
            raise TransientError(
                f"Deleted {result.deleted_count} of {len(chapter_ids)} chapters; reload required"
            )
        logger.info(f"🗑️ Deleted {result.deleted_count} chapters")
        return result.deleted_count

    @_store_call
    async def reorder_chapters(
        self, business_plan_id: str, parent_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        siblings = await self.chapters.distinct(
            "id", {"business_plan_id": business_plan_id, "parent_id": parent_id}
        )
        self._check_permutation("chapters", siblings, ordered_ids)
        await self._bulk_reorder(self.chapters, ordered_ids)
        logger.info(f"🔄 Reordered {len(ordered_ids)} chapters in plan {business_plan_id}")

    # ============ SECTIONS ============

    @_store_call
    async def list_sections(self, business_plan_id: str) -> List[Section]:
        cursor = self.sections.find({"business_plan_id": business_plan_id}, NO_ID).sort(
            "order_index", 1
        )
        return [Section(**doc) async for doc in cursor]

    @_store_call
    async def create_section(self, chapter_id: str, data: Dict[str, Any]) -> Section:
        chapter = await self.chapters.find_one({"id": chapter_id}, NO_ID)
        if not chapter:
            raise NotFoundError("chapter", chapter_id)

        section = Section(
            id=generate_entity_id("section"),
            chapter_id=chapter_id,
            order_index=data.get("order_index", 0),
            content=parse_section_content(data["content"]),
        )
        doc = self._section_doc(section)
        doc["business_plan_id"] = chapter["business_plan_id"]
        await self.sections.insert_one(doc)
        logger.info(f"✅ Created {section.section_type} section {section.id} in {chapter_id}")
        return section

    @_store_call
    async def update_section(self, section_id: str, patch: Dict[str, Any]) -> Section:
        if "content" in patch:
            patch = {**patch, "content": dump_section_content(patch["content"])}
        doc = await self._update_one(self.sections, "section", section_id, patch)
        return Section(**doc)

    @_store_call
    async def delete_sections(self, section_ids: List[str]) -> int:
        if not section_ids:
            return 0
        result = await self.sections.delete_many({"id": {"$in": section_ids}})
        if result.deleted_count == 0:
            raise NotFoundError("section", section_ids[0])
        logger.info(f"🗑️ Deleted {result.deleted_count} sections")
        return result.deleted_count

    @_store_call
    async def reorder_sections(self, chapter_id: str, ordered_ids: List[str]) -> None:
        siblings = await self.sections.distinct("id", {"chapter_id": chapter_id})
        self._check_permutation("sections", siblings, ordered_ids)
        await self._bulk_reorder(self.sections, ordered_ids)
        logger.info(f"🔄 Reordered {len(ordered_ids)} sections in chapter {chapter_id}")

    # ============ TASKS ============

    @_store_call
    async def list_tasks(self, business_plan_id: str) -> List[Task]:
        cursor = self.tasks.find({"business_plan_id": business_plan_id}, NO_ID).sort(
            "order_index", 1
        )
        return [Task(**doc) async for doc in cursor]

    @_store_call
    async def create_task(self, business_plan_id: str, data: Dict[str, Any]) -> Task:
        task = Task(
            id=generate_entity_id("task"), business_plan_id=business_plan_id, **data
        )
        await self.tasks.insert_one(task.model_dump(mode="python"))
        logger.info(f"✅ Created {task.hierarchy_level.value} task {task.id}")
        return task

    @_store_call
    async def update_task(self, task_id: str, patch: Dict[str, Any]) -> Task:
        doc = await self._update_one(self.tasks, "task", task_id, patch)
        return Task(**doc)

    @_store_call
    async def delete_tasks(self, task_ids: List[str]) -> int:
        if not task_ids:
            return 0
        result = await self.tasks.delete_many({"id": {"$in": task_ids}})
        if result.deleted_count == 0:
            raise NotFoundError("task", task_ids[0])
        if result.deleted_count != len(task_ids):
            raise TransientError(
                f"Deleted {result.deleted_count} of {len(task_ids)} tasks; reload required"
            )
        logger.info(f"🗑️ Deleted {result.deleted_count} tasks")
        return result.deleted_count

    @_store_call
    async def reorder_tasks(
        self, business_plan_id: str, parent_task_id: Optional[str], ordered_ids: List[str]
    ) -> None:
        siblings = await self.tasks.distinct(
            "id", {"business_plan_id": business_plan_id, "parent_task_id": parent_task_id}
        )
        self._check_permutation("tasks", siblings, ordered_ids)
        await self._bulk_reorder(self.tasks, ordered_ids)
        logger.info(f"🔄 Reordered {len(ordered_ids)} tasks in plan {business_plan_id}")

    # ============ CONVERSATION ============

    @_store_call
    async def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        cursor = self.messages.find({"conversation_id": conversation_id}, NO_ID).sort(
            "created_at", 1
        )
        return [ChatMessage(**doc) async for doc in cursor]

    @_store_call
    async def create_message(self, conversation_id: str, data: Dict[str, Any]) -> ChatMessage:
        message = ChatMessage(
            id=generate_entity_id("msg"), conversation_id=conversation_id, **data
        )
        await self.messages.insert_one(message.model_dump(mode="python"))
        return message

    @_store_call
    async def list_pending_changes(self, message_ids: List[str]) -> List[PendingChange]:
        if not message_ids:
            return []
        cursor = self.pending_changes.find(
            {"message_id": {"$in": message_ids}}, NO_ID
        ).sort("created_at", 1)
        return [PendingChange(**doc) async for doc in cursor]

    @_store_call
    async def create_pending_change(self, data: Dict[str, Any]) -> PendingChange:
        change = PendingChange(id=generate_entity_id("change"), **data)
        await self.pending_changes.insert_one(change.model_dump(mode="python"))
        return change

    @_store_call
    async def update_pending_change(
        self, change_id: str, patch: Dict[str, Any]
    ) -> PendingChange:
        doc = await self._update_one(self.pending_changes, "pending_change", change_id, patch)
        return PendingChange(**doc)

    # ============ HELPERS ============

    async def _update_one(self, collection, entity: str, entity_id: str, patch: Dict[str, Any]):
        updates = {
            key: (value.value if isinstance(value, Enum) else value)
            for key, value in patch.items()
        }
        updates["updated_at"] = datetime.utcnow()
        doc = await collection.find_one_and_update(
            {"id": entity_id},
            {"$set": updates},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NotFoundError(entity, entity_id)
        return doc

    async def _bulk_reorder(self, collection, ordered_ids: List[str]):
        now = datetime.utcnow()
        operations = [
            UpdateOne({"id": entity_id}, {"$set": {"order_index": index, "updated_at": now}})
            for index, entity_id in enumerate(ordered_ids)
        ]
        await collection.bulk_write(operations, ordered=True)

    @staticmethod
    def _check_permutation(kind: str, siblings: List[str], ordered_ids: List[str]):
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(siblings):
            raise ValidationError(
                f"Reorder of {kind} must list every sibling exactly once", field="ordered_ids"
            )

    @staticmethod
    def _section_doc(section: Section) -> Dict[str, Any]:
        doc = section.model_dump(mode="python")
        doc["content"] = dump_section_content(section.content)
        return doc
