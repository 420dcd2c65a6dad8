"""
Document Tree Model

Chapters (nested, ordered among siblings) each owning an ordered list of typed
sections. Holds two snapshots of the plan:

- confirmed: last state acknowledged by the entity store
- working: confirmed plus every in-flight optimistic mutation

Each mutation is applied to working immediately, then sent to the store
through the per-entity write queue. The store's response is applied to both
snapshots; a failure resets working to confirmed and the error propagates.
"""

import asyncio
import copy
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import BusinessPlanError, NotFoundError, TransientError, ValidationError
from bizplan.models.business_plan_models import Chapter, ChapterNode, Section
from bizplan.models.section_content_models import parse_section_content
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.services.write_queue import EntityWriteQueue
from bizplan.utils.id_generator import generate_temp_id, is_temp_id
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

MAX_CHAPTER_TITLE = 200


class DocumentSnapshot:
    """Flat chapter and section rows keyed by id"""

    def __init__(
        self,
        chapters: Optional[Dict[str, Chapter]] = None,
        sections: Optional[Dict[str, Section]] = None,
    ):
        self.chapters: Dict[str, Chapter] = chapters or {}
        self.sections: Dict[str, Section] = sections or {}

    @classmethod
    def from_rows(cls, chapters: List[Chapter], sections: List[Section]) -> "DocumentSnapshot":
        return cls({c.id: c for c in chapters}, {s.id: s for s in sections})

    def copy(self) -> "DocumentSnapshot":
        return DocumentSnapshot(copy.deepcopy(self.chapters), copy.deepcopy(self.sections))

    def child_chapters(self, parent_id: Optional[str]) -> List[Chapter]:
        rows = [c for c in self.chapters.values() if c.parent_id == parent_id]
        return sorted(rows, key=lambda c: c.order_index)

    def chapter_sections(self, chapter_id: str) -> List[Section]:
        rows = [s for s in self.sections.values() if s.chapter_id == chapter_id]
        return sorted(rows, key=lambda s: s.order_index)

    def descendant_ids(self, chapter_id: str) -> List[str]:
        """chapter_id followed by every chapter nested beneath it"""
        ids = [chapter_id]
        for current in ids:
            ids.extend(c.id for c in self.chapters.values() if c.parent_id == current)
        return ids

    def build_tree(self) -> List[ChapterNode]:
        """
        Build the ordered chapter forest from flat rows

        Chapters whose parent is missing are promoted to the top level.
        """
        children_by_parent: Dict[Optional[str], List[Chapter]] = {}
        for chapter in self.chapters.values():
            parent_id = chapter.parent_id if chapter.parent_id in self.chapters else None
            children_by_parent.setdefault(parent_id, []).append(chapter)

        def build(parent_id: Optional[str]) -> List[ChapterNode]:
            nodes = []
            for chapter in sorted(
                children_by_parent.get(parent_id, []), key=lambda c: c.order_index
            ):
                nodes.append(
                    ChapterNode(
                        **chapter.model_dump(),
                        sections=self.chapter_sections(chapter.id),
                        children=build(chapter.id),
                    )
                )
            return nodes

        return build(None)

    # ---------- idempotent appliers ----------

    def put_chapter(self, chapter: Chapter, replaces: Optional[str] = None):
        if replaces and replaces != chapter.id:
            self.chapters.pop(replaces, None)
            for child in self.chapters.values():
                if child.parent_id == replaces:
                    child.parent_id = chapter.id
            for section in self.sections.values():
                if section.chapter_id == replaces:
                    section.chapter_id = chapter.id
        self.chapters[chapter.id] = chapter

    def put_section(self, section: Section, replaces: Optional[str] = None):
        if replaces and replaces != section.id:
            self.sections.pop(replaces, None)
        self.sections[section.id] = section

    def remove_chapters(self, chapter_ids: List[str]):
        doomed = set(chapter_ids)
        parents = {self.chapters[cid].parent_id for cid in doomed if cid in self.chapters}
        for section_id in [s.id for s in self.sections.values() if s.chapter_id in doomed]:
            del self.sections[section_id]
        for chapter_id in doomed:
            self.chapters.pop(chapter_id, None)
        for parent_id in parents:
            self.renumber_chapters(parent_id)

    def remove_section(self, section_id: str):
        section = self.sections.pop(section_id, None)
        if section:
            self.renumber_sections(section.chapter_id)

    def renumber_chapters(self, parent_id: Optional[str]):
        for index, chapter in enumerate(self.child_chapters(parent_id)):
            chapter.order_index = index

    def renumber_sections(self, chapter_id: str):
        for index, section in enumerate(self.chapter_sections(chapter_id)):
            section.order_index = index

    def set_chapter_order(self, ordered_ids: List[str]):
        for index, chapter_id in enumerate(ordered_ids):
            if chapter_id in self.chapters:
                self.chapters[chapter_id].order_index = index

    def set_section_order(self, ordered_ids: List[str]):
        for index, section_id in enumerate(ordered_ids):
            if section_id in self.sections:
                self.sections[section_id].order_index = index


class DocumentTreeModel:
    """Chapter/section tree of one business plan"""

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
        self.confirmed = DocumentSnapshot()
        self.working = DocumentSnapshot()
        # temp id -> id assigned by the store
        self._resolved_ids: Dict[str, str] = {}

    # ============ READS ============

    async def load(self) -> bool:
        """Fetch chapters and sections and rebuild both snapshots"""
        applied, rows = await self.lifetime.guard(
            asyncio.gather(
                self.store.list_chapters(self.business_plan_id),
                self.store.list_sections(self.business_plan_id),
            ),
            "document load",
        )
        if not applied:
            return False
        chapters, sections = rows
        self.confirmed = DocumentSnapshot.from_rows(chapters, sections)
        self.working = self.confirmed.copy()
        self._resolved_ids.clear()
        logger.info(
            f"✅ Loaded document tree for {self.business_plan_id}: "
            f"{len(chapters)} chapters, {len(sections)} sections"
        )
        return True

    def tree(self) -> List[ChapterNode]:
        return self.working.build_tree()

    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        return self.working.chapters.get(self._resolve(chapter_id))

    def get_section(self, section_id: str) -> Optional[Section]:
        return self.working.sections.get(self._resolve(section_id))

    # ============ CHAPTERS ============

    async def add_chapter(self, title: str, parent_id: Optional[str] = None) -> Optional[Chapter]:
        """
        Append a chapter after its last sibling

        Raises:
            ValidationError: empty or over-long title
            NotFoundError: parent_id is not a known chapter
        """
        title = self._clean_title(title)
        if parent_id is not None:
            parent_id = self._resolve(parent_id)
            if parent_id not in self.working.chapters:
                raise NotFoundError("chapter", parent_id)

        temp_id = generate_temp_id("chapter")
        order_index = len(self.working.child_chapters(parent_id))
        placeholder = Chapter(
            id=temp_id,
            business_plan_id=self.business_plan_id,
            parent_id=parent_id,
            title=title,
            order_index=order_index,
        )

        def settle(snapshot: DocumentSnapshot, chapter: Chapter):
            self._resolved_ids[temp_id] = chapter.id
            snapshot.put_chapter(chapter.model_copy(deep=True), replaces=temp_id)

        chapter = await self._commit(
            [parent_id, temp_id] if parent_id and is_temp_id(parent_id) else [temp_id],
            lambda snapshot: snapshot.put_chapter(placeholder.model_copy(deep=True)),
            lambda: self.store.create_chapter(
                self.business_plan_id,
                {
                    "title": title,
                    "parent_id": self._resolve(parent_id) if parent_id else None,
                    "order_index": order_index,
                },
            ),
            settle,
            "add chapter",
        )
        if chapter:
            logger.info(f"✅ Added chapter {chapter.id}: {chapter.title}")
        return chapter

    async def update_chapter(self, chapter_id: str, title: str) -> Optional[Chapter]:
        chapter_id = self._resolve(chapter_id)
        current = self._require_chapter(chapter_id)
        title = self._clean_title(title)
        optimistic = current.model_copy(update={"title": title})

        return await self._commit(
            [chapter_id],
            lambda snapshot: snapshot.put_chapter(optimistic.model_copy(deep=True)),
            lambda: self.store.update_chapter(self._resolve(chapter_id), {"title": title}),
            lambda snapshot, chapter: snapshot.put_chapter(chapter.model_copy(deep=True)),
            "update chapter",
        )

    async def delete_chapter(self, chapter_id: str) -> List[str]:
        """
        Delete a chapter with all descendant chapters and their sections

        Returns:
            IDs of every chapter removed (root first)
        """
        chapter_id = self._resolve(chapter_id)
        chapter = self._require_chapter(chapter_id)
        doomed = self.working.descendant_ids(chapter_id)
        parent_id = chapter.parent_id

        async def write():
            ids = [self._resolve(cid) for cid in doomed]
            await self.store.delete_chapters(ids)
            siblings = [
                c
                for c in await self.store.list_chapters(self.business_plan_id)
                if c.parent_id == self._resolve(parent_id)
            ]
            await self._persist_contiguous_chapters(self._resolve(parent_id), siblings)
            return ids

        try:
            removed = await self._commit(
                [chapter_id],
                lambda snapshot: snapshot.remove_chapters(doomed),
                write,
                lambda snapshot, ids: snapshot.remove_chapters(ids),
                "delete chapter",
            )
        except TransientError:
            logger.warning(f"⚠️ Chapter delete for {chapter_id} may be partial, reloading plan")
            try:
                await self.load()
            except BusinessPlanError as reload_error:
                logger.error(f"❌ Reload after partial chapter delete failed: {reload_error}")
            raise
        if removed is None:
            return []
        logger.info(f"🗑️ Deleted chapter {chapter_id} and {len(removed) - 1} descendants")
        return removed

    async def reorder_chapters(
        self, ordered_ids: List[str], parent_id: Optional[str] = None
    ) -> List[Chapter]:
        """
        Apply a complete new ordering to one sibling set

        Raises:
            ValidationError: ordered_ids is not a permutation of the siblings
                (nothing changes)
        """
        if parent_id is not None:
            parent_id = self._resolve(parent_id)
            self._require_chapter(parent_id)
        ordered_ids = [self._resolve(cid) for cid in ordered_ids]
        siblings = [c.id for c in self.working.child_chapters(parent_id)]
        self._check_permutation("chapters", siblings, ordered_ids)

        async def write():
            await self.store.reorder_chapters(
                self.business_plan_id,
                self._resolve(parent_id) if parent_id else None,
                [self._resolve(cid) for cid in ordered_ids],
            )
            return [self._resolve(cid) for cid in ordered_ids]

        await self._commit(
            [parent_id or self.business_plan_id] + [cid for cid in ordered_ids if is_temp_id(cid)],
            lambda snapshot: snapshot.set_chapter_order(ordered_ids),
            write,
            lambda snapshot, ids: snapshot.set_chapter_order(ids),
            "reorder chapters",
        )
        logger.info(f"🔄 Reordered {len(ordered_ids)} chapters under {parent_id or 'root'}")
        return self.working.child_chapters(parent_id)

    # ============ SECTIONS ============

    async def add_section(self, chapter_id: str, content: Any) -> Optional[Section]:
        """
        Append a section at the end of a chapter

        Raises:
            NotFoundError: unknown chapter
            ValidationError: content does not match any section type
        """
        chapter_id = self._resolve(chapter_id)
        self._require_chapter(chapter_id)
        content = parse_section_content(content)

        temp_id = generate_temp_id("section")
        order_index = len(self.working.chapter_sections(chapter_id))
        placeholder = Section(
            id=temp_id, chapter_id=chapter_id, order_index=order_index, content=content
        )

        def settle(snapshot: DocumentSnapshot, section: Section):
            self._resolved_ids[temp_id] = section.id
            snapshot.put_section(section.model_copy(deep=True), replaces=temp_id)

        section = await self._commit(
            [chapter_id, temp_id] if is_temp_id(chapter_id) else [temp_id],
            lambda snapshot: snapshot.put_section(placeholder.model_copy(deep=True)),
            lambda: self.store.create_section(
                self._resolve(chapter_id), {"content": content, "order_index": order_index}
            ),
            settle,
            "add section",
        )
        if section:
            logger.info(f"✅ Added {section.section_type} section {section.id} to {section.chapter_id}")
        return section

    async def update_section(self, section_id: str, content: Any) -> Optional[Section]:
        """
        Replace a section's content. The section type cannot change.

        Raises:
            NotFoundError: unknown section
            ValidationError: invalid content or a different section type
        """
        section_id = self._resolve(section_id)
        current = self._require_section(section_id)
        content = parse_section_content(content)
        if content.type != current.section_type:
            raise ValidationError(
                f"Section type cannot change from {current.section_type} to {content.type}",
                field="content.type",
            )
        optimistic = current.model_copy(update={"content": content})

        return await self._commit(
            [section_id],
            lambda snapshot: snapshot.put_section(optimistic.model_copy(deep=True)),
            lambda: self.store.update_section(self._resolve(section_id), {"content": content}),
            lambda snapshot, section: snapshot.put_section(section.model_copy(deep=True)),
            "update section",
        )

    async def delete_section(self, section_id: str) -> Optional[str]:
        section_id = self._resolve(section_id)
        section = self._require_section(section_id)
        chapter_id = section.chapter_id

        async def write():
            resolved = self._resolve(section_id)
            await self.store.delete_sections([resolved])
            siblings = [
                s
                for s in await self.store.list_sections(self.business_plan_id)
                if s.chapter_id == self._resolve(chapter_id)
            ]
            await self._persist_contiguous_sections(self._resolve(chapter_id), siblings)
            return resolved

        removed = await self._commit(
            [section_id],
            lambda snapshot: snapshot.remove_section(section_id),
            write,
            lambda snapshot, sid: snapshot.remove_section(sid),
            "delete section",
        )
        if removed:
            logger.info(f"🗑️ Deleted section {removed} from {chapter_id}")
        return removed

    async def reorder_sections(self, chapter_id: str, ordered_ids: List[str]) -> List[Section]:
        chapter_id = self._resolve(chapter_id)
        self._require_chapter(chapter_id)
        ordered_ids = [self._resolve(sid) for sid in ordered_ids]
        siblings = [s.id for s in self.working.chapter_sections(chapter_id)]
        self._check_permutation("sections", siblings, ordered_ids)

        async def write():
            await self.store.reorder_sections(
                self._resolve(chapter_id), [self._resolve(sid) for sid in ordered_ids]
            )
            return [self._resolve(sid) for sid in ordered_ids]

        await self._commit(
            [chapter_id] + [sid for sid in ordered_ids if is_temp_id(sid)],
            lambda snapshot: snapshot.set_section_order(ordered_ids),
            write,
            lambda snapshot, ids: snapshot.set_section_order(ids),
            "reorder sections",
        )
        logger.info(f"🔄 Reordered {len(ordered_ids)} sections in {chapter_id}")
        return self.working.chapter_sections(self._resolve(chapter_id))

    # ============ HELPERS ============

    async def _commit(
        self,
        lock_ids: List[str],
        optimistic: Callable[[DocumentSnapshot], None],
        write: Callable[[], Awaitable[Any]],
        settle: Callable[[DocumentSnapshot, Any], None],
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

    async def _persist_contiguous_chapters(self, parent_id: Optional[str], siblings: List[Chapter]):
        siblings = sorted(siblings, key=lambda c: c.order_index)
        if [c.order_index for c in siblings] != list(range(len(siblings))):
            await self.store.reorder_chapters(
                self.business_plan_id, parent_id, [c.id for c in siblings]
            )

    async def _persist_contiguous_sections(self, chapter_id: str, siblings: List[Section]):
        siblings = sorted(siblings, key=lambda s: s.order_index)
        if [s.order_index for s in siblings] != list(range(len(siblings))):
            await self.store.reorder_sections(chapter_id, [s.id for s in siblings])

    def _resolve(self, entity_id: Optional[str]) -> Optional[str]:
        return self._resolved_ids.get(entity_id, entity_id)

    def _require_chapter(self, chapter_id: str) -> Chapter:
        chapter = self.working.chapters.get(chapter_id)
        if chapter is None:
            raise NotFoundError("chapter", chapter_id)
        return chapter

    def _require_section(self, section_id: str) -> Section:
        section = self.working.sections.get(section_id)
        if section is None:
            raise NotFoundError("section", section_id)
        return section

    @staticmethod
    def _clean_title(title: Optional[str]) -> str:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Chapter title cannot be empty", field="title")
        if len(title) > MAX_CHAPTER_TITLE:
            raise ValidationError(
                f"Chapter title exceeds {MAX_CHAPTER_TITLE} characters", field="title"
            )
        return title

    @staticmethod
    def _check_permutation(kind: str, siblings: List[str], ordered_ids: List[str]):
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(siblings):
            raise ValidationError(
                f"Reorder of {kind} must list every sibling exactly once", field="ordered_ids"
            )
