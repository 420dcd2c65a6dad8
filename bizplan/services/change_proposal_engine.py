"""
Change Proposal Engine

Stages the mutations an assistant message proposes as pending changes and
resolves them on user request. Accepting a change runs the exact tree
operation a direct edit would run; nothing is applied at staging time.

Lifecycle of a change: pending -> approved | rejected. Both end states are
terminal; resolving a change twice raises StaleChangeError.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from bizplan.config import config
from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import (
    BusinessPlanError,
    NotFoundError,
    StaleChangeError,
    ValidationError,
)
from bizplan.models.ai_chat_models import (
    ChangeDraft,
    ChangeStatus,
    ChangeType,
    ChatMessage,
    MessageRole,
    PendingChange,
    PendingChangeResolution,
    normalize_change_status,
)
from bizplan.models.change_payload_models import parse_change_payload
from bizplan.services.document_tree import DocumentTreeModel
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.services.task_tree import TaskTreeModel
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

_NOT_APPLIED = object()


class ChangeProposalEngine:
    def __init__(
        self,
        store: EntityStore,
        doc: DocumentTreeModel,
        tasks: TaskTreeModel,
        auto_reject_orphaned: Optional[bool] = None,
        lifetime: Optional[SessionLifetime] = None,
    ):
        self.store = store
        self.doc = doc
        self.tasks = tasks
        self.auto_reject_orphaned = (
            config.AUTO_REJECT_ORPHANED_CHANGES
            if auto_reject_orphaned is None
            else auto_reject_orphaned
        )
        self.lifetime = lifetime or SessionLifetime()

        # change_id -> change, in staging order
        self._changes: Dict[str, PendingChange] = {}
        # changes with an accept or reject currently in flight
        self._resolving: set = set()
        # applied to the trees but the approval was not persisted yet
        self._applied_results: Dict[str, Any] = {}

        self._handlers: Dict[ChangeType, Callable[[PendingChange, Any], Awaitable[Any]]] = {
            ChangeType.ADD_CHAPTER: self._add_chapter,
            ChangeType.UPDATE_CHAPTER: self._update_chapter,
            ChangeType.DELETE_CHAPTER: self._delete_chapter,
            ChangeType.ADD_SECTION: self._add_section,
            ChangeType.UPDATE_SECTION: self._update_section,
            ChangeType.DELETE_SECTION: self._delete_section,
            ChangeType.REORDER_CHAPTERS: self._reorder_chapters,
            ChangeType.REORDER_SECTIONS: self._reorder_sections,
            ChangeType.ADD_TASK: self._add_task,
            ChangeType.UPDATE_TASK: self._update_task,
            ChangeType.DELETE_TASK: self._delete_task,
        }

    # ============ LOADING / QUERIES ============

    async def load(self, message_ids: List[str]) -> bool:
        """Fetch every pending change linked to the given messages"""
        if not message_ids:
            self._changes = {}
            return True
        applied, changes = await self.lifetime.guard(
            self.store.list_pending_changes(message_ids), "pending change load"
        )
        if not applied:
            return False
        self._changes = {change.id: change for change in changes}
        logger.info(f"✅ Loaded {len(changes)} pending changes")
        return True

    def get_change(self, change_id: str) -> Optional[PendingChange]:
        return self._changes.get(change_id)

    def changes_for_message(self, message_id: str) -> List[PendingChange]:
        return [c for c in self._changes.values() if c.message_id == message_id]

    def changes_for_target(self, target_id: str) -> List[PendingChange]:
        return [c for c in self._changes.values() if c.target_id == target_id]

    def pending_changes(self) -> List[PendingChange]:
        return [c for c in self._changes.values() if c.is_pending]

    def all_changes(self, status: Optional[str] = None) -> List[PendingChange]:
        if status is None:
            return list(self._changes.values())
        wanted = normalize_change_status(status)
        return [c for c in self._changes.values() if c.status == wanted]

    # ============ STAGING ============

    async def stage_changes(
        self, message: ChatMessage, drafts: Iterable[Any]
    ) -> List[PendingChange]:
        """
        Create one pending change per distinct draft, linked to message

        Identical drafts (same type, target and payload) collapse into one.
        Update drafts with no payload and update/delete drafts without a
        target are dropped.

        Raises:
            ValidationError: message is not an assistant message
        """
        if message.role != MessageRole.ASSISTANT:
            raise ValidationError(
                "Only assistant messages can propose changes", field="message_id"
            )

        unique: Dict[str, ChangeDraft] = {}
        for raw in drafts:
            try:
                draft = raw if isinstance(raw, ChangeDraft) else ChangeDraft.model_validate(raw)
            except PydanticValidationError as e:
                logger.warning(f"⚠️ Skipping malformed change draft: {e.errors()[0]['msg']}")
                continue
            if draft.change_type.requires_target and not draft.target_id:
                logger.warning(f"⚠️ Skipping {draft.change_type.value} draft without target_id")
                continue
            if draft.change_type.value.startswith("update_") and not draft.proposed_data:
                logger.warning(f"⚠️ Skipping {draft.change_type.value} draft with empty payload")
                continue
            if not draft.change_type.requires_target and draft.target_id:
                draft = draft.model_copy(update={"target_id": None})
            unique.setdefault(draft.signature(), draft)

        staged: List[PendingChange] = []
        for draft in unique.values():
            applied, change = await self.lifetime.guard(
                self.store.create_pending_change(
                    {
                        "message_id": message.id,
                        "change_type": draft.change_type,
                        "target_id": draft.target_id,
                        "proposed_data": draft.proposed_data,
                        "status": ChangeStatus.PENDING,
                    }
                ),
                "stage change",
            )
            if not applied:
                break
            self._changes[change.id] = change
            staged.append(change)

        if staged:
            logger.info(f"✅ Staged {len(staged)} pending changes for message {message.id}")
        return staged

    # ============ RESOLUTION ============

    async def accept(self, change_id: str) -> Optional[PendingChangeResolution]:
        """
        Apply a pending change to the trees and mark it approved

        Raises:
            NotFoundError: unknown change, or its target no longer exists
                (change stays pending unless auto-reject is enabled)
            StaleChangeError: change already resolved or being resolved
            ValidationError: proposed data malformed for the change type
            TransientError: store failure; the change stays pending
        """
        change = self._claim(change_id)
        try:
            result = self._applied_results.get(change_id, _NOT_APPLIED)
            if result is _NOT_APPLIED:
                try:
                    payload = parse_change_payload(change.change_type, change.proposed_data)
                    if change.change_type.requires_target and not change.target_id:
                        raise ValidationError(
                            f"{change.change_type.value} requires a target_id", field="target_id"
                        )
                    result = await self._handlers[change.change_type](change, payload)
                except NotFoundError as e:
                    if self.auto_reject_orphaned:
                        await self._auto_reject(change, e)
                    else:
                        await self._record_error(change, e)
                    raise
                except BusinessPlanError as e:
                    await self._record_error(change, e)
                    raise
                self._applied_results[change_id] = result

            updated = await self._mark(change, ChangeStatus.APPROVED)
            self._applied_results.pop(change_id, None)
            if updated is None:
                return None
            logger.info(f"✅ Accepted {change.change_type.value} change {change_id}")
            return PendingChangeResolution(
                action="approved", pending_change=updated, result=_result_payload(result)
            )
        finally:
            self._resolving.discard(change_id)

    async def reject(self, change_id: str) -> Optional[PendingChangeResolution]:
        """
        Mark a pending change rejected. No tree mutation.

        Raises:
            StaleChangeError: change already resolved or being resolved
            TransientError: store failure; the change stays pending
        """
        change = self._claim(change_id)
        try:
            updated = await self._mark(change, ChangeStatus.REJECTED)
        finally:
            self._resolving.discard(change_id)
        if updated is None:
            return None
        logger.info(f"🗑️ Rejected {change.change_type.value} change {change_id}")
        return PendingChangeResolution(action="rejected", pending_change=updated)

    # ============ HANDLERS ============

    async def _add_chapter(self, change, payload):
        return await self.doc.add_chapter(payload.title, payload.parent_id)

    async def _update_chapter(self, change, payload):
        return await self.doc.update_chapter(change.target_id, payload.title)

    async def _delete_chapter(self, change, payload):
        return await self.doc.delete_chapter(change.target_id)

    async def _add_section(self, change, payload):
        return await self.doc.add_section(payload.chapter_id, payload.content)

    async def _update_section(self, change, payload):
        return await self.doc.update_section(change.target_id, payload.content)

    async def _delete_section(self, change, payload):
        return await self.doc.delete_section(change.target_id)

    async def _reorder_chapters(self, change, payload):
        return await self.doc.reorder_chapters(payload.ordered_ids, payload.parent_id)

    async def _reorder_sections(self, change, payload):
        return await self.doc.reorder_sections(payload.chapter_id, payload.ordered_ids)

    async def _add_task(self, change, payload):
        return await self.tasks.add_task(
            payload.title,
            payload.hierarchy_level,
            parent_task_id=payload.parent_task_id,
            status=payload.status,
            instructions=payload.instructions,
            ai_prompt=payload.ai_prompt,
        )

    async def _update_task(self, change, payload):
        return await self.tasks.update_task(change.target_id, payload.to_patch())

    async def _delete_task(self, change, payload):
        return await self.tasks.delete_task(change.target_id)

    # ============ HELPERS ============

    def _claim(self, change_id: str) -> PendingChange:
        change = self._changes.get(change_id)
        if change is None:
            raise NotFoundError("pending_change", change_id)
        status = normalize_change_status(change.status)
        if status != ChangeStatus.PENDING:
            raise StaleChangeError(change_id, status.value)
        if change_id in self._resolving:
            raise StaleChangeError(
                change_id,
                status.value,
                f"Pending change {change_id} is already being resolved",
            )
        self._resolving.add(change_id)
        return change

    async def _mark(
        self, change: PendingChange, status: ChangeStatus, last_error: Optional[str] = None
    ) -> Optional[PendingChange]:
        """Persist a terminal status; local state changes only on success"""
        applied, updated = await self.lifetime.guard(
            self.store.update_pending_change(
                change.id,
                {"status": status, "resolved_at": datetime.utcnow(), "last_error": last_error},
            ),
            f"mark change {status.value}",
        )
        if not applied:
            return None
        self._changes[change.id] = updated
        return updated

    async def _record_error(self, change: PendingChange, error: BusinessPlanError):
        local = change.model_copy(update={"last_error": error.message})
        self._changes[change.id] = local
        try:
            applied, updated = await self.lifetime.guard(
                self.store.update_pending_change(change.id, {"last_error": error.message}),
                "record change error",
            )
        except BusinessPlanError as store_error:
            logger.warning(f"⚠️ Could not persist last_error for {change.id}: {store_error}")
            return
        if applied:
            self._changes[change.id] = updated
        logger.warning(f"⚠️ Accept of {change.id} failed: {error.message}")

    async def _auto_reject(self, change: PendingChange, error: NotFoundError):
        try:
            await self._mark(change, ChangeStatus.REJECTED, last_error=error.message)
        except BusinessPlanError as store_error:
            logger.error(f"❌ Auto-reject of orphaned change {change.id} failed: {store_error}")
            await self._record_error(change, error)
            return
        error.auto_rejected = True
        logger.warning(f"⚠️ Auto-rejected change {change.id}: {error.message}")


def _result_payload(result: Any) -> Optional[Dict[str, Any]]:
    """Shape a tree operation's return value for the resolution response"""
    if result is None:
        return None
    if isinstance(result, BaseModel):
        return {"entity": result.model_dump(mode="json")}
    if isinstance(result, list):
        if all(isinstance(item, str) for item in result):
            return {"ids": result}
        return {"entities": [item.model_dump(mode="json") for item in result]}
    if isinstance(result, str):
        return {"id": result}
    return {"value": result}
