"""
Business Plan Session

Binds the document tree, task tree, conversation log and change engine of one
business plan to a shared write queue and session lifetime. The conversation
id is the business plan id: each plan has exactly one conversation.
"""

import asyncio
from typing import List, Optional

from bizplan.database.entity_store import EntityStore
from bizplan.exceptions import BusinessPlanError, TransientError, ValidationError
from bizplan.models.ai_chat_models import (
    ChatTurnResult,
    MessageRole,
    PendingChangeResolution,
    PendingChangeView,
    ThreadEntry,
    normalize_change_status,
)
from bizplan.models.business_plan_models import (
    BusinessPlan,
    BusinessPlanTree,
    BusinessPlanUpdate,
    TaskTreeResponse,
)
from bizplan.services.ai_change_drafter import ChangeDrafter
from bizplan.services.change_proposal_engine import ChangeProposalEngine
from bizplan.services.change_summary import describe_change
from bizplan.services.conversation_log import ConversationLog
from bizplan.services.document_tree import DocumentTreeModel
from bizplan.services.plan_context_builder import (
    DraftingContext,
    build_plan_context,
    build_system_prompt,
)
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.services.task_tree import TaskTreeModel
from bizplan.services.write_queue import EntityWriteQueue
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)


class BusinessPlanSession:
    def __init__(
        self,
        store: EntityStore,
        workspace_id: str,
        drafter: Optional[ChangeDrafter] = None,
        auto_reject_orphaned: Optional[bool] = None,
        history_limit: int = 20,
    ):
        self.store = store
        self.workspace_id = workspace_id
        self.drafter = drafter
        self.auto_reject_orphaned = auto_reject_orphaned
        self.history_limit = history_limit

        self.lifetime = SessionLifetime()
        self.write_queue = EntityWriteQueue()
        self.business_plan: Optional[BusinessPlan] = None
        self.doc: Optional[DocumentTreeModel] = None
        self.tasks: Optional[TaskTreeModel] = None
        self.log: Optional[ConversationLog] = None
        self.engine: Optional[ChangeProposalEngine] = None

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def is_open(self) -> bool:
        return self.business_plan is not None and not self.lifetime.closed

    async def open(self) -> "BusinessPlanSession":
        """Load the plan (creating it on first use) and everything it owns"""
        if self.lifetime.closed:
            self.lifetime.reopen()
        plan = await self.store.get_or_create_business_plan(self.workspace_id)
        self.business_plan = plan

        self.doc = DocumentTreeModel(self.store, plan.id, self.write_queue, self.lifetime)
        self.tasks = TaskTreeModel(self.store, plan.id, self.write_queue, self.lifetime)
        self.log = ConversationLog(self.store, plan.id, self.lifetime)
        self.engine = ChangeProposalEngine(
            self.store,
            self.doc,
            self.tasks,
            auto_reject_orphaned=self.auto_reject_orphaned,
            lifetime=self.lifetime,
        )
        await self._load_all()
        logger.info(f"✅ Opened business plan session {plan.id} for workspace {self.workspace_id}")
        return self

    async def reload(self):
        """Refetch everything; responses to requests issued before now are dropped"""
        self._require_open()
        self.lifetime.advance()
        await self._load_all()

    async def close(self):
        self.lifetime.close()
        logger.info(f"🔒 Closed business plan session for workspace {self.workspace_id}")

    async def _load_all(self):
        await asyncio.gather(self.doc.load(), self.tasks.load(), self.log.load())
        await self.engine.load(self.log.message_ids())

    # ============ PLAN ============

    async def update_plan(self, update: BusinessPlanUpdate) -> Optional[BusinessPlan]:
        self._require_open()
        changes = update.changes()
        if not changes:
            raise ValidationError("Business plan update has no fields to change")
        applied, plan = await self.lifetime.guard(
            self.write_queue.run(
                self.business_plan.id,
                lambda: self.store.update_business_plan(self.business_plan.id, changes),
            ),
            "update plan",
        )
        if applied:
            self.business_plan = plan
        return self.business_plan

    def document_tree(self) -> BusinessPlanTree:
        self._require_open()
        return BusinessPlanTree(business_plan=self.business_plan, chapters=self.doc.tree())

    def task_tree(self) -> TaskTreeResponse:
        self._require_open()
        return TaskTreeResponse(business_plan_id=self.business_plan.id, tasks=self.tasks.tree())

    # ============ CHAT ============

    async def send_chat_message(
        self,
        text: str,
        selected_chapter_id: Optional[str] = None,
        selected_task_id: Optional[str] = None,
    ) -> Optional[ChatTurnResult]:
        """
        Run one chat turn: log the user message, draft a reply with proposed
        changes, log the reply and stage its changes as pending

        Returns None when the session closed while the turn was in flight.
        """
        self._require_open()
        if self.drafter is None:
            raise TransientError("AI chat is not configured for this workspace")

        history = self._history()
        metadata = {
            key: value
            for key, value in (
                ("selected_chapter_id", selected_chapter_id),
                ("selected_task_id", selected_task_id),
            )
            if value
        }
        user_message = await self.log.append(MessageRole.USER, text, metadata or None)
        if user_message is None:
            return None

        context = DraftingContext(
            system_prompt=build_system_prompt(
                build_plan_context(
                    self.business_plan,
                    self.doc.tree(),
                    self.tasks.tree(),
                    selected_chapter=self.doc.get_chapter(selected_chapter_id)
                    if selected_chapter_id
                    else None,
                    selected_task=self.tasks.get_task(selected_task_id)
                    if selected_task_id
                    else None,
                )
            ),
            user_message=user_message.content,
            history=history,
            selected_chapter_id=selected_chapter_id,
            selected_task_id=selected_task_id,
        )
        applied, proposal = await self.lifetime.guard(
            self.drafter.propose_changes(context), "change drafting"
        )
        if not applied:
            return None

        assistant_message = await self.log.append(
            MessageRole.ASSISTANT,
            proposal.message_content,
            {"proposed_changes": len(proposal.changes)},
        )
        if assistant_message is None:
            return None
        staged = await self.engine.stage_changes(assistant_message, proposal.changes)
        return ChatTurnResult(
            user_message=user_message,
            assistant_message=assistant_message,
            pending_changes=[describe_change(change, self.doc, self.tasks) for change in staged],
        )

    async def accept_change(self, change_id: str) -> Optional[PendingChangeResolution]:
        self._require_open()
        return await self.engine.accept(change_id)

    async def reject_change(self, change_id: str) -> Optional[PendingChangeResolution]:
        self._require_open()
        return await self.engine.reject(change_id)

    def thread(self) -> List[ThreadEntry]:
        self._require_open()
        return self.log.render_thread(self.engine, self.doc, self.tasks)

    def list_changes(
        self, status: Optional[str] = None, target_id: Optional[str] = None
    ) -> List[PendingChangeView]:
        """
        Pending changes with their display text

        Args:
            status: Only changes in this status (legacy "accepted" allowed)
            target_id: Only changes pointing at this chapter, section or task
        """
        self._require_open()
        if target_id is not None:
            changes = self.engine.changes_for_target(target_id)
            if status is not None:
                wanted = normalize_change_status(status)
                changes = [c for c in changes if c.status == wanted]
        else:
            changes = self.engine.all_changes(status)
        return [describe_change(change, self.doc, self.tasks) for change in changes]

    # ============ HELPERS ============

    def _history(self):
        messages = self.log.messages()[-self.history_limit:] if self.history_limit else []
        return [{"role": m.role.value, "content": m.content} for m in messages]

    def _require_open(self):
        if not self.is_open:
            raise BusinessPlanError("Business plan session is not open")


class SessionRegistry:
    """Open sessions by workspace, created on first use"""

    def __init__(
        self,
        store: EntityStore,
        drafter: Optional[ChangeDrafter] = None,
        auto_reject_orphaned: Optional[bool] = None,
    ):
        self.store = store
        self.drafter = drafter
        self.auto_reject_orphaned = auto_reject_orphaned
        self._sessions = {}
        self._opening = EntityWriteQueue()

    async def get(self, workspace_id: str) -> BusinessPlanSession:
        async with self._opening.hold(workspace_id):
            session = self._sessions.get(workspace_id)
            if session is None or not session.is_open:
                session = BusinessPlanSession(
                    self.store,
                    workspace_id,
                    drafter=self.drafter,
                    auto_reject_orphaned=self.auto_reject_orphaned,
                )
                await session.open()
                self._sessions[workspace_id] = session
            return session

    async def close_all(self):
        for session in self._sessions.values():
            await session.close()
        self._sessions.clear()
