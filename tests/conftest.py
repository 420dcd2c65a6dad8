"""
Shared fixtures for business plan tests

Run tests:
python -m pytest tests/ -v
"""

import pytest

from bizplan.database.memory_entity_store import InMemoryEntityStore
from bizplan.models.ai_chat_models import ChangeDraft, ChangeProposal
from bizplan.services.change_proposal_engine import ChangeProposalEngine
from bizplan.services.conversation_log import ConversationLog
from bizplan.services.document_tree import DocumentTreeModel
from bizplan.services.session_lifetime import SessionLifetime
from bizplan.services.task_tree import TaskTreeModel
from bizplan.services.write_queue import EntityWriteQueue

PLAN_ID = "plan_test"


class FakeDrafter:
    """Drafter returning a canned proposal and recording every context it saw"""

    def __init__(self, message_content="Here are my suggestions.", changes=None):
        self.proposal = ChangeProposal(
            message_content=message_content,
            changes=[ChangeDraft(**c) if isinstance(c, dict) else c for c in changes or []],
        )
        self.contexts = []

    async def propose_changes(self, context):
        self.contexts.append(context)
        return self.proposal


@pytest.fixture
def store():
    """Fresh in-memory entity store"""
    return InMemoryEntityStore()


@pytest.fixture
def lifetime():
    return SessionLifetime()


@pytest.fixture
def write_queue():
    return EntityWriteQueue()


@pytest.fixture
def doc(store, write_queue, lifetime):
    return DocumentTreeModel(store, PLAN_ID, write_queue, lifetime)


@pytest.fixture
def tasks(store, write_queue, lifetime):
    return TaskTreeModel(store, PLAN_ID, write_queue, lifetime)


@pytest.fixture
def log(store, lifetime):
    return ConversationLog(store, PLAN_ID, lifetime)


@pytest.fixture
def engine(store, doc, tasks, lifetime):
    return ChangeProposalEngine(store, doc, tasks, auto_reject_orphaned=False, lifetime=lifetime)


@pytest.fixture
def drafter_factory():
    """Build a FakeDrafter with canned reply text and change drafts"""
    return FakeDrafter


@pytest.fixture
def text_content():
    return {"type": "text", "text": "Our market is growing 12% a year."}
