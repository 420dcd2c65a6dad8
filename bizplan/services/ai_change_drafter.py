"""
AI change drafting

Turns one chat turn into an assistant reply plus a list of change drafts.
OpenAIChangeDrafter exposes one function tool per proposable change type and
converts the model's tool calls into ChangeDraft objects. Nothing here touches
the trees; drafts only become pending changes once staged.
"""

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Protocol

import openai

from bizplan.config import config
from bizplan.exceptions import BusinessPlanError, TransientError
from bizplan.models.ai_chat_models import ChangeDraft, ChangeProposal, ChangeType
from bizplan.services.plan_context_builder import DraftingContext
from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)


class ChangeDrafter(Protocol):
    async def propose_changes(self, context: DraftingContext) -> ChangeProposal:
        ...


def _tool(name: str, description: str, properties: Dict[str, Any], required: List[str]):
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


_TASK_STATUS = {"type": "string", "enum": ["todo", "in_progress", "done"]}
_LEVEL = {"type": "string", "enum": ["h1", "h2"]}

CHANGE_TOOLS = [
    _tool(
        "propose_add_chapter",
        "Propose adding a new chapter",
        {"title": {"type": "string"}, "parentChapterId": {"type": "string"}},
        ["title"],
    ),
    _tool(
        "propose_update_chapter",
        "Propose updating a chapter title",
        {"chapterId": {"type": "string"}, "newTitle": {"type": "string"}},
        ["chapterId", "newTitle"],
    ),
    _tool(
        "propose_delete_chapter",
        "Propose deleting a chapter with its subchapters and sections",
        {"chapterId": {"type": "string"}},
        ["chapterId"],
    ),
    _tool(
        "propose_add_section",
        "Propose adding a new section to a chapter",
        {
            "chapterId": {"type": "string"},
            "sectionType": {"type": "string"},
            "content": {"type": "object"},
        },
        ["chapterId", "sectionType", "content"],
    ),
    _tool(
        "propose_update_section",
        "Propose updating a section's content (the section type stays the same)",
        {"sectionId": {"type": "string"}, "newContent": {"type": "object"}},
        ["sectionId", "newContent"],
    ),
    _tool(
        "propose_delete_section",
        "Propose deleting a section",
        {"sectionId": {"type": "string"}},
        ["sectionId"],
    ),
    _tool(
        "propose_add_task",
        "Propose adding a new task in the H1/H2 task hierarchy",
        {
            "title": {"type": "string"},
            "hierarchyLevel": _LEVEL,
            "parentTaskId": {"type": "string"},
            "instructions": {"type": "string"},
            "aiPrompt": {"type": "string"},
            "status": _TASK_STATUS,
        },
        ["title"],
    ),
    _tool(
        "propose_update_task",
        "Propose updating an existing task",
        {
            "taskId": {"type": "string"},
            "title": {"type": "string"},
            "instructions": {"type": "string"},
            "aiPrompt": {"type": "string"},
            "status": _TASK_STATUS,
        },
        ["taskId"],
    ),
    _tool(
        "propose_delete_task",
        "Propose deleting an existing task",
        {"taskId": {"type": "string"}},
        ["taskId"],
    ),
]

TOOL_CHANGE_TYPES = {
    "propose_add_chapter": ChangeType.ADD_CHAPTER,
    "propose_update_chapter": ChangeType.UPDATE_CHAPTER,
    "propose_delete_chapter": ChangeType.DELETE_CHAPTER,
    "propose_add_section": ChangeType.ADD_SECTION,
    "propose_update_section": ChangeType.UPDATE_SECTION,
    "propose_delete_section": ChangeType.DELETE_SECTION,
    "propose_add_task": ChangeType.ADD_TASK,
    "propose_update_task": ChangeType.UPDATE_TASK,
    "propose_delete_task": ChangeType.DELETE_TASK,
}

# Key holding the target id, per entity kind
_TARGET_KEYS = {"chapter": "chapter_id", "section": "section_id", "task": "task_id"}

# Renames applied after camelCase -> snake_case
_KEY_RENAMES = {
    ChangeType.ADD_CHAPTER: {"parent_chapter_id": "parent_id"},
    ChangeType.UPDATE_CHAPTER: {"new_title": "title"},
    ChangeType.UPDATE_SECTION: {"new_content": "content"},
}

# Fields a task update may not carry
_TASK_IMMUTABLE = ("hierarchy_level", "parent_task_id")

_RETRYABLE_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def normalize_tool_call(
    name: str,
    raw_arguments: Optional[str],
    selected_chapter_id: Optional[str] = None,
    selected_task_id: Optional[str] = None,
) -> Optional[ChangeDraft]:
    """
    Convert one tool call into a ChangeDraft

    Returns None (after logging a warning) for unknown tools, unparsable
    arguments and update/delete calls with no resolvable target.
    """
    change_type = TOOL_CHANGE_TYPES.get(name)
    if change_type is None:
        logger.warning(f"⚠️ Ignoring unknown tool call: {name}")
        return None

    try:
        args = json.loads(raw_arguments) if raw_arguments else {}
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ Ignoring {name}: arguments are not valid JSON ({e})")
        return None
    if not isinstance(args, dict):
        logger.warning(f"⚠️ Ignoring {name}: arguments are not an object")
        return None

    data = {to_snake_case(key): value for key, value in args.items()}
    for old, new in _KEY_RENAMES.get(change_type, {}).items():
        if old in data:
            data.setdefault(new, data.pop(old))

    # the UI selection fills in a missing id
    if change_type == ChangeType.ADD_SECTION and not data.get("chapter_id") and selected_chapter_id:
        data["chapter_id"] = selected_chapter_id
    if change_type.value.endswith("_task") and change_type != ChangeType.ADD_TASK:
        if not data.get("task_id") and selected_task_id:
            data["task_id"] = selected_task_id
    if change_type in (ChangeType.UPDATE_CHAPTER, ChangeType.DELETE_CHAPTER):
        if not data.get("chapter_id") and selected_chapter_id:
            data["chapter_id"] = selected_chapter_id

    target_id = None
    if change_type.requires_target:
        entity = change_type.value.split("_", 1)[1]
        target_id = data.pop(_TARGET_KEYS[entity], None)
        if not target_id:
            logger.warning(f"⚠️ Ignoring {name}: no {entity} id to target")
            return None

    if change_type == ChangeType.ADD_SECTION:
        content = data.get("content")
        if isinstance(content, dict) and "type" not in content and data.get("section_type"):
            data["content"] = {"type": data["section_type"], **content}
    if change_type == ChangeType.UPDATE_TASK:
        for key in _TASK_IMMUTABLE:
            data.pop(key, None)
    if change_type.value.startswith("delete_"):
        data = {}

    return ChangeDraft(change_type=change_type, target_id=target_id, proposed_data=data)


class OpenAIChangeDrafter:
    """Drafts changes with the OpenAI chat-completions tool-calling API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[Any] = None,
        temperature: float = 0.4,
        max_tokens: int = 2000,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.client = client or openai.AsyncOpenAI(api_key=api_key or config.CHATGPT_API_KEY)
        self.model = model or config.CHATGPT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def propose_changes(self, context: DraftingContext) -> ChangeProposal:
        messages = [{"role": "system", "content": context.system_prompt}]
        messages.extend(context.history)
        messages.append({"role": "user", "content": context.user_message})

        response = await self._complete(messages)
        message = response.choices[0].message

        drafts = []
        for call in message.tool_calls or []:
            draft = normalize_tool_call(
                call.function.name,
                call.function.arguments,
                selected_chapter_id=context.selected_chapter_id,
                selected_task_id=context.selected_task_id,
            )
            if draft is not None:
                drafts.append(draft)

        content = (message.content or "").strip()
        if not content:
            content = (
                f"I've proposed {len(drafts)} change(s) for your review."
                if drafts
                else "I couldn't come up with changes for that request."
            )
        logger.info(f"✅ Drafted reply with {len(drafts)} proposed changes")
        return ChangeProposal(message_content=content, changes=drafts)

    async def _complete(self, messages: List[Dict[str, str]]):
        for attempt in range(self.max_retries):
            try:
                return await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=CHANGE_TOOLS,
                    tool_choice="auto",
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
            except _RETRYABLE_ERRORS as e:
                if attempt < self.max_retries - 1:
                    wait_time = ((2**attempt) + 1) * self.retry_delay
                    logger.warning(
                        f"⚠️ OpenAI error (attempt {attempt + 1}/{self.max_retries}). "
                        f"Retrying in {wait_time}s... Error: {e}"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"❌ OpenAI drafting failed after {self.max_retries} attempts: {e}")
                raise TransientError(f"AI drafting unavailable: {e}") from e
            except openai.OpenAIError as e:
                logger.error(f"❌ OpenAI drafting error: {e}")
                raise BusinessPlanError(f"AI drafting failed: {e}") from e
        raise TransientError(f"AI drafting failed after {self.max_retries} attempts")
