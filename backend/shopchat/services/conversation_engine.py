# /shopchat/services/conversation_engine.py

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from shopchat.config import strings
from shopchat.config.settings import settings
from shopchat.models.conversation import CartState, Message, first_text, text_block, tool_result_block
from shopchat.models.tools import ToolErrorType, ToolResult
from shopchat.services.ai_service import AIService, ai_service
from shopchat.services.db_service import db_service
from shopchat.services.dispatcher import ToolDispatcher
from shopchat.utils.metrics import turn_iterations_histogram

# The turn loop: ask the model, run the first tool it requests, feed the result
# back, repeat until it answers in text, authorization is needed, or the
# iteration ceiling is reached.

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    AWAITING_LLM = "awaiting_llm"
    TOOL_REQUESTED = "tool_requested"
    TURN_COMPLETE = "turn_complete"


class TurnOutcome(BaseModel):
    conversation_id: str
    reply: str
    state: TurnState = TurnState.TURN_COMPLETE
    iterations: int = 0
    auth_required: bool = False
    auth_url: Optional[str] = None
    custom_actions: List[Dict[str, Any]] = Field(default_factory=list)
    hit_iteration_limit: bool = False
    cart: Optional[CartState] = None


# --- History sanitization ---

def _as_dict(message: Union[Message, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(message, Message):
        message = message.to_llm()
    content = message.get("content")
    if isinstance(content, str):
        content = [text_block(content)] if content else []
    return {"role": message.get("role"), "content": [b for b in (content or []) if isinstance(b, dict)]}


def _ids(message: Optional[Dict[str, Any]], block_type: str, key: str) -> set:
    if not message:
        return set()
    return {b.get(key) for b in message["content"] if b.get("type") == block_type}


def _strip_orphans(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cleaned = []
    for i, message in enumerate(messages):
        prev_msg = messages[i - 1] if i > 0 else None
        next_msg = messages[i + 1] if i + 1 < len(messages) else None
        if message["role"] == "assistant":
            answered = _ids(next_msg, "tool_result", "tool_use_id") if next_msg and next_msg["role"] == "user" else set()
            content = [b for b in message["content"] if b.get("type") != "tool_use" or b.get("id") in answered]
        else:
            requested = _ids(prev_msg, "tool_use", "id") if prev_msg and prev_msg["role"] == "assistant" else set()
            content = [
                b for b in message["content"]
                if b.get("type") != "tool_result" or b.get("tool_use_id") in requested
            ]
        cleaned.append({"role": message["role"], "content": content})
    return cleaned


def _merge_same_role(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged: List[Dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1]["content"] = merged[-1]["content"] + message["content"]
        else:
            merged.append(message)
    return merged


def sanitize_history(messages: List[Union[Message, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Makes stored history safe to send to the model: every `tool_use` must be
    answered by a `tool_result` in the next message and vice versa. Orphaned
    blocks are removed, messages left empty are dropped, and the history never
    starts with an assistant message.
    """
    history = [m for m in (_as_dict(m) for m in messages) if m["role"] in ("user", "assistant")]
    while True:
        while history and history[0]["role"] == "assistant":
            history = history[1:]
        cleaned = [m for m in _strip_orphans(history) if m["content"]]
        if cleaned == history:
            break
        history = cleaned
    return _merge_same_role(history)


# --- Turn loop ---

class _Turn:
    def __init__(self, conversation_id: str, messages: List[Dict[str, Any]], dispatcher: ToolDispatcher, prompt_type: Optional[str]):
        self.conversation_id = conversation_id
        self.messages = messages
        self.dispatcher = dispatcher
        self.prompt_type = prompt_type
        self.iterations = 0
        self.pending_tool_use: Optional[Dict[str, Any]] = None
        self.last_text: Optional[str] = None
        self.reply: Optional[str] = None
        self.auth_required = False
        self.auth_url: Optional[str] = None
        self.custom_actions: List[Dict[str, Any]] = []
        self.hit_iteration_limit = False


class ConversationEngine:
    def __init__(self, ai: AIService = ai_service, store=db_service, max_iterations: Optional[int] = None):
        self.ai = ai
        self.store = store
        self.max_iterations = max_iterations or settings.max_tool_iterations

    async def run_turn(
        self,
        conversation_id: str,
        user_message: str,
        dispatcher: ToolDispatcher,
        prompt_type: Optional[str] = None,
    ) -> TurnOutcome:
        history = await self.store.get_history(conversation_id, settings.history_limit)
        messages = sanitize_history(history)
        turn = _Turn(conversation_id, messages, dispatcher, prompt_type)
        await self._append(turn, "user", [text_block(user_message)])

        state = TurnState.AWAITING_LLM
        while state != TurnState.TURN_COMPLETE:
            state = await self._advance(state, turn)

        if turn.reply is None:
            turn.reply = turn.last_text or (
                strings.ITERATION_LIMIT_FALLBACK if turn.hit_iteration_limit else strings.NO_REPLY_FALLBACK
            )
        if turn.messages[-1]["role"] != "assistant":
            await self._append(turn, "assistant", [text_block(turn.reply)])

        turn_iterations_histogram.observe(turn.iterations)
        logger.info(
            f"Turn complete for {conversation_id}: {turn.iterations} iterations, "
            f"auth_required={turn.auth_required}, limit_hit={turn.hit_iteration_limit}"
        )
        return TurnOutcome(
            conversation_id=conversation_id,
            reply=turn.reply,
            iterations=turn.iterations,
            auth_required=turn.auth_required,
            auth_url=turn.auth_url,
            custom_actions=turn.custom_actions,
            hit_iteration_limit=turn.hit_iteration_limit,
            cart=dispatcher.cart.current(conversation_id) if dispatcher.cart else None,
        )

    async def _advance(self, state: TurnState, turn: _Turn) -> TurnState:
        """Runs one step of the turn and returns the next state."""
        if state == TurnState.AWAITING_LLM:
            return await self._request_llm(turn)
        if state == TurnState.TOOL_REQUESTED:
            return await self._run_tool(turn)
        return TurnState.TURN_COMPLETE

    async def _request_llm(self, turn: _Turn) -> TurnState:
        if turn.iterations >= self.max_iterations:
            logger.warning(f"Iteration ceiling ({self.max_iterations}) reached for {turn.conversation_id}")
            turn.hit_iteration_limit = True
            return TurnState.TURN_COMPLETE

        turn.iterations += 1
        response = await self.ai.create_message(turn.messages, turn.dispatcher.llm_tools(), turn.prompt_type)

        tool_uses = response.tool_uses
        if len(tool_uses) > 1:
            logger.info(f"Ignoring {len(tool_uses) - 1} additional tool requests in one response")
        first_tool = tool_uses[0] if tool_uses else None
        content = [b for b in response.content if b.get("type") != "tool_use" or b is first_tool]

        text = first_text(content)
        if text:
            turn.last_text = text
        if content:
            await self._append(turn, "assistant", content)

        if first_tool:
            turn.pending_tool_use = first_tool
            return TurnState.TOOL_REQUESTED

        turn.reply = text
        return TurnState.TURN_COMPLETE

    async def _run_tool(self, turn: _Turn) -> TurnState:
        tool_use = turn.pending_tool_use
        turn.pending_tool_use = None
        name = tool_use["name"]

        try:
            result = await turn.dispatcher.call_tool(name, tool_use.get("input") or {})
        except Exception as e:
            logger.error(f"Unexpected error from tool {name}: {e}", exc_info=True)
            await self._append(turn, "user", [
                tool_result_block(tool_use["id"], f"Error calling tool {name}: {e}", is_error=True)
            ])
            return TurnState.AWAITING_LLM

        await self._append(turn, "user", [
            tool_result_block(tool_use["id"], result.as_text(), is_error=result.is_error or result.is_tool_level_error)
        ])

        if result.requires_auth:
            self._escalate(turn, result)
            return TurnState.TURN_COMPLETE

        if result.is_custom:
            turn.custom_actions.append(result.content)
        return TurnState.AWAITING_LLM

    def _escalate(self, turn: _Turn, result: ToolResult):
        if result.error.type == ToolErrorType.AUTH_REQUIRED:
            turn.auth_required = True
            turn.auth_url = result.error.data
            turn.reply = strings.AUTH_REQUIRED_MESSAGE.format(url=result.error.data)
        else:
            turn.reply = result.error.data

    async def _append(self, turn: _Turn, role: str, content: List[Dict[str, Any]]):
        # Consecutive same-role messages are merged in the model view only.
        if turn.messages and turn.messages[-1]["role"] == role:
            turn.messages[-1] = {"role": role, "content": turn.messages[-1]["content"] + content}
        else:
            turn.messages.append({"role": role, "content": content})
        await self.store.append_message(turn.conversation_id, role, content)


# Globally accessible instance
conversation_engine = ConversationEngine()
