# backend/tests/unit/test_conversation_engine.py

import pytest
from unittest.mock import AsyncMock, MagicMock

from shopchat.config import strings
from shopchat.models.conversation import Message, text_block, tool_result_block, tool_use_block
from shopchat.models.tools import ToolErrorType, ToolResult
from shopchat.services.ai_service import LLMResponse
from shopchat.services.conversation_engine import ConversationEngine, sanitize_history

AUTH_URL = "https://shopify.com/123456/authentication/oauth/authorize?state=abc"


def _text(text):
    return LLMResponse(content=[text_block(text)], stop_reason="end_turn")


def _tool(tool_id, name="search_shop_catalog", tool_input=None, text=None):
    content = [text_block(text)] if text else []
    content.append(tool_use_block(tool_id, name, tool_input or {"query": "coils"}))
    return LLMResponse(content=content, stop_reason="tool_use")


def _dispatcher(*results):
    dispatcher = MagicMock()
    dispatcher.llm_tools.return_value = [{"name": "search_shop_catalog", "description": "", "input_schema": {}}]
    dispatcher.call_tool = AsyncMock(side_effect=list(results) if results else None,
                                     return_value=ToolResult.success({"products": []}))
    dispatcher.cart = None
    return dispatcher


def _engine(mock_store, *responses):
    ai = MagicMock()
    ai.create_message = AsyncMock(side_effect=list(responses))
    return ConversationEngine(ai=ai, store=mock_store, max_iterations=5), ai


def _persisted(mock_store):
    return [(c.args[1], c.args[2]) for c in mock_store.append_message.await_args_list]


# --- Turn loop ---

@pytest.mark.asyncio
async def test_text_reply_completes_in_one_iteration(mock_store):
    engine, ai = _engine(mock_store, _text("Hello! How can I help?"))
    dispatcher = _dispatcher()

    outcome = await engine.run_turn("web_anon_1", "Hi", dispatcher)

    assert outcome.reply == "Hello! How can I help?"
    assert outcome.iterations == 1
    assert not outcome.auth_required
    dispatcher.call_tool.assert_not_awaited()
    assert [role for role, _ in _persisted(mock_store)] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_tool_result_is_fed_back_to_the_model(mock_store):
    engine, ai = _engine(mock_store, _tool("tu_1"), _text("We have 3 coil packs."))
    dispatcher = _dispatcher()

    outcome = await engine.run_turn("web_anon_1", "Do you sell coils?", dispatcher)

    assert outcome.reply == "We have 3 coil packs."
    assert outcome.iterations == 2
    dispatcher.call_tool.assert_awaited_once_with("search_shop_catalog", {"query": "coils"})
    roles = [role for role, _ in _persisted(mock_store)]
    assert roles == ["user", "assistant", "user", "assistant"]
    tool_result = _persisted(mock_store)[2][1][0]
    assert tool_result["type"] == "tool_result"
    assert tool_result["tool_use_id"] == "tu_1"
    assert "is_error" not in tool_result


@pytest.mark.asyncio
async def test_iteration_ceiling_stops_the_loop(mock_store):
    responses = [_tool(f"tu_{i}") for i in range(10)]
    engine, ai = _engine(mock_store, *responses)
    dispatcher = _dispatcher()

    outcome = await engine.run_turn("web_anon_1", "Keep searching", dispatcher)

    assert ai.create_message.await_count == 5
    assert dispatcher.call_tool.await_count == 5
    assert outcome.iterations == 5
    assert outcome.hit_iteration_limit
    assert outcome.reply == strings.ITERATION_LIMIT_FALLBACK
    role, content = _persisted(mock_store)[-1]
    assert role == "assistant"
    assert content == [text_block(strings.ITERATION_LIMIT_FALLBACK)]


@pytest.mark.asyncio
async def test_ceiling_reply_prefers_last_model_text(mock_store):
    responses = [_tool(f"tu_{i}", text=f"Looking ({i})") for i in range(5)]
    engine, _ = _engine(mock_store, *responses)

    outcome = await engine.run_turn("web_anon_1", "Keep searching", _dispatcher())

    assert outcome.hit_iteration_limit
    assert outcome.reply == "Looking (4)"


@pytest.mark.asyncio
async def test_only_first_tool_request_is_executed(mock_store):
    two_tools = LLMResponse(content=[
        tool_use_block("tu_1", "search_shop_catalog", {"query": "coils"}),
        tool_use_block("tu_2", "get_cart", {}),
    ], stop_reason="tool_use")
    engine, _ = _engine(mock_store, two_tools, _text("Done."))
    dispatcher = _dispatcher()

    await engine.run_turn("web_anon_1", "Search and show my cart", dispatcher)

    dispatcher.call_tool.assert_awaited_once_with("search_shop_catalog", {"query": "coils"})
    stored_assistant = _persisted(mock_store)[1][1]
    assert [b["id"] for b in stored_assistant if b["type"] == "tool_use"] == ["tu_1"]


@pytest.mark.asyncio
async def test_auth_required_short_circuits_the_turn(mock_store):
    engine, ai = _engine(mock_store, _tool("tu_1", "get_most_recent_order_status", {}), _text("unreachable"))
    dispatcher = _dispatcher(ToolResult.failure(ToolErrorType.AUTH_REQUIRED, AUTH_URL))

    outcome = await engine.run_turn("web_anon_1", "Where is my order?", dispatcher)

    assert ai.create_message.await_count == 1
    assert outcome.auth_required
    assert outcome.auth_url == AUTH_URL
    assert outcome.reply == strings.AUTH_REQUIRED_MESSAGE.format(url=AUTH_URL)
    role, content = _persisted(mock_store)[-1]
    assert role == "assistant"
    assert content == [text_block(outcome.reply)]


@pytest.mark.asyncio
async def test_auth_error_ends_turn_without_link(mock_store):
    engine, ai = _engine(mock_store, _tool("tu_1", "get_most_recent_order_status", {}))
    dispatcher = _dispatcher(ToolResult.failure(ToolErrorType.AUTH_ERROR, strings.AUTH_CONFIG_ERROR))

    outcome = await engine.run_turn("web_anon_1", "Where is my order?", dispatcher)

    assert ai.create_message.await_count == 1
    assert not outcome.auth_required
    assert outcome.auth_url is None
    assert outcome.reply == strings.AUTH_CONFIG_ERROR


@pytest.mark.asyncio
async def test_tool_errors_are_reported_to_the_model(mock_store):
    engine, _ = _engine(mock_store, _tool("tu_1"), _tool("tu_2"), _text("Sorry, search is down."))
    dispatcher = _dispatcher(
        RuntimeError("socket closed"),
        ToolResult.failure(ToolErrorType.INTERNAL_ERROR, "Error calling tool search_shop_catalog: 502"),
    )

    outcome = await engine.run_turn("web_anon_1", "Do you sell coils?", dispatcher)

    assert outcome.reply == "Sorry, search is down."
    results = [content[0] for role, content in _persisted(mock_store) if content[0]["type"] == "tool_result"]
    assert [r["tool_use_id"] for r in results] == ["tu_1", "tu_2"]
    assert all(r["is_error"] for r in results)
    assert "socket closed" in results[0]["content"]
    assert "internal_error" in results[1]["content"]


@pytest.mark.asyncio
async def test_custom_actions_are_collected(mock_store):
    engine, _ = _engine(mock_store, _tool("tu_1", "send_order_form", {}), _text("I've sent you the order form."))
    marker = ToolResult.custom("send_order_form", {"url": "https://cdn.example.com/order-form.pdf"})

    outcome = await engine.run_turn("whatsapp_15551234567", "Send the order form", _dispatcher(marker))

    assert outcome.custom_actions == [marker.content]
    assert outcome.reply == "I've sent you the order form."


@pytest.mark.asyncio
async def test_history_is_loaded_and_sanitized_before_the_call(mock_store):
    mock_store.get_history.return_value = [
        Message(role="assistant", content=[text_block("Welcome!")]),
        Message(role="user", content=[text_block("Hi")]),
        Message(role="assistant", content=[tool_use_block("tu_old", "get_cart", {})]),
    ]
    engine, ai = _engine(mock_store, _text("Hello again"))

    await engine.run_turn("web_anon_1", "Are you there?", _dispatcher())

    sent = ai.create_message.await_args.args[0]
    assert sent[0] == {"role": "user", "content": [text_block("Hi"), text_block("Are you there?")]}


# --- sanitize_history ---

def test_orphan_tool_use_is_stripped():
    history = sanitize_history([
        {"role": "user", "content": "Show my cart"},
        {"role": "assistant", "content": [text_block("Checking"), tool_use_block("tu_1", "get_cart", {})]},
        {"role": "user", "content": "Hello?"},
    ])

    assert history == [
        {"role": "user", "content": [text_block("Show my cart")]},
        {"role": "assistant", "content": [text_block("Checking")]},
        {"role": "user", "content": [text_block("Hello?")]},
    ]


def test_emptied_messages_are_dropped_and_neighbours_merged():
    history = sanitize_history([
        {"role": "user", "content": "Show my cart"},
        {"role": "assistant", "content": [tool_use_block("tu_1", "get_cart", {})]},
        {"role": "user", "content": "Hello?"},
    ])

    assert history == [{"role": "user", "content": [text_block("Show my cart"), text_block("Hello?")]}]


def test_paired_blocks_are_kept():
    messages = [
        {"role": "user", "content": [text_block("Show my cart")]},
        {"role": "assistant", "content": [tool_use_block("tu_1", "get_cart", {})]},
        {"role": "user", "content": [tool_result_block("tu_1", "{}")]},
        {"role": "assistant", "content": [text_block("Your cart is empty.")]},
    ]

    assert sanitize_history(messages) == messages


def test_orphan_tool_result_is_dropped():
    history = sanitize_history([
        {"role": "user", "content": [tool_result_block("tu_gone", "{}"), text_block("Any news?")]},
        {"role": "assistant", "content": [text_block("Not yet.")]},
    ])

    assert history == [
        {"role": "user", "content": [text_block("Any news?")]},
        {"role": "assistant", "content": [text_block("Not yet.")]},
    ]


def test_leading_assistant_messages_are_removed():
    history = sanitize_history([
        Message(role="assistant", content=[text_block("Welcome!")]),
        {"role": "user", "content": "Hi"},
    ])

    assert history == [{"role": "user", "content": [text_block("Hi")]}]


def test_cascading_cleanup_reaches_a_stable_history():
    # Dropping the orphan result empties the first user message, which leaves
    # the assistant message leading and therefore removed too.
    history = sanitize_history([
        {"role": "user", "content": [tool_result_block("tu_gone", "{}")]},
        {"role": "assistant", "content": [text_block("Anything else?")]},
        {"role": "user", "content": "Yes"},
    ])

    assert history == [{"role": "user", "content": [text_block("Yes")]}]
