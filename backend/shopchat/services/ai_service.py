# /shopchat/services/ai_service.py

import json
import logging
from typing import Any, Dict, List, Optional

import anthropic
import tenacity
from pydantic import BaseModel

from shopchat.config.persona import SYSTEM_PROMPTS
from shopchat.config.settings import settings
from shopchat.models.conversation import text_block, tool_use_block
from shopchat.utils.circuit_breaker import CircuitBreaker
from shopchat.utils.metrics import llm_requests_counter

# This service wraps the Anthropic Messages API: one request per engine
# iteration, with the merged tool catalogue attached.

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class LLMServiceError(Exception):
    """The language model could not be reached or rejected the request."""


class LLMResponse(BaseModel):
    content: List[Dict[str, Any]]
    stop_reason: Optional[str] = None

    @property
    def tool_uses(self) -> List[Dict[str, Any]]:
        return [block for block in self.content if block.get("type") == "tool_use"]


def get_system_prompt(prompt_type: Optional[str]) -> str:
    prompt = SYSTEM_PROMPTS.get(prompt_type or "") or SYSTEM_PROMPTS[settings.default_prompt_type]
    limit = settings.max_system_prompt_length
    if len(prompt) > limit:
        logger.warning(f"System prompt '{prompt_type}' truncated from {len(prompt)} to {limit} characters")
        prompt = prompt[: limit - 3] + "..."
    return prompt


def _to_block(block: Any) -> Optional[Dict[str, Any]]:
    if block.type == "text":
        return text_block(block.text)
    if block.type == "tool_use":
        return tool_use_block(block.id, block.name, dict(block.input or {}))
    return None


class AIService:
    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None):
        if client is not None:
            self.client = client
        elif settings.anthropic_api_key:
            self.client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        else:
            self.client = None
        self.circuit_breaker = CircuitBreaker("anthropic")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(RETRYABLE_ERRORS),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def create_message(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        prompt_type: Optional[str] = None,
    ) -> LLMResponse:
        if not self.client:
            raise LLMServiceError("ANTHROPIC_API_KEY is not configured")

        request: Dict[str, Any] = {
            "model": settings.anthropic_model,
            "max_tokens": settings.anthropic_max_tokens,
            "system": get_system_prompt(prompt_type),
            "messages": messages,
        }
        if tools:
            request["tools"] = tools
        self._log_payload(request)

        try:
            response = await self.resilient_api_call(self.client.messages.create, **request)
        except Exception as e:
            logger.error(f"Anthropic API call failed: {e}")
            llm_requests_counter.labels(status="error").inc()
            raise LLMServiceError(str(e)) from e

        llm_requests_counter.labels(status="success").inc()
        usage = getattr(response, "usage", None)
        if usage:
            logger.info(f"LLM usage: input={usage.input_tokens} output={usage.output_tokens} stop={response.stop_reason}")

        blocks = [b for b in (_to_block(block) for block in response.content) if b]
        return LLMResponse(content=blocks, stop_reason=response.stop_reason)

    def _log_payload(self, request: Dict[str, Any]):
        messages = request["messages"]
        content_chars = sum(len(json.dumps(m.get("content"), default=str)) for m in messages)
        tool_names = [tool["name"] for tool in request.get("tools", [])]
        logger.info(
            f"LLM request: {len(messages)} messages, {content_chars} content chars, "
            f"system prompt {len(request['system'])} chars, {len(tool_names)} tools"
        )
        logger.debug(f"LLM tools: {tool_names}")


# Globally accessible instance
ai_service = AIService()
