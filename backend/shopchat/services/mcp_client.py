# /shopchat/services/mcp_client.py

import itertools
import json
import logging
from typing import Any, Dict, List, Optional

import httpx
import tenacity

from shopchat.config.settings import settings
from shopchat.utils.circuit_breaker import CircuitBreaker

# JSON-RPC 2.0 transport for the storefront and customer tool endpoints
# (`tools/list` and `tools/call`).

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)

_IDEMPOTENT_METHODS = {"tools/list"}


def decode_tool_payload(result: Any) -> Any:
    """
    Returns the structured payload of a `tools/call` result.

    MCP tools answer `{"content": [{"type": "text", "text": "<json>"}]}`; the
    first text block that parses as JSON wins. Anything else is returned as-is.
    """
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        for block in result["content"]:
            if isinstance(block, dict) and block.get("type") == "text":
                try:
                    return json.loads(block.get("text") or "")
                except ValueError:
                    continue
    return result


class McpRequestError(Exception):
    """A tool endpoint answered with a non-2xx status or a JSON-RPC error member."""

    def __init__(self, message: str, status_code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.data = data

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class JsonRpcClient:
    def __init__(
        self,
        endpoint: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.endpoint = endpoint
        timeout = timeout or settings.tool_call_timeout_seconds
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=5.0)
        )
        self.circuit_breaker = CircuitBreaker(f"mcp:{endpoint}")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=4),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=4),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def unsent_retry_call(self, func, *args, **kwargs):
        """Retries only failures where the request never reached the server."""
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def request(self, method: str, params: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "method": method, "id": next(_request_ids), "params": params}
        request_headers = {"Content-Type": "application/json", **(headers or {})}

        # Tool calls may mutate state (carts), so they are never replayed once sent.
        call = self.resilient_api_call if method in _IDEMPOTENT_METHODS else self.unsent_retry_call
        resp = await call(
            self.http_client.post, self.endpoint, json=payload, headers=request_headers
        )
        if resp.status_code >= 400:
            raise McpRequestError(
                f"Request failed: {resp.status_code} {resp.text[:500]}", status_code=resp.status_code
            )

        body = resp.json()
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            message = error.get("message", "Unknown JSON-RPC error") if isinstance(error, dict) else str(error)
            raise McpRequestError(message, status_code=resp.status_code, data=error)
        return body

    async def list_tools(self, headers: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        body = await self.request("tools/list", {}, headers)
        result = body.get("result") or {}
        return result.get("tools") or []

    async def call_tool(self, name: str, arguments: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        body = await self.request("tools/call", {"name": name, "arguments": arguments}, headers)
        return body.get("result", body)

    async def aclose(self):
        await self.http_client.aclose()
