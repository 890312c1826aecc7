# /shopchat/services/tool_catalog.py

import logging
from typing import Any, Dict, Iterable, List, Optional

from shopchat.models.tools import ToolDescriptor, ToolProvider

logger = logging.getLogger(__name__)


def normalize_tools(
    raw_tools: Any,
    provider: ToolProvider,
    disabled: Iterable[str] = (),
) -> List[ToolDescriptor]:
    """
    Turns raw provider tool metadata into ToolDescriptors.

    Deny-listed names are dropped and the `inputSchema` / `input_schema`
    spelling difference is unified. Malformed entries are skipped; a raw value
    that is not a list yields an empty list.
    """
    if not isinstance(raw_tools, list):
        return []

    disabled = set(disabled)
    tools = []
    for raw in raw_tools:
        if not isinstance(raw, dict):
            continue
        name = raw.get("name")
        if not name or not isinstance(name, str) or name in disabled:
            continue
        schema = raw.get("inputSchema") or raw.get("input_schema") or {"type": "object", "properties": {}}
        tools.append(ToolDescriptor(
            name=name,
            description=raw.get("description") or "",
            input_schema=schema,
            provider=provider,
        ))
    return tools


class ToolCatalog:
    """Merged, provider-tagged tool catalogue with constant-time routing."""

    def __init__(self, descriptors: List[ToolDescriptor]):
        self._by_name: Dict[str, ToolDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._by_name:
                winner = self._by_name[descriptor.name].provider.value
                logger.info(
                    f"Tool '{descriptor.name}' from {descriptor.provider.value} shadowed by {winner}"
                )
                continue
            self._by_name[descriptor.name] = descriptor

    @classmethod
    def merge(
        cls,
        customer: List[ToolDescriptor],
        storefront: List[ToolDescriptor],
        local: List[ToolDescriptor],
    ) -> "ToolCatalog":
        # customer > storefront > local
        return cls([*customer, *storefront, *local])

    def route(self, name: str) -> Optional[ToolProvider]:
        descriptor = self._by_name.get(name)
        return descriptor.provider if descriptor else None

    def descriptors(self) -> List[ToolDescriptor]:
        return list(self._by_name.values())

    def llm_tools(self) -> List[Dict[str, Any]]:
        return [descriptor.to_llm_tool() for descriptor in self._by_name.values()]

    def names(self, provider: Optional[ToolProvider] = None) -> List[str]:
        return [d.name for d in self._by_name.values() if provider is None or d.provider == provider]

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)
