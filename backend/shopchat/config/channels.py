# /shopchat/config/channels.py

from typing import List
from pydantic import BaseModel, ConfigDict

# Each entry point (web widget, WhatsApp) runs the same conversation engine;
# the differences between them live here as configuration.


class ChannelConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    prompt_type: str
    local_tools: List[str]
    enforce_quantity_increments: bool = True
    cart_continuity: bool = True


WEB_CHANNEL = ChannelConfig(
    name="web",
    prompt_type="standard_assistant",
    local_tools=["validate_quantity", "request_human_handoff"],
)

WHATSAPP_CHANNEL = ChannelConfig(
    name="whatsapp",
    prompt_type="whatsapp_assistant",
    local_tools=["validate_quantity", "request_human_handoff", "send_order_form"],
)

CHANNELS = {channel.name: channel for channel in (WEB_CHANNEL, WHATSAPP_CHANNEL)}
