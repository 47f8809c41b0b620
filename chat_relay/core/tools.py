# chat_relay/core/tools.py
import os
import logging
from typing import Any, Dict, List, Optional

from chat_relay.models.api import ChatMessage, FunctionDefinition, Tool, ToolCall, ToolChoice, ToolChoiceKind

logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))


def consolidate_tools(
    tools: Optional[List[Tool]],
    functions: Optional[List[FunctionDefinition]],
) -> Optional[List[Tool]]:
    """
    Merges the client's `tools` and legacy `functions` into the upstream tool list.

    Non-empty `tools` wins and is used verbatim; `functions` is then ignored.
    Otherwise every legacy function descriptor is wrapped as a function tool.
    """
    if tools:
        if functions:
            logger.info(f"Both 'tools' and 'functions' present, ignoring {len(functions)} legacy function(s).")
        return list(tools)
    if functions:
        return [Tool(type="function", function=fn) for fn in functions]
    return None


def resolve_tool_choice(
    choice: ToolChoice,
    forced_choice_fallback: Optional[str] = "auto",
    supports_tool_choice: bool = True,
) -> Optional[str]:
    """
    Maps a parsed tool choice onto what the upstream accepts: "auto", "none" or nothing.

    Upstreams cannot be told to call one specific function, so a function
    selector is downgraded to `forced_choice_fallback` instead of failing.
    """
    if not supports_tool_choice:
        return None
    if choice.kind == ToolChoiceKind.AUTO:
        return "auto"
    if choice.kind == ToolChoiceKind.NONE:
        return "none"
    if choice.kind == ToolChoiceKind.FUNCTION:
        logger.info(f"Downgrading forced function choice '{choice.function_name}' to {forced_choice_fallback!r}.")
        return forced_choice_fallback
    return None


def filter_tool_calls(tool_calls: Optional[List[ToolCall]]) -> Optional[List[ToolCall]]:
    """Drops tool calls with an empty function name. Returns None when none are left."""
    if not tool_calls:
        return None
    kept = []
    for i, call in enumerate(tool_calls):
        if not call.function.name:
            logger.warning(f"Dropping tool call {i} (id={call.id!r}) with empty function name.")
            continue
        kept.append(call)
    return kept or None


def normalize_message(message: ChatMessage) -> ChatMessage:
    """
    Rewrites one client message into its upstream form.

    - role "function" becomes "tool" (applying this twice is a no-op)
    - assistant tool calls are re-emitted with type "function"; ids and
      arguments are kept verbatim, empty-name calls are dropped
    """
    update: Dict[str, Any] = {}
    if message.role == "function":
        update["role"] = "tool"

    if message.role == "assistant" and message.tool_calls:
        calls = filter_tool_calls(message.tool_calls)
        update["tool_calls"] = [
            ToolCall(id=call.id, type="function", function=call.function.model_copy())
            for call in calls
        ] if calls else None

    if not update:
        return message
    return message.model_copy(update=update)


def normalize_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    return [normalize_message(message) for message in messages]
