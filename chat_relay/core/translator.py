# chat_relay/core/translator.py
import os
import json
import secrets
import time
import logging
from typing import Dict, Any, Tuple, Optional, List, Union

from pydantic import ValidationError

from .config import RelayConfig, ProviderProfile
from .exceptions import InvalidRequest, UpstreamResponseMalformed
from .tools import consolidate_tools, filter_tool_calls, normalize_messages, resolve_tool_choice
from chat_relay.models.api import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    Choice,
    FunctionCall,
    OllamaChatResponse,
    OllamaToolCall,
    Tool,
    ToolCall,
    ToolChoice,
    UpstreamChatResponse,
    UpstreamRequest,
    Usage,
)

logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))


class RequestTranslator:
    """Client ChatCompletionRequest -> UpstreamRequest for the configured provider."""

    def __init__(self, config: RelayConfig):
        self.config = config

    def decode(self, body: Union[bytes, str, Dict[str, Any]]) -> ChatCompletionRequest:
        try:
            if isinstance(body, dict):
                return ChatCompletionRequest.model_validate(body)
            return ChatCompletionRequest.model_validate_json(body)
        except ValidationError as e:
            logger.warning(f"Rejecting undecodable request body: {e.error_count()} validation error(s)")
            raise InvalidRequest(f"Invalid request body: {_summarize_validation_error(e)}") from e

    def translate(self, body: Union[bytes, str, Dict[str, Any], ChatCompletionRequest]) -> Tuple[UpstreamRequest, str]:
        """
        Returns the upstream request and the alias the client asked for.

        The alias must be echoed back in the client-facing response.
        """
        request = body if isinstance(body, ChatCompletionRequest) else self.decode(body)

        alias = request.model
        if not alias or alias not in self.config.model_aliases:
            supported = ", ".join(self.config.model_aliases)
            logger.warning(f"Unsupported model requested: {alias!r}")
            raise InvalidRequest(f"Model {alias or '<missing>'} not supported. Use {supported} instead.")

        profile = self.config.profile
        choice = ToolChoice.parse(request.tool_choice)

        temperature = request.temperature
        if temperature is None:
            temperature = self.config.default_temperature
        max_tokens = request.max_tokens
        if max_tokens is None:
            max_tokens = self.config.default_max_tokens

        upstream = UpstreamRequest(
            model=self.config.upstream_model,
            messages=normalize_messages(request.messages),
            stream=bool(request.stream),
            temperature=temperature,
            max_tokens=max_tokens,
            tools=consolidate_tools(request.tools, request.functions),
            tool_choice=resolve_tool_choice(choice, profile.forced_choice_fallback, profile.supports_tool_choice),
        )
        logger.info(f"Model converted to: {upstream.model} (original: {alias}), stream={upstream.stream}, messages={len(upstream.messages)}")
        return upstream, alias


def _summarize_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg')}"


def _dump_tool(tool: Tool) -> Dict[str, Any]:
    # exclude_unset keeps the client's schema blob exactly as sent (nulls included)
    dumped = tool.model_dump(exclude_unset=True)
    dumped["type"] = tool.type
    return dumped


def encode_upstream_payload(request: UpstreamRequest, profile: ProviderProfile) -> Dict[str, Any]:
    """
    Renders the upstream request as the JSON body the provider expects.
    """
    payload: Dict[str, Any] = {
        "model": request.model,
        "messages": [msg.model_dump(exclude_none=True) for msg in request.messages],
        "stream": request.stream,
    }

    if profile.wire_format == "ollama":
        # Ollama specific: 'options' dictionary for sampling parameters
        options = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            # Ollama uses 'num_predict' for max tokens
            options["num_predict"] = request.max_tokens
        if options:
            payload["options"] = options
    else:
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens

    if request.tools:
        payload["tools"] = [_dump_tool(tool) for tool in request.tools]
    if request.tool_choice is not None:
        payload["tool_choice"] = request.tool_choice

    return payload


def ollama_tool_calls(calls: Optional[List[OllamaToolCall]]) -> Optional[List[ToolCall]]:
    """Converts Ollama tool calls (object arguments, no ids) to the client shape."""
    if not calls:
        return None
    converted = []
    for i, call in enumerate(calls):
        arguments = call.function.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments if arguments is not None else {}, ensure_ascii=False)
        converted.append(ToolCall(
            id=f"call_{i}",
            type="function",
            function=FunctionCall(name=call.function.name, arguments=arguments),
        ))
    return filter_tool_calls(converted)


def completion_id() -> str:
    # Timestamp plus random suffix, unique across replies within one second
    return f"chatcmpl-{time.strftime('%Y%m%d%H%M%S')}{secrets.token_hex(4)}"


class ResponseTranslator:
    """Upstream non-streaming body -> client ChatCompletionResponse JSON."""

    def __init__(self, config: RelayConfig):
        self.config = config

    def translate(self, body: bytes, original_model: str) -> Dict[str, Any]:
        if self.config.profile.wire_format == "ollama":
            response = self._from_ollama(body, original_model)
        else:
            response = self._from_openai(body, original_model)

        data = response.model_dump(exclude_none=True)
        for choice in data["choices"]:
            # Clients expect these keys even when null
            choice.setdefault("finish_reason", None)
            choice["message"].setdefault("content", None)
        return data

    def _from_openai(self, body: bytes, original_model: str) -> ChatCompletionResponse:
        try:
            upstream = UpstreamChatResponse.model_validate_json(body)
        except ValidationError as e:
            logger.error(f"Error parsing upstream response: {e}. Body (first 500 chars): {body[:500]!r}")
            raise UpstreamResponseMalformed(f"Upstream returned a malformed completion: {_summarize_validation_error(e)}") from e

        choices: List[Choice] = []
        for choice in upstream.choices:
            message = choice.message
            if message.tool_calls:
                logger.info(f"Processing {len(message.tool_calls)} tool calls in choice {choice.index}")
                message = message.model_copy(update={"tool_calls": filter_tool_calls(message.tool_calls)})
            choices.append(choice.model_copy(update={"message": message}))

        return ChatCompletionResponse(
            id=upstream.id,
            created=upstream.created,
            model=original_model,
            choices=choices,
            usage=upstream.usage or Usage(),
        )

    def _from_ollama(self, body: bytes, original_model: str) -> ChatCompletionResponse:
        try:
            upstream = OllamaChatResponse.model_validate_json(body)
        except ValidationError as e:
            logger.error(f"Error parsing Ollama response: {e}. Body (first 500 chars): {body[:500]!r}")
            raise UpstreamResponseMalformed(f"Upstream returned a malformed completion: {_summarize_validation_error(e)}") from e

        tool_calls = ollama_tool_calls(upstream.message.tool_calls)
        message = ChatMessage(role="assistant", content=upstream.message.content, tool_calls=tool_calls)
        finish_reason = "tool_calls" if tool_calls else (upstream.done_reason or "stop")

        return ChatCompletionResponse(
            id=completion_id(),
            created=int(time.time()),
            model=original_model,
            choices=[Choice(index=0, message=message, finish_reason=finish_reason)],
            usage=Usage(
                prompt_tokens=upstream.prompt_eval_count,
                completion_tokens=upstream.eval_count,
                total_tokens=upstream.prompt_eval_count + upstream.eval_count,
            ),
        )
