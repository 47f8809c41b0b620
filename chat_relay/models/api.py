from enum import Enum
from typing import List, Optional, Dict, Any, Union, Literal, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field


class FunctionCall(BaseModel):
    name: str = ""
    arguments: str = "" # JSON-encoded string, never parsed


class ToolCall(BaseModel):
    id: str = ""
    type: str = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)


class FunctionDefinition(BaseModel):
    """Named callable descriptor. `parameters` is a JSON-schema blob passed through as-is."""
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


class Tool(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "function"
    function: FunctionDefinition


class ChatMessage(BaseModel):
    role: str # system, user, assistant, tool, function; other roles pass through unchanged
    content: Optional[Union[str, List[Any]]] = None # Content parts are passed through
    tool_calls: Optional[List[ToolCall]] = None # Only meaningful for role == "assistant"
    tool_call_id: Optional[str] = None # Only meaningful for role == "tool"
    name: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    """Client-facing (OpenAI-shaped) chat completion request."""
    model: Optional[str] = Field(None, description="Model alias requested by the client.")
    messages: List[ChatMessage]
    stream: Optional[bool] = False # null is treated as false
    tools: Optional[List[Tool]] = None
    functions: Optional[List[FunctionDefinition]] = Field(None, description="Legacy function descriptors, wrapped into tools when `tools` is empty.")
    tool_choice: Optional[Any] = None # "auto" | "none" | {"type": "function", ...} | anything else
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ToolChoiceKind(str, Enum):
    ABSENT = "absent"
    AUTO = "auto"
    NONE = "none"
    FUNCTION = "function"


class ToolChoice(BaseModel):
    """
    Tagged form of the client's `tool_choice` value.

    Built once at the translation boundary; nothing downstream looks at the
    original JSON shape again.
    """
    model_config = ConfigDict(frozen=True)

    kind: ToolChoiceKind = ToolChoiceKind.ABSENT
    function_name: Optional[str] = None

    @classmethod
    def parse(cls, value: Any) -> "ToolChoice":
        if value is None:
            return cls()
        if isinstance(value, str):
            if value == "auto":
                return cls(kind=ToolChoiceKind.AUTO)
            if value == "none":
                return cls(kind=ToolChoiceKind.NONE)
            return cls()
        if isinstance(value, dict) and value.get("type") == "function":
            function = value.get("function")
            name = function.get("name") if isinstance(function, dict) else None
            return cls(kind=ToolChoiceKind.FUNCTION, function_name=name if isinstance(name, str) else None)
        return cls()


class UpstreamRequest(BaseModel):
    """Translated request; `model` is always the concrete upstream identifier."""
    model: str
    messages: List[ChatMessage]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[Tool]] = None
    tool_choice: Optional[Literal["auto", "none"]] = None


class Usage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Choice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int = 0
    message: ChatMessage
    finish_reason: Optional[str] = None


class UpstreamChatResponse(BaseModel):
    """Non-streaming envelope returned by OpenAI-shaped upstreams."""
    model_config = ConfigDict(extra="ignore")

    id: str
    object: Optional[str] = None
    created: int = 0
    model: Optional[str] = None
    choices: List[Choice]
    usage: Optional[Usage] = None


class ChatCompletionResponse(BaseModel):
    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]


class UpstreamResult(BaseModel):
    """Standardized result of one upstream call for internal handling"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status_code: int
    headers: List[Tuple[str, str]] = [] # Upstream headers, hop-by-hop ones already removed
    body: Optional[bytes] = None # Buffered body (non-streaming or error responses)
    response: Optional[httpx.Response] = None # Open stream handle, caller must close it

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


# --- Ollama native chat API (/api/chat) ---

class OllamaFunctionCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    arguments: Any = None # Ollama sends an object, not a JSON string


class OllamaToolCall(BaseModel):
    model_config = ConfigDict(extra="ignore")

    function: OllamaFunctionCall = Field(default_factory=OllamaFunctionCall)


class OllamaMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "assistant"
    content: str = ""
    tool_calls: Optional[List[OllamaToolCall]] = None


class OllamaChatResponse(BaseModel):
    """One NDJSON record of a streamed reply, or the whole non-streaming reply."""
    model_config = ConfigDict(extra="ignore")

    model: Optional[str] = None
    message: OllamaMessage = Field(default_factory=OllamaMessage)
    done: bool = False
    done_reason: Optional[str] = None
    prompt_eval_count: int = 0
    eval_count: int = 0
