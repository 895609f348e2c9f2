"""AI transports, conversation engine, and tool wiring."""

from .ai_types import (
    FunctionCall,
    FunctionResponse,
    GenerationConfig,
    NormalizedChunk,
    TextPart,
    ToolCall,
    ToolCallStatus,
    ToolDescriptor,
    Turn,
)
from .client import ClientSettings, OpenAICompatTransport
from .code_assist import CodeAssistSettings, CodeAssistTransport
from .transport import StreamTransport

__all__ = [
    "ClientSettings",
    "CodeAssistSettings",
    "CodeAssistTransport",
    "FunctionCall",
    "FunctionResponse",
    "GenerationConfig",
    "NormalizedChunk",
    "OpenAICompatTransport",
    "StreamTransport",
    "TextPart",
    "ToolCall",
    "ToolCallStatus",
    "ToolDescriptor",
    "Turn",
]
