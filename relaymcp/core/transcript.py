"""
Conversation transcript for one query.

A transcript is owned by a single ``process_query`` call and discarded
when it returns. Messages are appended in causal order:
user -> assistant (+ tool call) -> tool result -> ... -> assistant.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relaymcp.providers.base import ToolCallRequest

USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


@dataclass
class Message:
    """One transcript message."""
    role: str
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Chat-completion wire form."""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_message() for call in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data


class Transcript:
    """Ordered message history for a single query."""

    def __init__(self, text: Optional[str] = None):
        self.messages: List[Message] = []
        if text is not None:
            self.add_user(text)

    def add_user(self, text: str) -> Message:
        message = Message(role=USER, content=text)
        self.messages.append(message)
        return message

    def add_tool_exchange(self, call: ToolCallRequest, result_text: str) -> None:
        """Append the (assistant-with-call, tool-result) pair for one invocation."""
        self.messages.append(Message(role=ASSISTANT, content=None, tool_calls=[call]))
        self.messages.append(Message(role=TOOL, content=result_text, tool_call_id=call.id))

    def tool_results(self) -> List[Message]:
        return [m for m in self.messages if m.role == TOOL]

    def to_messages(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def __len__(self) -> int:
        return len(self.messages)
