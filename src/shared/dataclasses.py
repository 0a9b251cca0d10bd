"""
Data models exchanged with external collaborators.

This module contains the records returned by the capture, model and tool-executor
collaborators. The core never builds these itself beyond tests and adapters.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class FocusedElementDetail:
    """Accessibility detail for the currently focused element."""

    role: str = ""
    value: str = ""
    selected_child_count: int = 0


@dataclass
class ModelToolCall:
    """A tool invocation requested by the language model."""

    name: str
    input: Dict[str, str] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass
class ModelResponse:
    """Result of one language-model request."""

    text_content: str = ""
    tool_calls: List[ModelToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ToolExecutionResult:
    """Outcome of a tool executor run."""

    summary: str
    is_error: bool = False
    data: Optional[Dict[str, Any]] = None
