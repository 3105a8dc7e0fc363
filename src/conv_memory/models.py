"""Canonical data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar


def format_timestamp(ts: datetime | None) -> str | None:
    """Format a timestamp as RFC 3339, or None."""
    if ts is None:
        return None
    return ts.isoformat()


@dataclass
class TurnContextInfo:
    """Per-turn configuration captured from a turn_context record."""

    raw: Any
    cwd: str | None = None
    approval_policy: str | None = None
    sandbox_mode: str | None = None
    sandbox_network_access: bool | None = None
    model: str | None = None
    effort: str | None = None
    summary_style: str | None = None

    def to_dict(self) -> dict:
        return {
            "raw": self.raw,
            "cwd": self.cwd,
            "approval_policy": self.approval_policy,
            "sandbox_mode": self.sandbox_mode,
            "sandbox_network_access": self.sandbox_network_access,
            "model": self.model,
            "effort": self.effort,
            "summary_style": self.summary_style,
        }


@dataclass
class UserInputRecord:
    """One user message: raw payload plus extracted text and images."""

    raw: Any
    text: str | None = None
    images: list[str] = field(default_factory=list)


class FallbackSource(StrEnum):
    """Where a turn's fallback text came from. Values are storage tags."""

    REASONING = "reasoning"
    TOOL_OUTPUT = "tool"
    EVENT = "event"


@dataclass
class FallbackSummary:
    source: FallbackSource
    text: str

    def tagged(self) -> str:
        """Render as '[tag] text' for storage."""
        return f"[{self.source.value}] {self.text}"


@dataclass
class TurnResult:
    """Assistant output for a turn."""

    assistant_messages: list[str] = field(default_factory=list)
    fallback: FallbackSummary | None = None
    reasoning_summaries: list[str] = field(default_factory=list)
    reasoning_encrypted: bool = False


# Action kinds form a closed union. Each variant carries a `tag` used in
# serialised output and in rendered summaries.


@dataclass(frozen=True)
class FunctionCall:
    tag: ClassVar[str] = "function_call"
    name: str | None = None


@dataclass(frozen=True)
class CustomToolCall:
    tag: ClassVar[str] = "custom_tool_call"
    name: str | None = None


@dataclass(frozen=True)
class LocalShellExec:
    tag: ClassVar[str] = "local_shell_exec"
    command: tuple[str, ...] = ()
    workdir: str | None = None
    timeout_ms: int | None = None
    escalated: bool | None = None


@dataclass(frozen=True)
class WebSearch:
    tag: ClassVar[str] = "web_search"
    query: str | None = None


@dataclass(frozen=True)
class OtherAction:
    tag: ClassVar[str] = "other"
    kind: str | None = None


ActionKind = FunctionCall | CustomToolCall | LocalShellExec | WebSearch | OtherAction


def action_kind_to_dict(kind: ActionKind) -> dict:
    """Serialise an action kind as {"type": tag, ...fields}."""
    match kind:
        case FunctionCall(name=name) | CustomToolCall(name=name):
            return {"type": kind.tag, "name": name}
        case LocalShellExec():
            return {
                "type": kind.tag,
                "command": list(kind.command),
                "workdir": kind.workdir,
                "timeout_ms": kind.timeout_ms,
                "escalated": kind.escalated,
            }
        case WebSearch(query=query):
            return {"type": kind.tag, "query": query}
        case OtherAction(kind=other):
            return {"type": kind.tag, "kind": other}
    raise TypeError(f"Unknown action kind: {kind!r}")


@dataclass
class ActionOutput:
    content: str | None = None
    success: bool | None = None
    raw: Any = None


@dataclass
class ActionStatus:
    """Status reported for an action.

    `status_text` comes from explicit "status" payload fields, `local_status`
    from local shell lifecycle events. They are kept apart because the two
    sources can disagree.
    """

    status_text: str | None = None
    local_status: str | None = None

    @property
    def best(self) -> str | None:
        return self.status_text or self.local_status


@dataclass
class ActionEvent:
    timestamp: datetime
    kind: str
    data: Any


@dataclass
class ActionRecord:
    """One tool or function invocation, possibly assembled from several events."""

    call_id: str | None = None
    kind: ActionKind = field(default_factory=OtherAction)
    arguments: Any = None
    output: ActionOutput | None = None
    status: ActionStatus = field(default_factory=ActionStatus)
    events: list[ActionEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        output = None
        if self.output is not None:
            output = {
                "content": self.output.content,
                "success": self.output.success,
                "raw": self.output.raw,
            }
        return {
            "call_id": self.call_id,
            "kind": action_kind_to_dict(self.kind),
            "arguments": self.arguments,
            "output": output,
            "status": {
                "status_text": self.status.status_text,
                "local_status": self.status.local_status,
            },
            "events": [
                {"timestamp": format_timestamp(e.timestamp), "kind": e.kind, "data": e.data}
                for e in self.events
            ],
        }


@dataclass
class Timed:
    timestamp: datetime
    data: Any

    def to_dict(self) -> dict:
        return {"timestamp": format_timestamp(self.timestamp), "data": self.data}


@dataclass
class TurnTelemetry:
    token_counts: list[Timed] = field(default_factory=list)
    plan_updates: list[Timed] = field(default_factory=list)
    approvals: list[Timed] = field(default_factory=list)
    misc_events: list[Timed] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "token_counts": [t.to_dict() for t in self.token_counts],
            "plan_updates": [t.to_dict() for t in self.plan_updates],
            "approvals": [t.to_dict() for t in self.approvals],
            "misc_events": [t.to_dict() for t in self.misc_events],
        }


@dataclass
class TurnRecord:
    """Normalised view of a single user-interaction round."""

    index: int
    started_at: datetime | None = None
    context: TurnContextInfo | None = None
    user_inputs: list[UserInputRecord] = field(default_factory=list)
    result: TurnResult = field(default_factory=TurnResult)
    actions: list[ActionRecord] = field(default_factory=list)
    telemetry: TurnTelemetry = field(default_factory=TurnTelemetry)

    @property
    def user_text(self) -> str | None:
        """User input texts joined by a paragraph break."""
        texts = [i.text for i in self.user_inputs if i.text is not None]
        return "\n\n".join(texts) if texts else None

    @property
    def assistant_text(self) -> str | None:
        """Assistant messages joined by a paragraph break."""
        if not self.result.assistant_messages:
            return None
        return "\n\n".join(self.result.assistant_messages)


@dataclass
class TokenUsageBreakdown:
    input_tokens: int | None = None
    cached_input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class TokenUsageSummary:
    """Latest conversation-wide token usage snapshot."""

    total: TokenUsageBreakdown | None = None
    last: TokenUsageBreakdown | None = None
    model_context_window: int | None = None


@dataclass
class ConversationRecord:
    """Parsed representation of a rollout file."""

    session_meta: Any = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    token_usage: TokenUsageSummary = field(default_factory=TokenUsageSummary)
    turns: list[TurnRecord] = field(default_factory=list)


@dataclass
class ConversationStats:
    """Derived conversation attributes used for keyword and metadata search."""

    preview: str | None = None
    first_question: str | None = None
    last_question: str | None = None
    last_user_message: str | None = None
    model: str | None = None
    turn_count: int = 0
    has_live_events: bool = False
    commands: list[str] = field(default_factory=list)
    files_touched: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    search_blob: str = ""
    cwd: str | None = None


@dataclass
class RolloutFingerprint:
    """Change-detection snapshot of a rollout file."""

    modified_at: datetime | None = None
    size_bytes: int | None = None
    sha256: str | None = None


@dataclass
class UpdateStats:
    processed: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class StoredTurnRow:
    """Candidate row returned by the persistence layer for vector search."""

    conversation_id: str
    turn_index: int
    user_text: str | None
    assistant_text: str | None
    embedding: bytes


@dataclass
class SearchResult:
    conversation_id: str
    turn_index: int
    score: float
    user_text: str | None = None
    assistant_text: str | None = None


@dataclass
class ConversationSummary:
    """Conversation row returned by keyword search."""

    id: str
    rollout_path: str
    started_at: str | None
    ended_at: str | None
    preview: str | None
    model: str | None
    cwd: str | None
    turn_count: int
