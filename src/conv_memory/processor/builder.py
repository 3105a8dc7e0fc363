"""Accumulators used while scanning a rollout stream.

The parser feeds events into a ConversationBuilder in a single pass. The
builder keeps at most one open TurnBuilder; a turn is closed when a new
turn_context arrives or when the stream ends, and is dropped if nothing was
recorded in it.
"""

from datetime import datetime
from typing import Any

from conv_memory.models import (
    ActionEvent,
    ActionKind,
    ActionOutput,
    ActionRecord,
    ActionStatus,
    ConversationRecord,
    FallbackSource,
    FallbackSummary,
    OtherAction,
    TokenUsageBreakdown,
    TokenUsageSummary,
    TurnContextInfo,
    TurnRecord,
    TurnResult,
    TurnTelemetry,
    UserInputRecord,
)


def as_uint(value: Any) -> int | None:
    """Return value if it is a non-negative JSON integer, else None."""
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def breakdown_from_value(value: Any) -> TokenUsageBreakdown:
    """Build a TokenUsageBreakdown from a token usage JSON object."""
    if not isinstance(value, dict):
        return TokenUsageBreakdown()
    cached = value.get("cached_input_tokens")
    if cached is None:
        cached = value.get("cachedTokens")
    return TokenUsageBreakdown(
        input_tokens=as_uint(value.get("input_tokens")),
        cached_input_tokens=as_uint(cached),
        output_tokens=as_uint(value.get("output_tokens")),
        reasoning_output_tokens=as_uint(value.get("reasoning_output_tokens")),
        total_tokens=as_uint(value.get("total_tokens")),
    )


class ActionBuilder:
    """Collects the events that make up one action."""

    def __init__(self, call_id: str | None = None) -> None:
        self.call_id = call_id
        self.kind: ActionKind = OtherAction()
        self.arguments: Any = None
        self.output: ActionOutput | None = None
        self.status = ActionStatus()
        self.events: list[ActionEvent] = []

    def set_kind(self, kind: ActionKind) -> None:
        self.kind = kind

    def set_arguments(self, arguments: Any) -> None:
        self.arguments = arguments

    def set_output(self, output: ActionOutput) -> None:
        self.output = output

    def update_status_text(self, status: str | None) -> None:
        self.status.status_text = status

    def update_local_status(self, status: str | None) -> None:
        self.status.local_status = status

    def push_event(self, timestamp: datetime, kind: str, data: Any) -> None:
        self.events.append(ActionEvent(timestamp=timestamp, kind=kind, data=data))

    def finish(self) -> ActionRecord:
        return ActionRecord(
            call_id=self.call_id,
            kind=self.kind,
            arguments=self.arguments,
            output=self.output,
            status=self.status,
            events=self.events,
        )


def _action_sort_key(action: ActionRecord) -> tuple[bool, str]:
    # Actions without a call id sort first.
    return (action.call_id is not None, action.call_id or "")


class TurnBuilder:
    """Accumulates the content of one turn."""

    def __init__(
        self,
        started_at: datetime | None = None,
        context: TurnContextInfo | None = None,
    ) -> None:
        self.started_at = started_at
        self.context = context
        self.user_inputs: list[UserInputRecord] = []
        self.assistant_messages: list[str] = []
        self.reasoning_summaries: list[str] = []
        self.reasoning_encrypted = False
        self.fallback_reasoning: str | None = None
        self.fallback_tool_output: str | None = None
        self.fallback_event: str | None = None
        # Keyed actions and anonymous actions live in separate containers and
        # are merged once in finish().
        self.actions: dict[str, ActionBuilder] = {}
        self.anonymous_actions: list[ActionBuilder] = []
        self.telemetry = TurnTelemetry()

    def ensure_started_at(self, timestamp: datetime) -> None:
        if self.started_at is None:
            self.started_at = timestamp

    def push_user_input(self, record: UserInputRecord) -> None:
        self.user_inputs.append(record)

    def push_assistant_message(self, message: str) -> None:
        self.assistant_messages.append(message)

    def push_reasoning_summary(self, summary: str) -> None:
        self.reasoning_summaries.append(summary)
        self.fallback_reasoning = summary

    def mark_reasoning_encrypted(self) -> None:
        self.reasoning_encrypted = True

    def record_tool_output_text(self, text: str) -> None:
        self.fallback_tool_output = text

    def record_event_agent_message(self, text: str) -> None:
        self.fallback_event = text

    def action(self, call_id: str | None) -> ActionBuilder:
        """Return the action for call_id, creating it if needed.

        Without a call id a fresh anonymous action is always created.
        """
        if call_id is None:
            builder = ActionBuilder(None)
            self.anonymous_actions.append(builder)
            return builder
        builder = self.actions.get(call_id)
        if builder is None:
            builder = ActionBuilder(call_id)
            self.actions[call_id] = builder
        return builder

    def is_empty(self) -> bool:
        return not (
            self.user_inputs
            or self.assistant_messages
            or self.actions
            or self.anonymous_actions
            or self.reasoning_summaries
            or self.telemetry.token_counts
        )

    def resolve_fallback(self) -> FallbackSummary | None:
        """Pick the fallback text by fixed priority: reasoning, tool output, event."""
        if self.assistant_messages:
            return None
        if self.fallback_reasoning is not None:
            return FallbackSummary(FallbackSource.REASONING, self.fallback_reasoning)
        if self.fallback_tool_output is not None:
            return FallbackSummary(FallbackSource.TOOL_OUTPUT, self.fallback_tool_output)
        if self.fallback_event is not None:
            return FallbackSummary(FallbackSource.EVENT, self.fallback_event)
        return None

    def finish(self, index: int) -> TurnRecord:
        actions = [b.finish() for b in self.anonymous_actions]
        actions.extend(b.finish() for b in self.actions.values())
        actions.sort(key=_action_sort_key)

        return TurnRecord(
            index=index,
            started_at=self.started_at,
            context=self.context,
            user_inputs=self.user_inputs,
            result=TurnResult(
                assistant_messages=self.assistant_messages,
                fallback=self.resolve_fallback(),
                reasoning_summaries=self.reasoning_summaries,
                reasoning_encrypted=self.reasoning_encrypted,
            ),
            actions=actions,
            telemetry=self.telemetry,
        )


class ConversationBuilder:
    """Accumulates turns and conversation-wide state for one rollout."""

    def __init__(self) -> None:
        self.session_meta: Any = None
        self.turns: list[TurnRecord] = []
        self.current_turn: TurnBuilder | None = None
        self.first_timestamp: datetime | None = None
        self.last_timestamp: datetime | None = None
        self.token_usage = TokenUsageSummary()

    def observe_timestamp(self, timestamp: datetime) -> None:
        if self.first_timestamp is None:
            self.first_timestamp = timestamp
        self.last_timestamp = timestamp

    def inherited_timestamp(self) -> datetime | None:
        """Timestamp to use for a record that carries none."""
        if self.last_timestamp is not None:
            return self.last_timestamp
        return self.first_timestamp

    def update_token_usage(self, info: Any) -> None:
        if not isinstance(info, dict):
            return
        if "total_token_usage" in info:
            self.token_usage.total = breakdown_from_value(info["total_token_usage"])
        if "last_token_usage" in info:
            self.token_usage.last = breakdown_from_value(info["last_token_usage"])
        window = as_uint(info.get("model_context_window"))
        if window is None:
            window = as_uint(info.get("model_context_window_tokens"))
        if window is not None:
            self.token_usage.model_context_window = window

    def ensure_turn(self, timestamp: datetime) -> TurnBuilder:
        """Return the open turn, opening an implicit one if needed."""
        if self.current_turn is None:
            self.current_turn = TurnBuilder(started_at=timestamp)
        return self.current_turn

    def start_new_turn(self, context: TurnContextInfo, timestamp: datetime) -> TurnBuilder:
        """Close the open turn and start one carrying context."""
        self.finalize_turn()
        self.current_turn = TurnBuilder(started_at=timestamp, context=context)
        return self.current_turn

    def finalize_turn(self) -> None:
        """Close the open turn, keeping it only if it recorded something."""
        builder = self.current_turn
        self.current_turn = None
        if builder is None or builder.is_empty():
            return
        self.turns.append(builder.finish(index=len(self.turns)))

    def finalize(self) -> ConversationRecord:
        self.finalize_turn()

        duration_seconds = None
        if self.first_timestamp is not None and self.last_timestamp is not None:
            delta = self.last_timestamp - self.first_timestamp
            duration_seconds = max(0, int(delta.total_seconds()))

        return ConversationRecord(
            session_meta=self.session_meta,
            started_at=self.first_timestamp,
            ended_at=self.last_timestamp,
            duration_seconds=duration_seconds,
            token_usage=self.token_usage,
            turns=self.turns,
        )
