"""Parser for Codex (OpenAI) rollout transcripts.

Codex stores conversations as JSONL files at:
    ~/.codex/sessions/<year>/<month>/<day>/rollout-*.jsonl

Each line is a JSON object with a type field:
- session_meta: Session metadata (id, cwd, timestamp)
- turn_context: Starts a new turn and carries its configuration
- response_item: Messages, reasoning, and tool calls with their outputs
- event_msg: Live event notifications and telemetry
- compacted: Summary left behind when history was compacted

Lines with record_type == "state" are internal bookkeeping and are skipped.
Very old rollouts start with an untyped metadata record that has only id and
timestamp; it is treated as session_meta.
"""

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from conv_memory.exceptions import InvalidJsonError, MissingFieldError
from conv_memory.models import (
    ActionOutput,
    ConversationRecord,
    CustomToolCall,
    FunctionCall,
    LocalShellExec,
    Timed,
    TurnContextInfo,
    UserInputRecord,
    WebSearch,
)
from conv_memory.processor.builder import ConversationBuilder, TurnBuilder, as_uint
from conv_memory.processor.parsers.base import Parser, parse_timestamp

SHELL_FUNCTION_NAMES = frozenset({"shell", "container.exec"})

# event_msg types that reference a call id and are attached to that action
ACTION_EVENT_TYPES = frozenset({
    "exec_command_begin",
    "exec_command_end",
    "mcp_tool_call_begin",
    "mcp_tool_call_end",
    "web_search_begin",
    "web_search_end",
})

APPROVAL_EVENT_TYPES = frozenset({"exec_approval_request", "apply_patch_approval_request"})


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _str_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _parse_json(text: str) -> Any:
    """Parse a JSON string, returning None when it is not valid JSON."""
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_legacy_session_meta(entry: dict) -> bool:
    return (
        "type" not in entry
        and "record_type" not in entry
        and "id" in entry
        and "timestamp" in entry
    )


class CodexParser(Parser):
    """Parser for Codex JSONL rollout files."""

    source_name = "codex"

    def parse_lines(self, lines: Iterable[str]) -> ConversationRecord:
        """Normalise a Codex rollout into a ConversationRecord.

        Args:
            lines: Lines of the rollout file

        Returns:
            ConversationRecord with turn-segmented content

        Raises:
            InvalidJsonError: If a line is not valid JSON
            MissingFieldError: If a record has no usable timestamp or type
            TimestampError: If a timestamp cannot be parsed
        """
        builder = ConversationBuilder()

        for line_number, line in enumerate(lines, start=1):
            line_text = line.strip()
            if not line_text:
                continue

            try:
                value = json.loads(line_text)
            except ValueError as exc:
                raise InvalidJsonError(line_number, exc) from exc
            entry = _dict(value)

            if entry.get("record_type") == "state":
                continue

            timestamp_str = _str(entry.get("timestamp"))
            if timestamp_str is not None:
                timestamp = parse_timestamp(timestamp_str)
                builder.observe_timestamp(timestamp)
            else:
                inherited = builder.inherited_timestamp()
                if inherited is None:
                    raise MissingFieldError("timestamp")
                timestamp = inherited

            item_type = _str(entry.get("type"))
            if item_type is None:
                if _is_legacy_session_meta(entry):
                    builder.session_meta = value
                    continue
                raise MissingFieldError("type")

            payload = entry.get("payload")

            if item_type == "session_meta":
                builder.session_meta = payload if payload is not None else value
            elif item_type == "turn_context":
                if payload is not None:
                    builder.start_new_turn(self._parse_turn_context(payload), timestamp)
            elif item_type == "response_item":
                if payload is not None:
                    self._handle_response_item(builder, timestamp, payload)
            elif item_type == "event_msg":
                if payload is not None:
                    self._handle_event(builder, timestamp, payload)
            elif item_type == "compacted":
                if payload is not None:
                    self._handle_compacted(builder, timestamp, payload)

        return builder.finalize()

    def _parse_turn_context(self, raw: Any) -> TurnContextInfo:
        ctx = _dict(raw)
        sandbox = _dict(ctx.get("sandbox_policy"))
        cwd = _str(ctx.get("cwd"))
        if cwd is None:
            cwd = _str(ctx.get("cwd_path"))
        return TurnContextInfo(
            raw=raw,
            cwd=cwd,
            approval_policy=_str(ctx.get("approval_policy")),
            sandbox_mode=_str(sandbox.get("mode")),
            sandbox_network_access=_bool(sandbox.get("network_access")),
            model=_str(ctx.get("model")),
            effort=_str(ctx.get("effort")),
            summary_style=_str(ctx.get("summary")),
        )

    def _handle_response_item(
        self,
        builder: ConversationBuilder,
        timestamp: datetime,
        payload: Any,
    ) -> None:
        turn = builder.ensure_turn(timestamp)
        turn.ensure_started_at(timestamp)

        item = _dict(payload)
        response_type = _str(item.get("type")) or ""

        if response_type == "message":
            self._handle_message(turn, item)
        elif response_type == "reasoning":
            self._handle_reasoning(turn, item)
        elif response_type == "function_call":
            self._handle_function_call(turn, timestamp, item)
        elif response_type == "function_call_output":
            self._handle_function_output(turn, item)
        elif response_type == "custom_tool_call":
            self._handle_custom_tool_call(turn, item)
        elif response_type == "custom_tool_call_output":
            self._handle_custom_tool_output(turn, item)
        elif response_type == "local_shell_call":
            self._handle_local_shell_call(turn, item)
        elif response_type == "web_search_call":
            self._handle_web_search_call(turn, item)

    def _handle_message(self, turn: TurnBuilder, payload: dict) -> None:
        role = _str(payload.get("role")) or ""
        content = payload.get("content")
        blocks = content if isinstance(content, list) else []

        if role == "user":
            text_parts: list[str] = []
            images: list[str] = []
            for block in blocks:
                block = _dict(block)
                block_type = block.get("type")
                if block_type == "input_text":
                    text = _str(block.get("text"))
                    if text is not None:
                        text_parts.append(text)
                elif block_type == "input_image":
                    url = _str(block.get("image_url"))
                    if url is not None:
                        images.append(url)
            # Appended even when both text and images are empty, so the
            # number of recorded inputs matches the number of user messages.
            turn.push_user_input(
                UserInputRecord(
                    raw=payload,
                    text="".join(text_parts) or None,
                    images=images,
                )
            )
        elif role == "assistant":
            text_parts = []
            for block in blocks:
                block = _dict(block)
                text = _str(block.get("text"))
                if text is None:
                    text = _str(block.get("content"))
                if text is not None:
                    text_parts.append(text)
            if text_parts:
                turn.push_assistant_message("".join(text_parts))

    def _handle_reasoning(self, turn: TurnBuilder, payload: dict) -> None:
        summary = payload.get("summary")
        if isinstance(summary, list):
            for item in summary:
                text = _str(_dict(item).get("text"))
                if text is not None:
                    turn.push_reasoning_summary(text)
        if "content" in payload:
            turn.mark_reasoning_encrypted()

    def _handle_function_call(self, turn: TurnBuilder, timestamp: datetime, payload: dict) -> None:
        name = _str(payload.get("name"))
        call_id = _str(payload.get("call_id"))
        arguments = _parse_json(_str(payload.get("arguments")) or "")

        action = turn.action(call_id)
        if name in SHELL_FUNCTION_NAMES:
            args = _dict(arguments)
            workdir = _str(args.get("workdir"))
            if workdir is None:
                workdir = _str(args.get("working_directory"))
            timeout_ms = as_uint(args.get("timeout_ms"))
            if timeout_ms is None:
                timeout_ms = as_uint(args.get("timeout"))
            action.set_kind(
                LocalShellExec(
                    command=_str_list(args.get("command")),
                    workdir=workdir,
                    timeout_ms=timeout_ms,
                    escalated=_bool(args.get("with_escalated_permissions")),
                )
            )
        else:
            action.set_kind(FunctionCall(name=name))

        action.set_arguments(arguments)
        action.push_event(timestamp, "function_call", payload)

    def _handle_function_output(self, turn: TurnBuilder, payload: dict) -> None:
        call_id = _str(payload.get("call_id"))
        output = payload.get("output")

        if isinstance(output, dict):
            raw_output: Any = output
            output_str = json.dumps(output)
        else:
            output_str = _str(output) or ""
            raw_output = _parse_json(output_str)
            if raw_output is None:
                raw_output = {"content": output_str}

        fields = _dict(raw_output)
        content_text = _str(fields.get("content"))
        if content_text is None:
            content_text = output_str

        turn.action(call_id).set_output(
            ActionOutput(
                content=content_text,
                success=_bool(fields.get("success")),
                raw=raw_output,
            )
        )
        turn.record_tool_output_text(content_text)

    def _handle_custom_tool_call(self, turn: TurnBuilder, payload: dict) -> None:
        call_id = _str(payload.get("call_id"))
        input_str = _str(payload.get("input")) or ""

        action = turn.action(call_id)
        action.set_kind(CustomToolCall(name=_str(payload.get("name"))))
        action.set_arguments(_parse_json(input_str))
        action.update_status_text(_str(payload.get("status")))

    def _handle_custom_tool_output(self, turn: TurnBuilder, payload: dict) -> None:
        call_id = _str(payload.get("call_id"))
        output = _str(payload.get("output")) or ""

        turn.action(call_id).set_output(ActionOutput(content=output, success=None, raw=output))
        turn.record_tool_output_text(output)

    def _handle_local_shell_call(self, turn: TurnBuilder, payload: dict) -> None:
        call_id = _str(payload.get("call_id"))
        status = _str(payload.get("status"))
        raw_action = payload.get("action")
        args = _dict(raw_action)

        workdir = _str(args.get("working_directory"))
        if workdir is None:
            workdir = _str(args.get("workdir"))

        action = turn.action(call_id)
        action.set_kind(
            LocalShellExec(
                command=_str_list(args.get("command")),
                workdir=workdir,
                timeout_ms=as_uint(args.get("timeout_ms")),
                escalated=_bool(args.get("with_escalated_permissions")),
            )
        )
        action.update_status_text(status)
        action.update_local_status(status)
        action.set_arguments(raw_action)

    def _handle_web_search_call(self, turn: TurnBuilder, payload: dict) -> None:
        call_id = _str(payload.get("call_id"))
        raw_action = payload.get("action")

        action = turn.action(call_id)
        action.set_kind(WebSearch(query=_str(_dict(raw_action).get("query"))))
        action.set_arguments(raw_action)
        action.update_status_text(_str(payload.get("status")))

    def _handle_event(self, builder: ConversationBuilder, timestamp: datetime, payload: Any) -> None:
        event = _dict(payload)
        event_type = _str(event.get("type")) or ""

        turn = builder.ensure_turn(timestamp)
        turn.ensure_started_at(timestamp)
        timed = Timed(timestamp=timestamp, data=payload)

        if event_type == "agent_message":
            message = _str(event.get("message"))
            if message is not None:
                turn.record_event_agent_message(message)
            turn.telemetry.misc_events.append(timed)
        elif event_type in ("agent_reasoning", "agent_reasoning_raw_content"):
            text = _str(event.get("text"))
            if text is not None:
                turn.record_event_agent_message(text)
            turn.telemetry.misc_events.append(timed)
        elif event_type == "token_count":
            turn.telemetry.token_counts.append(timed)
            builder.update_token_usage(event.get("info"))
        elif event_type == "plan_update":
            turn.telemetry.plan_updates.append(timed)
        elif event_type in APPROVAL_EVENT_TYPES:
            turn.telemetry.approvals.append(timed)
        elif event_type in ACTION_EVENT_TYPES:
            call_id = _str(event.get("call_id"))
            if call_id is None:
                call_id = _str(event.get("callId"))
            turn.action(call_id).push_event(timestamp, event_type, payload)
        else:
            turn.telemetry.misc_events.append(timed)

    def _handle_compacted(self, builder: ConversationBuilder, timestamp: datetime, payload: Any) -> None:
        turn = builder.ensure_turn(timestamp)
        turn.ensure_started_at(timestamp)
        message = _str(_dict(payload).get("message"))
        if message is not None:
            turn.push_assistant_message(message)
            turn.record_tool_output_text(message)
