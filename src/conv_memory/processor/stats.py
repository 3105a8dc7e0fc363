"""Conversation statistics used for keyword and metadata search."""

from collections import deque
from typing import Any

from conv_memory.models import (
    ActionRecord,
    ConversationRecord,
    ConversationStats,
    FunctionCall,
    LocalShellExec,
    TurnTelemetry,
)

MAX_STORED_QUESTIONS = 5

PATCH_FILE_MARKERS = ("Update File: ", "Add File: ", "Delete File: ")


def extract_patch_paths(patch: str) -> list[str]:
    """Extract file paths from an apply_patch body.

    Recognises the "*** Update File:", "*** Add File:" and "*** Delete File:"
    header lines.

    Args:
        patch: Patch text

    Returns:
        Paths in order of appearance (may contain duplicates)
    """
    paths: list[str] = []
    for line in patch.splitlines():
        if not line.startswith("*** "):
            continue
        rest = line[4:]
        for marker in PATCH_FILE_MARKERS:
            if rest.startswith(marker):
                paths.append(rest[len(marker):].strip())
                break
    return paths


def _first_token(cmd: str) -> str | None:
    parts = cmd.split()
    return parts[0] if parts else None


def collect_action_metadata(action: ActionRecord, commands: set[str], files: set[str]) -> None:
    """Add the commands and patched files referenced by an action."""
    args: Any = action.arguments if isinstance(action.arguments, dict) else {}

    match action.kind:
        case LocalShellExec(command=command):
            first = _first_token(command[0]) if command else None
            if first:
                commands.add(first)
        case FunctionCall(name="exec_command"):
            cmd = args.get("cmd")
            if isinstance(cmd, str):
                first = _first_token(cmd)
                if first:
                    commands.add(first)
            command_list = args.get("command")
            if isinstance(command_list, list):
                first = next((c for c in command_list if isinstance(c, str)), None)
                if first:
                    commands.add(first)
        case FunctionCall(name="apply_patch"):
            patch = args.get("patch")
            if isinstance(patch, str):
                files.update(extract_patch_paths(patch))


def telemetry_indicates_live(telemetry: TurnTelemetry) -> bool:
    """Whether a turn's misc events show a live listener session."""
    for event in telemetry.misc_events:
        data = event.data if isinstance(event.data, dict) else {}
        if data.get("type") == "listener_event":
            return True
        if data.get("kind") == "live_state":
            message = data.get("message")
            if not isinstance(message, str):
                return True
            if "active" in message:
                return True
    return False


def _session_cwd(session_meta: Any) -> str | None:
    if not isinstance(session_meta, dict):
        return None
    cwd = session_meta.get("cwd")
    if isinstance(cwd, str):
        return cwd
    workspace = session_meta.get("workspace")
    if isinstance(workspace, dict) and isinstance(workspace.get("cwd"), str):
        return workspace["cwd"]
    return None


def compute_conversation_stats(record: ConversationRecord) -> ConversationStats:
    """Derive preview, questions, commands, files and the search blob.

    Stats are recomputed from scratch for every ingested revision of a
    rollout.
    """
    commands: set[str] = set()
    files: set[str] = set()
    questions: deque[str] = deque(maxlen=MAX_STORED_QUESTIONS)
    search_parts: list[str] = []

    cwd = _session_cwd(record.session_meta)
    first_question: str | None = None
    last_question: str | None = None
    last_user_message: str | None = None
    model: str | None = None
    has_live_events = False

    for turn in record.turns:
        ctx = turn.context
        if ctx is not None:
            if model is None:
                model = ctx.model
            if ctx.summary_style and ctx.summary_style.lower() == "live":
                has_live_events = True
            if cwd is None:
                cwd = ctx.cwd

        for user_input in turn.user_inputs:
            if user_input.text is None:
                continue
            text = user_input.text.strip()
            if not text:
                continue
            last_user_message = text
            if "?" in text:
                if first_question is None:
                    first_question = text
                last_question = text
                questions.append(text)
            search_parts.append(text)

        result = turn.result
        for text in [*result.assistant_messages, *result.reasoning_summaries]:
            if text.strip():
                search_parts.append(text.strip())
        if result.fallback is not None and result.fallback.text.strip():
            search_parts.append(result.fallback.text.strip())

        for action in turn.actions:
            collect_action_metadata(action, commands, files)

        if not has_live_events and telemetry_indicates_live(turn.telemetry):
            has_live_events = True

    preview = last_question if last_question is not None else last_user_message
    if preview:
        search_parts.append(preview)

    sorted_commands = sorted(commands)
    sorted_files = sorted(files)
    search_parts.extend(sorted_commands)
    search_parts.extend(sorted_files)

    return ConversationStats(
        preview=preview,
        first_question=first_question,
        last_question=last_question,
        last_user_message=last_user_message,
        model=model,
        turn_count=len(record.turns),
        has_live_events=has_live_events,
        commands=sorted_commands,
        files_touched=sorted_files,
        questions=list(questions),
        search_blob="\n".join(part.lower() for part in search_parts),
        cwd=cwd,
    )
