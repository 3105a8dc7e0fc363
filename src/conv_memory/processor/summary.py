"""Render turns as plain text for embedding."""

from conv_memory.models import (
    ActionRecord,
    CustomToolCall,
    FunctionCall,
    LocalShellExec,
    OtherAction,
    TurnRecord,
    WebSearch,
)

OUTPUT_SNIPPET_CHARS = 200
EMPTY_TURN_SUMMARY = "No transcript recorded for this turn."


def describe_action(action: ActionRecord) -> str:
    """One-line description of an action's kind."""
    match action.kind:
        case FunctionCall(name=name):
            return f"function_call {name or '(unknown)'}"
        case CustomToolCall(name=name):
            return f"custom_tool {name or '(unknown)'}"
        case LocalShellExec(command=command, workdir=workdir):
            joined = " ".join(command)
            if workdir:
                return f"shell `{joined}` (cwd: {workdir})"
            return f"shell `{joined}`"
        case WebSearch(query=query):
            return f"web_search {query or '(query missing)'}"
        case OtherAction(kind=kind):
            return kind or "other"
    return "other"


def render_action(action: ActionRecord) -> str:
    """Bulleted summary line: kind, call id, status and an output snippet."""
    rendered = f"- {describe_action(action)}"
    if action.call_id is not None:
        rendered += f" (call_id={action.call_id})"
    status = action.status.best
    if status is not None:
        rendered += f" [status: {status}]"
    if action.output is not None and action.output.content is not None:
        snippet = action.output.content.strip()
        if snippet:
            rendered += f" -> {snippet[:OUTPUT_SNIPPET_CHARS]}"
    return rendered


def render_turn_summary(turn: TurnRecord) -> str:
    """Render a turn as the text that gets embedded.

    Sections (each only when non-empty): numbered user inputs with an image
    count marker, assistant text or tagged fallback, and the action list.
    """
    sections: list[str] = []

    rendered_inputs: list[str] = []
    for idx, user_input in enumerate(turn.user_inputs, start=1):
        fragment = user_input.text or ""
        if user_input.images:
            if fragment:
                fragment += "\n"
            fragment += f"[{len(user_input.images)} image(s)]"
        if fragment:
            rendered_inputs.append(f"#{idx} {fragment.strip()}")
    if rendered_inputs:
        sections.append("User:\n" + "\n\n".join(rendered_inputs))

    result_texts: list[str] = []
    if turn.result.assistant_messages:
        result_texts.append("\n\n".join(turn.result.assistant_messages))
    if turn.result.fallback is not None:
        fallback = turn.result.fallback
        result_texts.append(f"[fallback {fallback.source.value}] {fallback.text}")
    if result_texts:
        sections.append("Assistant:\n" + "\n\n".join(result_texts))

    if turn.actions:
        sections.append("Actions:\n" + "\n".join(render_action(a) for a in turn.actions))

    if not sections:
        return EMPTY_TURN_SUMMARY
    return "\n\n".join(sections)
