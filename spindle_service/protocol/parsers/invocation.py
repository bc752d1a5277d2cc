"""
Turns the interior of a matched delimiter span into an Invocation or an
InvocationError. Also closes payloads that were cut off by the end of the
stream (salvage).
"""
import json
from typing import List, Optional, Union
from uuid import uuid4

from spindle_service.core.types import ErrorKind, Invocation, InvocationError

_CLOSERS = {"{": "}", "[": "]"}


def new_tool_call_id() -> str:
    return uuid4().hex[:12]


def shorten(contents: str) -> str:
    """Keep the first and last 100 characters of long payloads."""
    if len(contents) < 200:
        return contents
    return contents[:100] + "..." + contents[-100:]


def _parse_error(payload: str, reason: str, autocompleted: bool) -> InvocationError:
    return InvocationError(
        kind=ErrorKind.PARSE_ERROR,
        message=f"Invalid JSON: {json.dumps(shorten(payload))}\nError: {reason}",
        raw_payload=payload,
        autocompleted=autocompleted,
    )


def parse_invocation(
    payload: str,
    *,
    tool_name_key: str = "cb_tool_name",
    ends_agent_step_key: str = "cb_easp",
    autocompleted: bool = False,
) -> Union[Invocation, InvocationError]:
    """
    Parse one span payload. The reserved keys are stripped from the returned
    input; a call salvaged at end of stream always ends the agent step.
    """
    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as e:
        return _parse_error(payload, str(e), autocompleted)

    if not isinstance(obj, dict):
        return _parse_error(payload, f"expected a JSON object, got {type(obj).__name__}", autocompleted)

    tool_name = obj.pop(tool_name_key, None)
    if not isinstance(tool_name, str):
        return InvocationError(
            kind=ErrorKind.UNKNOWN_TOOL,
            message=f"Unknown tool {json.dumps(tool_name)} for tool call: {payload}",
            raw_payload=payload,
            tool_name=tool_name,
            autocompleted=autocompleted,
        )

    ends_agent_step = bool(obj.pop(ends_agent_step_key, False)) or autocompleted
    return Invocation(
        tool_name=tool_name,
        input=obj,
        raw_payload=payload,
        tool_call_id=new_tool_call_id(),
        autocompleted=autocompleted,
        ends_agent_step=ends_agent_step,
    )


def salvage_payload(partial: str) -> Optional[str]:
    """
    Close a payload that was cut off mid-generation so that it parses.

    The partial text is lexed once: an open string is closed, an incomplete
    scalar is dropped, a dangling ':' gets null, a dangling ',' is removed and
    open brackets are closed innermost first. Returns None when the payload
    never opened a JSON object. The result may still fail to parse; callers
    report that as a parse error rather than retrying.
    """
    text = partial.rstrip()
    if not text.lstrip().startswith("{"):
        return None

    # each frame is [bracket, expecting] with expecting in key|colon|value|comma
    stack: List[List[str]] = []
    in_str = False
    esc = False
    str_is_key = False
    unicode_left = 0
    scalar_start = -1

    def value_done() -> None:
        if stack:
            stack[-1][1] = "comma"

    for i, ch in enumerate(text):
        if in_str:
            if unicode_left:
                unicode_left -= 1
            elif esc:
                esc = False
                if ch == "u":
                    unicode_left = 4
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
                if str_is_key:
                    stack[-1][1] = "colon"
                else:
                    value_done()
            continue

        if scalar_start != -1 and (ch.isspace() or ch in ',:{}[]"'):
            scalar_start = -1
            value_done()

        if ch.isspace():
            continue
        if ch in "{[":
            value_done()
            stack.append([ch, "key" if ch == "{" else "value"])
        elif ch in "}]":
            if stack:
                stack.pop()
            if not stack:
                # the object was complete; anything after it is not part of the call
                return text[: i + 1]
        elif ch == ":":
            stack[-1][1] = "value"
        elif ch == ",":
            stack[-1][1] = "key" if stack[-1][0] == "{" else "value"
        elif ch == '"':
            in_str = True
            str_is_key = stack[-1][0] == "{" and stack[-1][1] == "key"
        elif scalar_start == -1:
            scalar_start = i

    out = text
    if in_str:
        if unicode_left:
            out = out[: len(out) - (2 + 4 - unicode_left)]
        elif esc:
            out = out[:-1]
        out += '"'
        if str_is_key:
            stack[-1][1] = "colon"
        else:
            value_done()
    elif scalar_start != -1:
        try:
            json.loads(out[scalar_start:])
            value_done()
        except ValueError:
            out = out[:scalar_start]

    out = out.rstrip()
    top = stack[-1]
    if out.endswith(","):
        out = out[:-1]
    elif top[1] == "colon":
        out += ": null"
    elif top[1] == "value" and top[0] == "{":
        out += "null"

    for bracket, _ in reversed(stack):
        out += _CLOSERS[bracket]
    return out
