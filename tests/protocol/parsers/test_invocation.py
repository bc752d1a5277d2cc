import json

from spindle_service.core.types import ErrorKind, Invocation, InvocationError
from spindle_service.protocol.parsers.invocation import parse_invocation, salvage_payload, shorten


class TestParseInvocation:

    def test_valid_payload(self):
        inv = parse_invocation('{"cb_tool_name": "read_files", "paths": ["a.py"]}')
        assert isinstance(inv, Invocation)
        assert inv.tool_name == "read_files"
        assert inv.input == {"paths": ["a.py"]}
        assert inv.tool_call_id
        assert not inv.autocompleted
        assert not inv.ends_agent_step

    def test_reserved_keys_are_stripped(self):
        inv = parse_invocation('{"cb_tool_name": "end_turn", "cb_easp": true, "note": "x"}')
        assert inv.input == {"note": "x"}
        assert inv.ends_agent_step is True

    def test_custom_tool_name_key(self):
        inv = parse_invocation('{"tool": "x", "a": 1}', tool_name_key="tool")
        assert inv.tool_name == "x"
        assert inv.input == {"a": 1}

    def test_malformed_json(self):
        err = parse_invocation("{bad")
        assert isinstance(err, InvocationError)
        assert err.kind == ErrorKind.PARSE_ERROR
        assert err.message.startswith('Invalid JSON: "{bad"\nError: ')
        assert err.raw_payload == "{bad"

    def test_long_payload_is_shortened_in_message(self):
        payload = "{" + "a" * 300
        err = parse_invocation(payload)
        preview = payload[:100] + "..." + payload[-100:]
        assert f"Invalid JSON: {json.dumps(preview)}" in err.message

    def test_non_object_is_a_parse_error(self):
        err = parse_invocation("[1, 2]")
        assert err.kind == ErrorKind.PARSE_ERROR
        assert "expected a JSON object" in err.message

    def test_missing_tool_name(self):
        err = parse_invocation('{"a":1}')
        assert err.kind == ErrorKind.UNKNOWN_TOOL
        assert err.message == 'Unknown tool null for tool call: {"a":1}'

    def test_non_string_tool_name(self):
        err = parse_invocation('{"cb_tool_name": 5}')
        assert err.kind == ErrorKind.UNKNOWN_TOOL
        assert err.message.startswith("Unknown tool 5 for tool call: ")
        assert err.tool_name == 5

    def test_autocompleted_call_ends_agent_step(self):
        inv = parse_invocation('{"cb_tool_name": "x"}', autocompleted=True)
        assert inv.autocompleted
        assert inv.ends_agent_step


class TestShorten:

    def test_short_contents_unchanged(self):
        s = "x" * 199
        assert shorten(s) == s

    def test_long_contents_keep_both_ends(self):
        s = "a" * 100 + "b" * 100 + "c" * 100
        out = shorten(s)
        assert out == "a" * 100 + "..." + "c" * 100


class TestSalvagePayload:

    def test_open_string_value(self):
        closed = salvage_payload('{"cb_tool_name":"write_file","path":"a.txt","content":"hel')
        assert json.loads(closed) == {"cb_tool_name": "write_file", "path": "a.txt", "content": "hel"}

    def test_open_array_with_complete_number(self):
        closed = salvage_payload('{"cb_tool_name":"x","items":[1,2')
        assert json.loads(closed) == {"cb_tool_name": "x", "items": [1, 2]}

    def test_incomplete_literal_becomes_null(self):
        closed = salvage_payload('{"cb_tool_name":"x","flag":tr')
        assert json.loads(closed) == {"cb_tool_name": "x", "flag": None}

    def test_incomplete_number_becomes_null(self):
        closed = salvage_payload('{"cb_tool_name":"x","n":-')
        assert json.loads(closed) == {"cb_tool_name": "x", "n": None}

    def test_dangling_key(self):
        closed = salvage_payload('{"cb_tool_name":"x","pa')
        assert json.loads(closed) == {"cb_tool_name": "x", "pa": None}

    def test_dangling_colon(self):
        closed = salvage_payload('{"cb_tool_name":"x","path": ')
        assert json.loads(closed) == {"cb_tool_name": "x", "path": None}

    def test_dangling_comma(self):
        closed = salvage_payload('{"cb_tool_name":"x",')
        assert json.loads(closed) == {"cb_tool_name": "x"}

    def test_trailing_backslash_is_dropped(self):
        closed = salvage_payload('{"cb_tool_name":"x","s":"a\\')
        assert json.loads(closed) == {"cb_tool_name": "x", "s": "a"}

    def test_partial_unicode_escape_is_dropped(self):
        closed = salvage_payload('{"cb_tool_name":"x","s":"ok\\u00')
        assert json.loads(closed) == {"cb_tool_name": "x", "s": "ok"}

    def test_nested_containers_closed_in_reverse(self):
        closed = salvage_payload('{"cb_tool_name":"x","a":{"b":[{"c":"d')
        assert closed.endswith('"}]}}')
        assert json.loads(closed) == {"cb_tool_name": "x", "a": {"b": [{"c": "d"}]}}

    def test_brackets_inside_strings_are_ignored(self):
        closed = salvage_payload('{"cb_tool_name":"x","s":"[{\\"')
        assert json.loads(closed) == {"cb_tool_name": "x", "s": '[{"'}

    def test_truncated_before_tool_name(self):
        closed = salvage_payload("{")
        assert closed == "{}"
        assert parse_invocation(closed).kind == ErrorKind.UNKNOWN_TOOL

    def test_complete_object_with_trailing_text(self):
        assert salvage_payload('{"cb_tool_name":"x"}\n  junk') == '{"cb_tool_name":"x"}'

    def test_not_an_object(self):
        assert salvage_payload("hello") is None
        assert salvage_payload("") is None
