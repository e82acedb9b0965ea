import json

import pytest

from hearth.tool_calls import (
    RESPONSE_TOOL,
    clean_dirty_json,
    format_tool_result,
    parse_tool_calls,
    truncate_text,
)
from hearth.tools.registry import ToolResult


def test_tagged_block_round_trips_name_arguments_and_thoughts():
    text = (
        "Let me look first.\n"
        "<tool_call>\n"
        '{"tool_name": "file", "tool_args": {"action": "list", "path": "/tmp"}, '
        '"thoughts": ["Check the directory."]}\n'
        "</tool_call>"
    )
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].name == "file"
    assert calls[0].arguments == {"action": "list", "path": "/tmp"}
    assert calls[0].thoughts == ["Check the directory."]
    assert calls[0].implicit is False


def test_fenced_json_block_round_trips_second_dialect():
    text = (
        "Saving that.\n"
        "```json\n"
        '{"name": "core_memory_append", "arguments": {"label": "human", "content": "Likes tea"}}\n'
        "```"
    )
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].name == "core_memory_append"
    assert calls[0].arguments == {"label": "human", "content": "Likes tea"}


def test_balanced_scan_tolerates_unquoted_keys_and_trailing_commas():
    text = 'I will call {name: "file", arguments: {action: "read", path: "/etc/hosts",},} now.'
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].name == "file"
    assert calls[0].arguments == {"action": "read", "path": "/etc/hosts"}


def test_line_accumulation_closes_truncated_object():
    text = (
        "Working on it\n"
        '{"tool_name": "file",\n'
        ' "tool_args": {"action": "list", "path": "/var/log"},\n'
    )
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].name == "file"
    assert calls[0].arguments == {"action": "list", "path": "/var/log"}


def test_unclosed_tool_call_tag_still_parses():
    calls = parse_tool_calls('<tool_call>{"tool_name": "response", "tool_args": {"text": "done"}}')
    assert calls[0].name == RESPONSE_TOOL
    assert calls[0].arguments == {"text": "done"}


def test_tagged_strategy_wins_over_stray_json():
    text = (
        '{"name": "other", "arguments": {}}\n'
        '<tool_call>{"tool_name": "file", "tool_args": {"action": "exists", "path": "/tmp"}}</tool_call>'
    )
    calls = parse_tool_calls(text)
    assert [call.name for call in calls] == ["file"]


def test_non_string_argument_values_are_stringified():
    text = '<tool_call>{"tool_name": "file", "tool_args": {"action": "read", "path": "a.txt", "limit": 5, "append": true}}</tool_call>'
    calls = parse_tool_calls(text)
    assert calls[0].arguments["limit"] == "5"
    assert calls[0].arguments["append"] == "true"


def test_plain_text_becomes_implicit_response():
    calls = parse_tool_calls("The weather is nice today.")
    assert len(calls) == 1
    assert calls[0].name == RESPONSE_TOOL
    assert calls[0].arguments == {"text": "The weather is nice today."}
    assert calls[0].implicit is True


def test_think_block_is_split_into_thoughts():
    calls = parse_tool_calls("<think>plan it</think>Hello there")
    assert calls[0].name == RESPONSE_TOOL
    assert calls[0].arguments["text"] == "Hello there"
    assert calls[0].thoughts == ["plan it"]


def test_json_reply_without_tool_name_uses_its_text():
    calls = parse_tool_calls('{"text": "All done."}')
    assert calls[0].name == RESPONSE_TOOL
    assert calls[0].arguments["text"] == "All done."


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "{",
        "}}}{{{",
        "<tool_call>garbage</tool_call>",
        "```\n```",
        '{"tool_name": 42}',
        "<think>",
        "\x00\x01binary",
        "[1, 2, 3]",
    ],
)
def test_parser_never_returns_empty(text):
    calls = parse_tool_calls(text)
    assert len(calls) >= 1
    assert all(call.name for call in calls)


def test_clean_dirty_json_repairs_python_literals():
    assert clean_dirty_json("{'ok': True, 'value': None}") == '{"ok": true, "value": null}'


def test_lenient_repair_leaves_string_values_untouched():
    calls = parse_tool_calls('{name: "response", arguments: {text: "None of the files are True copies",}}')
    assert calls[0].name == "response"
    assert calls[0].implicit is False
    assert calls[0].arguments == {"text": "None of the files are True copies"}


def test_lenient_repair_keeps_key_like_text_inside_strings():
    text = '{tool_name: "file", tool_args: {action: "write", path: "notes.txt", content: "Note, items: 3"},}'
    calls = parse_tool_calls(text)
    assert len(calls) == 1
    assert calls[0].name == "file"
    assert calls[0].arguments == {"action": "write", "path": "notes.txt", "content": "Note, items: 3"}


def test_clean_dirty_json_requotes_single_quotes_and_drops_comments():
    text = "{'note': 'it\\'s \"fine\"', // remark\n 'url': 'http://x/y',}"
    cleaned = clean_dirty_json(text)
    assert cleaned == '{"note": "it\'s \\"fine\\"", \n "url": "http://x/y"}'
    assert json.loads(cleaned) == {"note": 'it\'s "fine"', "url": "http://x/y"}


def test_format_tool_result_success_and_failure():
    ok = format_tool_result("file", ToolResult(success=True, output="a.txt"))
    failed = format_tool_result("file", ToolResult.failure("boom", code="timeout"))
    assert ok == "[Tool 'file' completed successfully]\na.txt"
    assert failed == "[Tool 'file' failed: timeout]\nboom"


def test_truncate_text_marks_omitted_chars():
    assert truncate_text("abcdef", 4) == "abcd\n... [truncated 2 chars]"
    assert truncate_text("abc", 4) == "abc"
