from taskpilot.models import TextBlock, ToolUseBlock
from taskpilot.parser import finalize, parse

MESSAGE = (
    "I'll read the file.\n"
    "<tool_use>\n<name>read_file</name>\n<input>{\"path\": \"a.txt\"}</input>\n</tool_use>\n"
    "Then I will summa"
)


# ---------------------------------------------------------------------------
# Block splitting
# ---------------------------------------------------------------------------


def test_parse_text_tool_and_trailing_partial_text():
    blocks = parse(MESSAGE)

    assert blocks == [
        TextBlock(text="I'll read the file."),
        ToolUseBlock(name="read_file", input={"path": "a.txt"}),
        TextBlock(text="Then I will summa", partial=True),
    ]


def test_parse_empty_buffer():
    assert parse("") == []
    assert parse("   \n") == []


def test_unclosed_tool_tag_stays_partial_text():
    blocks = parse('Reading.\n<tool_use>\n<name>read_file</name>\n<input>{"path": ')

    assert len(blocks) == 1
    assert isinstance(blocks[0], TextBlock)
    assert blocks[0].partial is True


def test_consecutive_tools_keep_their_order():
    buffer = (
        '<tool_use><name>read_file</name><input>{"path": "a"}</input></tool_use>'
        '<tool_use><name>read_file</name><input>{"path": "b"}</input></tool_use>'
    )

    blocks = parse(buffer)

    assert [b.input["path"] for b in blocks] == ["a", "b"]
    assert all(not b.partial for b in blocks)


def test_same_result_regardless_of_chunking():
    whole = parse(MESSAGE)

    for size in (1, 3, 7, 50):
        buffer = ""
        for start in range(0, len(MESSAGE), size):
            buffer += MESSAGE[start : start + size]
            blocks = parse(buffer)
        assert blocks == whole


def test_complete_blocks_are_stable_across_prefixes():
    previous = []
    for end in range(1, len(MESSAGE) + 1):
        blocks = parse(MESSAGE[:end])
        complete = [b for b in previous if not b.partial]
        assert blocks[: len(complete)] == complete
        previous = blocks


# ---------------------------------------------------------------------------
# Tool payloads
# ---------------------------------------------------------------------------


def test_malformed_payload_becomes_text():
    buffer = "<tool_use><name>read_file</name><input>{broken: json}</input></tool_use>"

    blocks = parse(buffer)

    assert blocks == [TextBlock(text=buffer)]


def test_non_object_payload_becomes_text():
    blocks = parse("<tool_use><name>read_file</name><input>[1, 2]</input></tool_use>")

    assert len(blocks) == 1
    assert isinstance(blocks[0], TextBlock)


def test_fenced_json_payload():
    buffer = (
        "<tool_use><name>write_to_file</name><input>```json\n"
        '{"path": "x.txt", "content": "hi"}\n```</input></tool_use>'
    )

    assert parse(buffer) == [ToolUseBlock(name="write_to_file", input={"path": "x.txt", "content": "hi"})]


def test_empty_payload_is_empty_input():
    assert parse("<tool_use><name>list_files</name><input></input></tool_use>") == [
        ToolUseBlock(name="list_files", input={})
    ]


def test_payload_with_raw_newlines_in_strings():
    buffer = '<tool_use><name>write_to_file</name><input>{"path": "x", "content": "a\nb"}</input></tool_use>'

    assert parse(buffer)[0].input["content"] == "a\nb"


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


def test_finalize_marks_trailing_block_complete():
    blocks = finalize(parse(MESSAGE))

    assert blocks[-1] == TextBlock(text="Then I will summa")
    assert not any(b.partial for b in blocks)


def test_finalize_leaves_complete_blocks_untouched():
    blocks = parse('<tool_use><name>list_files</name><input>{}</input></tool_use>')

    assert finalize(blocks) == blocks
    assert finalize([]) == []
