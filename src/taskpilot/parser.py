# parser.py
# Streaming assistant-message parser.
#
# parse() is re-run on the whole accumulated buffer every time a chunk
# arrives, so it must be a pure function of the buffer: the same prefix
# always yields the same blocks.
#
# Tool invocations use this tag format:
#
#   <tool_use>
#   <name>read_file</name>
#   <input>{"path": "src/app.py"}</input>
#   </tool_use>

import json
import re

from taskpilot.models import TextBlock, ToolUseBlock

TOOL_USE_PATTERN = re.compile(
    r"<tool_use>\s*<name>(.*?)</name>\s*<input>(.*?)</input>\s*</tool_use>",
    re.DOTALL,
)


def _decode_input(raw: str) -> dict | None:
    """Decode a tool payload; None when it is not a JSON object."""
    raw = raw.strip()
    # Strip markdown code blocks if the LLM injected them
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)
    if not raw:
        return {}
    try:
        value = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse(buffer: str) -> list[TextBlock | ToolUseBlock]:
    """
    Split an assistant buffer into ordered text and tool-use blocks.

    Text before each tool tag becomes a complete text block. A tag whose
    payload is not a JSON object degrades to a text block holding the raw
    span. Whatever follows the last tag is a partial text block: the caller
    decides when the stream has ended.
    """
    blocks: list[TextBlock | ToolUseBlock] = []
    last_index = 0

    for match in TOOL_USE_PATTERN.finditer(buffer):
        before = buffer[last_index : match.start()].strip()
        if before:
            blocks.append(TextBlock(text=before))

        payload = _decode_input(match.group(2))
        if payload is None:
            blocks.append(TextBlock(text=match.group(0)))
        else:
            blocks.append(ToolUseBlock(name=match.group(1).strip(), input=payload))

        last_index = match.end()

    trailing = buffer[last_index:].strip()
    if trailing:
        blocks.append(TextBlock(text=trailing, partial=True))

    return blocks


def finalize(blocks: list[TextBlock | ToolUseBlock]) -> list[TextBlock | ToolUseBlock]:
    """Mark the trailing block complete once the stream has ended."""
    if blocks and blocks[-1].partial:
        return blocks[:-1] + [blocks[-1].model_copy(update={"partial": False})]
    return blocks
