# context.py
# Conversation-history truncation policy and token-budget estimation.
#
# History is never physically shortened. A truncation range [2, end] marks
# messages elided from the model-facing view; indices 0 and 1 anchor the
# first user/assistant pairing and are always sent. Post-hoc text edits
# (e.g. the truncation notice) live in a sparse edit log and are overlaid on
# copies at render time, so stored messages are never mutated.

import math
from typing import Literal

import structlog

from taskpilot.models import (
    ContextEdit,
    ContextMetadata,
    ContextWindowInfo,
    ImageBlock,
    Message,
    ModelInfo,
    TextBlock,
)

logger = structlog.get_logger(__name__)

KeepPolicy = Literal["none", "last_two", "half", "quarter"]

RANGE_START = 2
RESERVE_RATIO = 0.8
CHARS_PER_TOKEN = 4
IMAGE_TOKENS = 1000

TRUNCATION_NOTICE = (
    "[NOTE] Some previous conversation history has been removed to manage "
    "context length."
)


class ContextManager:
    """
    Decides when and how far to compact the conversation view.

    Example:
        manager = ContextManager()
        meta = manager.metadata(history, model_info, state.deleted_range)
        if meta.should_compact:
            state.deleted_range = manager.next_truncation_range(
                history, state.deleted_range, "half"
            )
            manager.apply_notice(time.time())
    """

    def __init__(self) -> None:
        # message index -> block index -> edits in arrival order
        self._edits: dict[int, dict[int, list[ContextEdit]]] = {}

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def window_info(self, model: ModelInfo) -> ContextWindowInfo:
        """Reserve a fixed 20% of the window for the response and safety buffer."""
        return ContextWindowInfo(
            context_window=model.context_window,
            max_allowed=math.floor(model.context_window * RESERVE_RATIO),
        )

    def estimate_tokens(self, messages: list[Message]) -> int:
        """Rough approximation: one token per four characters, flat cost per image."""
        total = 0
        for message in messages:
            for block in message.content:
                if isinstance(block, TextBlock):
                    total += math.ceil(len(block.text) / CHARS_PER_TOKEN)
                elif isinstance(block, ImageBlock):
                    total += IMAGE_TOKENS
        return total

    def should_compact(self, estimated_tokens: int, max_allowed: int) -> bool:
        return estimated_tokens >= max_allowed

    # ------------------------------------------------------------------
    # Truncation
    # ------------------------------------------------------------------

    def next_truncation_range(
        self,
        messages: list[Message],
        current_range: tuple[int, int] | None,
        keep: KeepPolicy,
    ) -> tuple[int, int]:
        """
        Compute the next deleted range, subsuming `current_range`.

        `keep` controls how much of the history after the current deletion
        survives. The end index is pulled back by one when it would not land
        on an assistant message, so a user/assistant pair is never split.
        """
        start_of_rest = current_range[1] + 1 if current_range else RANGE_START
        remaining = len(messages) - start_of_rest

        if keep == "none":
            to_remove = remaining
        elif keep == "last_two":
            to_remove = remaining - 2
        elif keep == "half":
            to_remove = remaining // 4 * 2
        elif keep == "quarter":
            to_remove = (remaining * 3) // 8 * 2
        else:
            raise ValueError(f"Unknown keep policy: {keep!r}")
        to_remove = max(to_remove, 0)

        end = start_of_rest + to_remove - 1
        if end >= len(messages) or messages[end].role != "assistant":
            end -= 1

        # (2, 1) is an empty range
        end = max(end, RANGE_START - 1)
        if current_range is not None:
            end = max(end, current_range[1])
        return (RANGE_START, end)

    def truncated_view(
        self, messages: list[Message], deleted_range: tuple[int, int] | None
    ) -> list[Message]:
        """Indices 0 and 1 followed by everything after the deleted range."""
        if len(messages) <= 1 or deleted_range is None:
            return list(messages)
        return messages[:2] + messages[deleted_range[1] + 1 :]

    # ------------------------------------------------------------------
    # Edit log
    # ------------------------------------------------------------------

    def apply_notice(self, timestamp: float) -> None:
        """Overlay the truncation notice onto the first assistant message. Idempotent."""
        if 1 in self._edits:
            return
        self._edits[1] = {
            0: [ContextEdit(timestamp=timestamp, text=TRUNCATION_NOTICE, update_type="prepend")]
        }
        logger.debug("truncation_notice_recorded", timestamp=timestamp)

    def clear_edits(self) -> None:
        self._edits.clear()

    def _overlay(
        self, messages: list[Message], deleted_range: tuple[int, int] | None
    ) -> list[Message]:
        view = self.truncated_view(messages, deleted_range)
        if not self._edits:
            return view

        if len(messages) <= 1 or deleted_range is None:
            indices = list(range(len(view)))
        else:
            indices = [0, 1] + list(range(deleted_range[1] + 1, len(messages)))

        rendered: list[Message] = []
        for position, message in zip(indices, view):
            edits = self._edits.get(position)
            if not edits:
                rendered.append(message)
                continue

            copy = message.model_copy(deep=True)
            for block_index, changes in edits.items():
                if block_index >= len(copy.content):
                    continue
                block = copy.content[block_index]
                if not isinstance(block, TextBlock):
                    continue
                latest = max(changes, key=lambda edit: edit.timestamp)
                if latest.update_type == "prepend":
                    block.text = f"{latest.text}\n\n{block.text}"
                else:
                    block.text = latest.text
            rendered.append(copy)
        return rendered

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def metadata(
        self,
        messages: list[Message],
        model: ModelInfo,
        deleted_range: tuple[int, int] | None,
    ) -> ContextMetadata:
        """Everything one loop iteration needs to decide on compaction."""
        info = self.window_info(model)
        view = self._overlay(messages, deleted_range)
        estimated = self.estimate_tokens(view)
        return ContextMetadata(
            view=view,
            estimated_tokens=estimated,
            window_info=info,
            should_compact=self.should_compact(estimated, info.max_allowed),
        )
