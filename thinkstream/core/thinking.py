"""Thinking block extraction for streamed model output."""
import re
from typing import Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel

from thinkstream.models.internal import ThinkingState
from thinkstream.utils.logging import get_logger

logger = get_logger(__name__)

THINKING_TAGS = ("think", "thinking", "reasoning", "analysis", "reflection")

_OPEN_TAG = re.compile(
    r"<(%s)>" % "|".join(THINKING_TAGS),
    re.IGNORECASE,
)
_CLOSE_TAGS = {
    tag: re.compile(r"</%s>" % tag, re.IGNORECASE)
    for tag in THINKING_TAGS
}
_EXCESS_NEWLINES = re.compile(r"\n\s*\n\s*\n")
# Every proper prefix of an opening tag, "<" included.
_OPEN_TAG_PREFIXES = frozenset(
    f"<{tag}>"[:length]
    for tag in THINKING_TAGS
    for length in range(1, len(tag) + 2)
)


class ThinkingBlock(BaseModel):
    """A thinking span found in a response."""
    type: str
    open_index: int
    close_index: Optional[int] = None
    content: str

    @property
    def is_complete(self) -> bool:
        return self.close_index is not None


class ProcessedResponse(NamedTuple):
    filtered_response: str
    thinking_state: ThinkingState


def _scan(text: str) -> Tuple[List[str], List[ThinkingBlock]]:
    """Split text into visible segments and thinking blocks.

    Blocks are matched left to right without overlap; a block closes only
    on the closing tag of its own name. An unterminated block runs to the
    end of the text.
    """
    segments: List[str] = []
    blocks: List[ThinkingBlock] = []
    cursor = 0

    while True:
        opening = _OPEN_TAG.search(text, cursor)
        if opening is None:
            segments.append(text[cursor:])
            break

        segments.append(text[cursor:opening.start()])
        tag = opening.group(1).lower()
        closing = _CLOSE_TAGS[tag].search(text, opening.end())

        if closing is None:
            blocks.append(ThinkingBlock(
                type=tag,
                open_index=opening.start(),
                content=text[opening.end():],
            ))
            break

        blocks.append(ThinkingBlock(
            type=tag,
            open_index=opening.start(),
            close_index=closing.start(),
            content=text[opening.end():closing.start()],
        ))
        cursor = closing.end()

    return segments, blocks


def _join_at_seam(left: str, right: str) -> str:
    """Join the text on either side of a removed block.

    Spaces and tabs at the seam are dropped. Two pieces of text on the same
    line are kept apart by exactly one space.
    """
    left = left.rstrip(" \t")
    right = right.lstrip(" \t")
    if left and right and not left.endswith("\n") and not right.startswith("\n"):
        return f"{left} {right}"
    return left + right


def _cleanup_whitespace(text: str) -> str:
    """Collapse runs of three or more newlines to two and trim the ends."""
    return _EXCESS_NEWLINES.sub("\n\n", text).strip()


class ThinkingContentProcessor:
    """Separate thinking blocks from the visible part of a response.

    Every call rescans the whole accumulated response, so feeding the same
    buffer twice gives the same answer no matter how it was chunked.
    """

    def __init__(self):
        """Initialize the processor."""
        self._disposed = False
        self._last_scan: Optional[Tuple[str, str, List[ThinkingBlock]]] = None

    def process_streaming_response(
        self,
        full_response: str,
        current_state: ThinkingState,
    ) -> ProcessedResponse:
        """Filter thinking blocks out of the accumulated response.

        Returns the visible text and a thinking state carrying the content of
        the last block found. Text without markers is returned untouched
        along with ``current_state``.
        """
        if self._disposed or not full_response:
            return ProcessedResponse(full_response, current_state)

        try:
            filtered, blocks = self._filter(full_response)
            if not blocks:
                return ProcessedResponse(full_response, current_state)

            last = blocks[-1]
            content = last.content.strip()
            inside = not last.is_complete
            active = inside or bool(content)

            updated = current_state.model_copy(update={
                "current_thinking_content": content,
                "has_active_thinking_bubble": active,
                "is_inside_thinking_block": inside,
            })

            logger.debug(
                "thinking_content_processed",
                blocks=len(blocks),
                has_active=active,
                is_inside=inside,
                content_length=len(content),
            )
            return ProcessedResponse(filtered, updated)
        except Exception as e:
            logger.error("thinking_processing_failed", error=str(e))
            return ProcessedResponse(full_response, current_state)

    def update_thinking_phase(
        self,
        current_state: ThinkingState,
        display_response: str,
    ) -> ThinkingState:
        """Leave the thinking phase once visible text appears outside a block."""
        if (
            current_state.is_thinking_phase
            and display_response
            and not current_state.is_inside_thinking_block
        ):
            logger.debug("thinking_phase_finished")
            return current_state.model_copy(update={"is_thinking_phase": False})
        return current_state

    def initialize_thinking_state(self) -> ThinkingState:
        """State for a new generation: assume the model starts by thinking."""
        return ThinkingState.initial().model_copy(update={"is_thinking_phase": True})

    def reset_thinking_state(self, current_state: ThinkingState) -> ThinkingState:
        """Clear content and flags; bubble expansion choices are kept."""
        return current_state.clear_current_thinking()

    def toggle_bubble_expansion(
        self,
        current_state: ThinkingState,
        message_id: str,
    ) -> ThinkingState:
        updated = current_state.toggle_bubble_expansion(message_id)
        logger.debug(
            "thinking_bubble_toggled",
            message_id=message_id,
            expanded=updated.is_bubble_expanded(message_id),
        )
        return updated

    def is_bubble_expanded(self, current_state: ThinkingState, message_id: str) -> bool:
        return current_state.is_bubble_expanded(message_id)

    def validate_thinking_state(self, state: ThinkingState) -> bool:
        return state.is_valid

    def get_thinking_stats(self, state: ThinkingState) -> Dict[str, object]:
        """Summary of a thinking state for debugging."""
        return {
            "has_thinking_content": state.has_thinking_content,
            "has_active_thinking_bubble": state.has_active_thinking_bubble,
            "is_thinking_phase": state.is_thinking_phase,
            "is_inside_thinking_block": state.is_inside_thinking_block,
            "expanded_bubble_count": state.expanded_bubble_count,
            "has_expanded_bubbles": state.has_expanded_bubbles,
            "content_length": len(state.current_thinking_content),
            "is_valid": state.is_valid,
        }

    def extract_thinking_markers(self, text: str) -> List[ThinkingBlock]:
        """All thinking blocks in ``text``, in order of appearance."""
        if not text:
            return []
        _, blocks = _scan(text)
        return blocks

    def hold_back_partial_marker(self, text: str) -> str:
        """Drop a trailing fragment that may still grow into an opening tag.

        Used on live output so ``<thi`` is not shown while the rest of the
        tag is on its way. The fragment reappears with the next chunk if it
        turns out to be plain text.
        """
        start = text.rfind("<")
        if start != -1 and text[start:].lower() in _OPEN_TAG_PREFIXES:
            return text[:start]
        return text

    def contains_thinking_markers(self, text: str) -> bool:
        return bool(text) and _OPEN_TAG.search(text) is not None

    def get_supported_marker_types(self) -> List[str]:
        return list(THINKING_TAGS)

    def dispose(self) -> None:
        """Stop processing; later calls pass text through unchanged."""
        if self._disposed:
            return
        self._disposed = True
        self._last_scan = None
        logger.info("thinking_processor_disposed")

    def _filter(self, text: str) -> Tuple[str, List[ThinkingBlock]]:
        # Chunks without text (e.g. the final "done" chunk) resubmit the same buffer.
        if self._last_scan is not None and self._last_scan[0] == text:
            return self._last_scan[1], self._last_scan[2]

        segments, blocks = _scan(text)
        filtered = segments[0]
        for segment in segments[1:]:
            filtered = _join_at_seam(filtered, segment)
        filtered = _cleanup_whitespace(filtered)

        self._last_scan = (text, filtered, blocks)
        return filtered, blocks
