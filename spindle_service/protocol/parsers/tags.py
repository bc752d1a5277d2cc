from typing import List, Tuple

from spindle_service.core.interfaces import StreamParser
from spindle_service.core.logging import logger

Segment = Tuple[str, str]


class TagScanner(StreamParser):
    """
    Incremental delimiter scanner for one stream.
    - "outside": emits prose as soon as it is safe, holding back only a
      suffix that could be the beginning of the start tag
    - "inside": accumulates the payload until the end tag; each search
      resumes where the previous one stopped
    Segments are ("text", prose), ("span", payload) and ("overflow", payload)
    when a payload exceeds max_tool_chars without an end tag.
    """

    def __init__(
        self,
        start_tag: str = "<tool_call>",
        end_tag: str = "</tool_call>",
        max_tool_chars: int = 262144,
    ):
        if not start_tag or not end_tag:
            raise ValueError("start_tag and end_tag must be non-empty")
        self.start_tag = start_tag
        self.end_tag = end_tag
        self.max_tool_chars = max_tool_chars
        self.mode = "outside"  # "outside" | "inside"
        self.buf = ""
        self._search_from = 0

    def _partial_start_len(self) -> int:
        """Length of the longest buffer suffix that is a proper prefix of the start tag."""
        longest = min(len(self.buf), len(self.start_tag) - 1)
        for k in range(longest, 0, -1):
            if self.buf.endswith(self.start_tag[:k]):
                return k
        return 0

    def _reset(self) -> None:
        self.buf = ""
        self.mode = "outside"
        self._search_from = 0

    def feed(self, text: str) -> List[Segment]:
        segments: List[Segment] = []
        if not text:
            return segments

        self.buf += text

        while True:
            if self.mode == "inside":
                idx = self.buf.find(self.end_tag, self._search_from)
                if idx == -1:
                    if len(self.buf) > self.max_tool_chars:
                        logger.error(f"Scanner: tool payload exceeded {self.max_tool_chars} chars without end tag")
                        segments.append(("overflow", self.buf))
                        self._reset()
                        break
                    # the end tag may straddle the next chunk
                    self._search_from = max(0, len(self.buf) - len(self.end_tag) + 1)
                    break

                payload = self.buf[:idx]
                self.buf = self.buf[idx + len(self.end_tag) :]
                self.mode = "outside"
                self._search_from = 0
                logger.debug(f"Scanner: span complete, length={len(payload)}")
                segments.append(("span", payload))
                continue

            # --- Outside mode ---
            idx = self.buf.find(self.start_tag)
            if idx != -1:
                if idx > 0:
                    segments.append(("text", self.buf[:idx]))
                self.buf = self.buf[idx + len(self.start_tag) :]
                self.mode = "inside"
                self._search_from = 0
                logger.debug("Scanner: start tag detected, entering inside mode")
                continue

            keep = self._partial_start_len()
            emit = self.buf[: len(self.buf) - keep]
            if emit:
                segments.append(("text", emit))
            self.buf = self.buf[len(self.buf) - keep :]
            break

        return segments

    def flush(self) -> str:
        if self.mode == "inside":
            logger.warning(f"Scanner: flushing unterminated tool call as text: {self.buf[:50]!r}")
            pending = self.start_tag + self.buf
        else:
            pending = self.buf
        self._reset()
        return pending

    def finalize(self) -> List[Segment]:
        """
        Flush residual state at end of stream. An open span is returned as
        ("unterminated", partial_payload) for salvage.
        """
        segments: List[Segment] = []
        if self.mode == "inside":
            logger.warning(f"Scanner finalize: unterminated tool call, length={len(self.buf)}")
            segments.append(("unterminated", self.buf))
        elif self.buf:
            segments.append(("text", self.buf))
        self._reset()
        return segments
