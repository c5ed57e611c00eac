"""
Chunker

Splits document text into overlapping token windows.

Windows are `window` tokens long and consecutive windows share `overlap`
tokens. A window end is pulled back to a paragraph boundary when one exists
in its second half, and a tail shorter than `min_chunk` tokens is folded into
the previous chunk instead of standing alone.
"""

from dataclasses import dataclass
from typing import List

from ..common.text import TokenSpan, token_spans


@dataclass
class TextWindow:
    """A chunk-to-be: character span plus token span"""
    position: int
    text: str
    start_char: int
    end_char: int
    start_token: int
    end_token: int

    @property
    def token_count(self) -> int:
        return self.end_token - self.start_token


class Chunker:
    """
    Overlapping window chunker over whitespace tokens.

    Example (window=500, overlap=50): a 1200-token text without paragraph
    breaks yields tokens [0, 500), [450, 950) and [900, 1200).
    """

    def __init__(self, window: int = 500, overlap: int = 50, min_chunk: int = 50):
        if window <= 0:
            raise ValueError("window must be positive")
        if not 0 <= overlap < window:
            raise ValueError("overlap must be in [0, window)")
        self.window = window
        self.overlap = overlap
        self.min_chunk = min_chunk

    def _snap_end(self, spans: List[TokenSpan], start: int, end: int) -> int:
        """Move `end` back to the last paragraph start in the window's second half."""
        if end >= len(spans):
            return end
        floor = start + self.window // 2
        for i in range(end, floor, -1):
            if spans[i].starts_paragraph:
                return i
        return end

    def split(self, text: str) -> List[TextWindow]:
        spans = token_spans(text)
        if not spans:
            return []

        bounds: List[List[int]] = []
        start = 0
        total = len(spans)
        while start < total:
            end = self._snap_end(spans, start, min(start + self.window, total))
            bounds.append([start, end])
            if end >= total:
                break
            start = max(end - self.overlap, start + 1)

        if len(bounds) > 1:
            last_start, last_end = bounds[-1]
            # Only the tokens past the previous window count as "new"
            if last_end - bounds[-2][1] < self.min_chunk:
                bounds.pop()
                bounds[-1][1] = last_end

        windows: List[TextWindow] = []
        for position, (s, e) in enumerate(bounds):
            start_char = spans[s].start
            end_char = spans[e - 1].end
            windows.append(TextWindow(
                position=position,
                text=text[start_char:end_char],
                start_char=start_char,
                end_char=end_char,
                start_token=s,
                end_token=e,
            ))
        return windows
