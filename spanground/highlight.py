# Copyright 2025 Google LLC.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Turns evidence spans into a flat segment list for rendering.

Segments alternate between plain and highlighted text, never overlap, and
concatenate back to the exact source text. The highlighter only looks at span
offsets, so it does not care which resolver strategy produced them.
"""

from __future__ import annotations

from collections.abc import Sequence
import dataclasses
import html

from spanground import data

DEFAULT_RANGE_KIND = "quote"
DEFAULT_HIGHLIGHT_CLASS = "quote-highlight"


@dataclasses.dataclass(frozen=True)
class HighlightRange:
  start: int
  end: int
  id: str
  kind: str = DEFAULT_RANGE_KIND


def to_ranges(
    spans: Sequence[data.ResolvedSpan | data.Quote],
    kind: str = DEFAULT_RANGE_KIND,
) -> list[HighlightRange]:
  """Gives each span a range id derived from its position in `spans`."""
  return [
      HighlightRange(start=span.start, end=span.end, id=f"q{i}", kind=kind)
      for i, span in enumerate(spans)
  ]


def clamp_ranges(
    text: str, ranges: Sequence[HighlightRange]
) -> list[HighlightRange]:
  """Clamps ranges to the text, sorts them and clips overlaps.

  A range that starts inside an earlier one is shortened to start where the
  earlier one ends; ranges left empty are dropped.
  """
  length = len(text)
  clamped = []
  for r in ranges:
    start = max(0, min(r.start, length))
    end = max(0, min(r.end, length))
    if start < end:
      clamped.append(dataclasses.replace(r, start=start, end=end))
  clamped.sort(key=lambda r: (r.start, r.end))

  out: list[HighlightRange] = []
  last_end = 0
  for r in clamped:
    start = max(r.start, last_end)
    if start >= r.end:
      continue
    out.append(dataclasses.replace(r, start=start))
    last_end = r.end
  return out


def to_segments(
    text: str,
    spans: Sequence[data.ResolvedSpan | data.Quote | HighlightRange],
) -> list[data.TextSegment]:
  """Builds plain and highlighted segments covering `text`.

  Args:
    text: The source text the spans point into.
    spans: Resolved spans, quotes or pre-built highlight ranges.

  Returns:
    Non-empty segments in order; their texts concatenate to `text`.
  """
  if spans and not isinstance(spans[0], HighlightRange):
    ranges = to_ranges(spans)
  else:
    ranges = list(spans)

  segments = []
  last_end = 0
  for r in clamp_ranges(text, ranges):
    if r.start > last_end:
      segments.append(data.TextSegment(text[last_end : r.start], False))
    segments.append(
        data.TextSegment(
            text[r.start : r.end], True, range_id=r.id, range_kind=r.kind
        )
    )
    last_end = r.end
  if last_end < len(text):
    segments.append(data.TextSegment(text[last_end:], False))
  return segments


def segments_to_html(
    segments: Sequence[data.TextSegment],
    class_name: str = DEFAULT_HIGHLIGHT_CLASS,
) -> str:
  """Renders segments as escaped HTML with highlighted `<span>` elements."""
  parts = []
  for segment in segments:
    escaped = html.escape(segment.text)
    if segment.is_highlight:
      parts.append(
          f'<span class="{html.escape(class_name)}"'
          f' data-range-id="{html.escape(segment.range_id or "")}"'
          f' data-range-kind="{html.escape(segment.range_kind or "")}">'
          f"{escaped}</span>"
      )
    else:
      parts.append(escaped)
  return "".join(parts)
