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

"""Text normalization in two strengths.

Storage mode applies Unicode NFC composition and folds CRLF/CR line endings to
LF. Its output is the canonical text that every absolute offset refers to.

Matching mode additionally folds typographic quote, dash and ellipsis variants
and collapses whitespace runs. It is only used to locate a quote; positions
found in matching-mode text are mapped back through `MatchingText`.
"""

from __future__ import annotations

import dataclasses
import unicodedata

from absl import logging

_GLYPH_FOLDS = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201A": "'",
    "\u201B": "'",
    "\u2032": "'",
    "`": "'",
    "\u00B4": "'",
    "\u201C": '"',
    "\u201D": '"',
    "\u201E": '"',
    "\u201F": '"',
    "\u2033": '"',
    "\u2013": "-",
    "\u2014": "-",
    "\u2015": "-",
    "\u2212": "-",
    "\u2026": "...",
}


def normalize_for_storage(text: str) -> str:
  """Applies NFC composition and line-ending folding; never trims."""
  if not isinstance(text, str):
    logging.warning(
        "normalize_for_storage got %s; returning unchanged", type(text)
    )
    return text
  text = unicodedata.normalize("NFC", text)
  return text.replace("\r\n", "\n").replace("\r", "\n")


def fold_glyphs(text: str) -> str:
  """Replaces quote, dash and ellipsis variants with their ASCII forms."""
  if not isinstance(text, str):
    return text
  return "".join(_GLYPH_FOLDS.get(ch, ch) for ch in text)


def normalize_for_matching(text: str) -> str:
  """Storage normalization plus glyph folding and whitespace collapsing."""
  if not isinstance(text, str):
    return text
  return build_matching_text(normalize_for_storage(text)).text


@dataclasses.dataclass(frozen=True)
class MatchingText:
  """Matching-mode text with a map back to the text it was built from.

  Attributes:
    text: The matching-mode text.
    starts: For each character of `text`, the source offset it came from.
    ends: For each character of `text`, the source offset just past the source
      character it came from.
  """

  text: str
  starts: tuple[int, ...]
  ends: tuple[int, ...]

  def to_source(self, start: int, end: int) -> tuple[int, int]:
    """Maps a non-empty half-open range of `text` back to the source."""
    if not 0 <= start < end <= len(self.text):
      raise ValueError(
          f"Invalid matching range [{start}, {end}) for length"
          f" {len(self.text)}."
      )
    return self.starts[start], self.ends[end - 1]


def build_matching_text(source: str) -> MatchingText:
  """Builds matching-mode text from already storage-normalized `source`.

  Whitespace runs become a single space and leading/trailing whitespace is
  dropped. The source is not NFC-normalized again, so every matching character
  maps onto exactly one source character.
  """
  chars: list[str] = []
  starts: list[int] = []
  ends: list[int] = []
  pending_space_at = -1

  for pos, ch in enumerate(source):
    if ch.isspace():
      if chars and pending_space_at < 0:
        pending_space_at = pos
      continue
    if pending_space_at >= 0:
      chars.append(" ")
      starts.append(pending_space_at)
      ends.append(pending_space_at + 1)
      pending_space_at = -1
    for folded in _GLYPH_FOLDS.get(ch, ch):
      chars.append(folded)
      starts.append(pos)
      ends.append(pos + 1)

  return MatchingText(
      text="".join(chars), starts=tuple(starts), ends=tuple(ends)
  )
