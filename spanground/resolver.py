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

"""Resolves model selections to exact spans of the source text.

A selection is resolved with the first strategy that yields a valid,
non-empty span:

  1. sentence or sentence-range addressing,
  2. token or character addressing inside one sentence, snapped outward to
     word boundaries,
  3. substring search for the selection's literal text, starting at a cursor
     that only ever moves forward, then once over the whole text,
  4. the same search on matching-mode text (folded glyphs, collapsed
     whitespace),
  5. fuzzy word-overlap search.

Selections that no strategy can place are dropped and described in the
returned uncertainties. Every returned span satisfies
`0 <= start < end <= len(text)` (before `base_offset` is added) and its `text`
is exactly the slice of the source it covers.
"""

from __future__ import annotations

import bisect
from collections.abc import Sequence
import dataclasses
import math

from absl import logging
import regex

from spanground import data
from spanground import normalize

DEFAULT_FUZZY_THRESHOLD = 0.7

_WORD_CHAR_PATTERN = regex.compile(r"[A-Za-z0-9'’-]")
_FUZZY_STRIP_CHARS = "\"'.,;:!?()[]{}"


def _is_word_char(ch: str) -> bool:
  return bool(_WORD_CHAR_PATTERN.fullmatch(ch))


def snap_to_word_boundaries(text: str, start: int, end: int) -> tuple[int, int]:
  """Trims whitespace from `[start, end)` then widens it to whole words."""
  while start < end and text[start].isspace():
    start += 1
  while end > start and text[end - 1].isspace():
    end -= 1
  if start >= end:
    return start, end
  while start > 0 and _is_word_char(text[start - 1]):
    start -= 1
  while end < len(text) and _is_word_char(text[end]):
    end += 1
  return start, end


@dataclasses.dataclass
class ResolutionResult:
  """Spans resolved by one call, plus notes about selections that were not.

  Attributes:
    spans: Resolved spans in selection order.
    selections: The selection each span was resolved from, index-aligned
      with `spans`.
    uncertainties: One note per selection that could not be resolved.
  """

  spans: list[data.ResolvedSpan] = dataclasses.field(default_factory=list)
  selections: list[data.Selection] = dataclasses.field(default_factory=list)
  uncertainties: list[str] = dataclasses.field(default_factory=list)


class SpanResolver:
  """Maps selections onto one text and its segmentation.

  The resolver holds no state between calls to `resolve`; each call starts
  with a fresh search cursor and seen-set, so one instance can be shared by
  threads.
  """

  def __init__(
      self,
      text: str,
      sentences: Sequence[data.Sentence],
      tokens: Sequence[data.Token] = (),
      base_offset: int = 0,
      fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
  ):
    """Initializes the resolver.

    Args:
      text: Storage-normalized source text. All sentence and token offsets
        refer to it.
      sentences: The segmentation of `text`.
      tokens: The token table of `text`. Token addressing fails without it.
      base_offset: Added to every reported offset, used when `text` is one
        chunk of a longer document.
      fuzzy_threshold: Fraction of candidate words that must appear in a
        window for the fuzzy strategy to accept it.
    """
    self._text = text
    self._sentences = {s.sid: s for s in sentences}
    self._sentence_starts = [s.char_start for s in sentences]
    self._sentence_list = list(sentences)
    self._tokens_by_sid: dict[int, list[data.Token]] = {}
    for token in tokens:
      self._tokens_by_sid.setdefault(token.sid, []).append(token)
    self._base_offset = base_offset
    self._fuzzy_threshold = fuzzy_threshold
    self._matching: normalize.MatchingText | None = None

  @property
  def matching_text(self) -> normalize.MatchingText:
    if self._matching is None:
      self._matching = normalize.build_matching_text(self._text)
    return self._matching

  def resolve(self, selections: Sequence[data.Selection]) -> ResolutionResult:
    """Resolves selections in order.

    Args:
      selections: Selections as returned by the model, in response order.

    Returns:
      The resolved spans (at most one per selection, never the same
      `(start, end)` twice) and an uncertainty note per dropped selection.
    """
    result = ResolutionResult()
    cursor = 0
    seen: set[tuple[int, int]] = set()

    for selection in selections:
      located = self._locate(selection, cursor)
      if located is None:
        note = _describe_failure(selection)
        logging.warning("Dropping selection: %s", note)
        result.uncertainties.append(note)
        continue

      start, end, sids = located
      cursor = max(cursor, end)
      if (start, end) in seen:
        logging.debug("Skipping duplicate span [%d, %d)", start, end)
        continue
      seen.add((start, end))
      result.spans.append(
          data.ResolvedSpan(
              text=self._text[start:end],
              start=start + self._base_offset,
              end=end + self._base_offset,
              reason=selection.reason or None,
              sids=sids,
          )
      )
      result.selections.append(selection)

    logging.debug(
        "Resolved %d of %d selections",
        len(result.spans),
        len(selections),
    )
    return result

  def _locate(
      self, selection: data.Selection, cursor: int
  ) -> tuple[int, int, tuple[int, ...]] | None:
    mode = selection.addressing

    if mode is data.AddressingMode.SENTENCE_RANGE:
      span = self._sentence_range(*selection.sid_range)
      if span is not None:
        return span + (tuple(selection.referenced_sids()),)
    elif mode is data.AddressingMode.SENTENCE:
      span = self._sentence_range(selection.sid, selection.sid)
      if span is not None:
        return span + ((selection.sid,),)
    elif mode in (data.AddressingMode.TOKENS, data.AddressingMode.CHARS):
      span = self._partial(selection)
      if span is None and not selection.text:
        logging.debug(
            "Partial addressing invalid for sid %d; using whole sentence",
            selection.sid,
        )
        span = self._sentence_range(selection.sid, selection.sid)
      if span is not None:
        return span + ((selection.sid,),)

    if not selection.text:
      return None
    span = self.search(selection.text, cursor)
    if span is None:
      return None
    return span + (self._sids_overlapping(*span),)

  def _sentence_range(self, first: int, last: int) -> tuple[int, int] | None:
    if first > last:
      return None
    # Every sid in the range must exist, not just the endpoints.
    for sid in range(first, last + 1):
      if sid not in self._sentences:
        return None
    start = self._sentences[first].char_start
    end = self._sentences[last].char_end
    if not 0 <= start < end <= len(self._text):
      return None
    return start, end

  def _partial(self, selection: data.Selection) -> tuple[int, int] | None:
    sentence = self._sentences.get(selection.sid)
    if sentence is None:
      return None

    if selection.addressing is data.AddressingMode.TOKENS:
      tokens = self._tokens_by_sid.get(sentence.sid, [])
      if not 0 <= selection.t0 < selection.t1 <= len(tokens):
        return None
      start = tokens[selection.t0].char_start
      end = tokens[selection.t1 - 1].char_end
    else:
      if not 0 <= selection.char0 < selection.char1 <= len(sentence.text):
        return None
      start = sentence.char_start + selection.char0
      end = sentence.char_start + selection.char1

    start, end = snap_to_word_boundaries(self._text, start, end)
    if start >= end:
      return None
    return start, end

  def search(self, candidate: str, cursor: int = 0) -> tuple[int, int] | None:
    """Finds `candidate` in the text, preferring matches at or after `cursor`.

    Tries exact search, then matching-mode search, then fuzzy search.

    Returns:
      The local `(start, end)` of the match, or None.
    """
    needle = normalize.normalize_for_storage(candidate).strip()
    if not needle:
      return None

    idx = self._text.find(needle, cursor)
    if idx < 0:
      idx = self._text.find(needle)
    if idx >= 0:
      return idx, idx + len(needle)

    matching = self.matching_text
    folded = normalize.normalize_for_matching(candidate)
    if not folded or not matching.text:
      return None
    matching_cursor = bisect.bisect_left(matching.starts, cursor)

    idx = matching.text.find(folded, matching_cursor)
    if idx < 0:
      idx = matching.text.find(folded)
    if idx >= 0:
      logging.debug("Located %r using matching-mode text", candidate[:80])
      return matching.to_source(idx, idx + len(folded))

    fuzzy = self._fuzzy_search(folded, matching_cursor)
    if fuzzy is None and matching_cursor:
      fuzzy = self._fuzzy_search(folded, 0)
    if fuzzy is None:
      return None
    logging.debug("Located %r using fuzzy matching", candidate[:80])
    start, end = matching.to_source(*fuzzy)
    start, end = snap_to_word_boundaries(self._text, start, end)
    return (start, end) if start < end else None

  def _fuzzy_search(self, folded: str, from_pos: int) -> tuple[int, int] | None:
    """Slides a candidate-length window over matching-mode text.

    A window is accepted when at least ceil(threshold * word count) candidate
    words appear in it, where a word appears if it contains, or is contained
    in, one of the window's words. Windows start at word starts only.
    """
    haystack = self.matching_text.text
    words = _fuzzy_words(folded)
    if not words:
      return None
    min_matches = math.ceil(self._fuzzy_threshold * len(words))
    width = len(folded)

    for i in range(from_pos, len(haystack) - width + 1):
      if i > 0 and haystack[i - 1] != " ":
        continue
      window_words = _fuzzy_words(haystack[i : i + width])
      matches = sum(
          1
          for word in words
          if any(w in word or word in w for w in window_words)
      )
      if matches >= min_matches:
        end = i + width
        while end > i and haystack[end - 1] == " ":
          end -= 1
        return i, end
    return None

  def _sids_overlapping(self, start: int, end: int) -> tuple[int, ...]:
    first = max(bisect.bisect_right(self._sentence_starts, start) - 1, 0)
    sids = []
    for sentence in self._sentence_list[first:]:
      if sentence.char_start >= end:
        break
      if sentence.char_end > start:
        sids.append(sentence.sid)
    return tuple(sids)


def _fuzzy_words(text: str) -> list[str]:
  words = (w.strip(_FUZZY_STRIP_CHARS).lower() for w in text.split())
  return [w for w in words if w]


def _describe_failure(selection: data.Selection) -> str:
  if selection.text:
    preview = selection.text[:60]
    return f"Could not locate quote: {preview!r}"
  if selection.sid_range is not None:
    first, last = selection.sid_range
    return f"Could not resolve sentence range {first}-{last}"
  if selection.sid is not None:
    return f"Could not resolve sentence {selection.sid}"
  return "Could not resolve selection without addressing"


def resolve_selections(
    selections: Sequence[data.Selection],
    sentences: Sequence[data.Sentence],
    tokens: Sequence[data.Token],
    original_text: str,
    base_offset: int = 0,
) -> ResolutionResult:
  """Resolves `selections` against one text; see `SpanResolver.resolve`."""
  resolver = SpanResolver(
      original_text, sentences, tokens, base_offset=base_offset
  )
  return resolver.resolve(selections)
