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

"""Deterministic sentence and token segmentation.

Raw text is split into an ordered sequence of sentences with stable 1-based
ids, and each sentence into a bounded sequence of whitespace-delimited tokens.
Both carry exact `[char_start, char_end)` offsets into the text they were
computed from, so a model can refer to spans by small integer ids instead of
character offsets.

Sentence Boundaries:
  A boundary is a whitespace run that
  - follows terminal punctuation (optionally closed by a quote or bracket),
  - is followed by an uppercase or caseless letter, or an opening quote or
    bracket,
  - does not follow a known abbreviation such as "Dr.".

  Boundaries only ever fall on whitespace, so a word is never split. Text with
  no terminal punctuation is one sentence.

Example:
  >>> [s.text for s in segment_sentences('I went. "Why?" she asked.')]
  ['I went.', '"Why?" she asked.']
"""

from __future__ import annotations

from collections.abc import Sequence, Set
import math
import unicodedata

from absl import logging
import regex

from spanground import data

DEFAULT_MAX_TOKENS_PER_SENTENCE = 64

_REGEX_FLAGS = regex.VERSION1 | regex.UNICODE

# Whitespace preceded by terminal punctuation; the lookbehind is variable
# length, which the stdlib `re` module does not support.
_SENTENCE_BREAK_PATTERN = regex.compile(
    r"(?<=\S[.?!…。？！]+[\"'’”)\]]?)\s+(?=\S)",
    _REGEX_FLAGS,
)
_WORD_PATTERN = regex.compile(r"\S+", _REGEX_FLAGS)

_OPENING_CHARS = frozenset("\"'‘“([")

_KNOWN_ABBREVIATIONS = frozenset({"Mr.", "Mrs.", "Ms.", "Dr.", "Prof.", "St."})

# Average model tokens per whitespace word.
_TOKENS_PER_WORD = 1.3


def _starts_with_cased_or_caseless_letter(token_text: str) -> bool:
  """Checks whether token_text starts with a letter that can begin a sentence.

  A sentence-start letter is either an uppercase letter in a script that has
  case, or any letter from a script with no case distinction (e.g. Han,
  Hangul).

  Args:
    token_text: The text to test. May be empty.

  Returns:
    True if the first character matches the criteria above; otherwise False.
  """
  if not token_text:
    return False
  ch = token_text[0]
  if unicodedata.category(ch) in ("Lu", "Lt"):
    return True
  if ch.lower() == ch.upper() and unicodedata.category(ch).startswith("L"):
    return True
  return False


def _can_start_sentence(ch: str) -> bool:
  return ch in _OPENING_CHARS or _starts_with_cased_or_caseless_letter(ch)


def _word_before(text: str, pos: int) -> str:
  start = pos
  while start > 0 and not text[start - 1].isspace():
    start -= 1
  return text[start:pos]


def estimate_token_count(text: str) -> int:
  """Estimates the model token count of `text` from its word count."""
  words = len(_WORD_PATTERN.findall(text))
  return math.ceil(words * _TOKENS_PER_WORD)


def _boundaries(text: str, abbreviations: Set[str]) -> list[int]:
  boundaries = [0]
  for match in _SENTENCE_BREAK_PATTERN.finditer(text):
    if not _can_start_sentence(text[match.end()]):
      continue
    if _word_before(text, match.start()) in abbreviations:
      continue
    boundaries.append(match.end())
  boundaries.append(len(text))
  return boundaries


def segment_sentences(
    text: str,
    abbreviations: Set[str] | None = None,
) -> list[data.Sentence]:
  """Splits text into sentences with stable 1-based ids.

  Every character of `text` belongs either to exactly one sentence or to the
  whitespace between sentences, which no sentence contains.

  Args:
    text: The text to segment.
    abbreviations: Words ending in a period that do not end a sentence. If
      None, uses default English abbreviations.

  Returns:
    Sentences in increasing sid and char_start order. Empty or all-whitespace
    text yields an empty list.
  """
  if not text:
    return []

  abbrev_set = (
      abbreviations if abbreviations is not None else _KNOWN_ABBREVIATIONS
  )
  bounds = _boundaries(text, abbrev_set)

  sentences = []
  for start, end in zip(bounds, bounds[1:]):
    raw = text[start:end]
    stripped = raw.strip()
    if not stripped:
      continue
    char_start = start + (len(raw) - len(raw.lstrip()))
    sentences.append(
        data.Sentence(
            sid=len(sentences) + 1,
            text=stripped,
            char_start=char_start,
            char_end=char_start + len(stripped),
            token_count=estimate_token_count(stripped),
        )
    )

  logging.debug(
      "segment_sentences(): %d characters -> %d sentences",
      len(text),
      len(sentences),
  )
  return sentences


def segment_tokens(
    text: str,
    max_tokens_per_sentence: int = DEFAULT_MAX_TOKENS_PER_SENTENCE,
    sentences: Sequence[data.Sentence] | None = None,
) -> list[data.Token]:
  """Splits each sentence into whitespace-delimited tokens.

  Tokens are found relative to the sentence text and reported with absolute
  offsets. Only the first `max_tokens_per_sentence` tokens of a sentence are
  kept, which bounds the size of any prompt built from them.

  Args:
    text: The text to segment.
    max_tokens_per_sentence: Hard cap on tokens emitted per sentence.
    sentences: A segmentation of `text` to reuse. If None, `text` is segmented
      with `segment_sentences`.

  Returns:
    Tokens in document order with tids numbered from 0.
  """
  if sentences is None:
    sentences = segment_sentences(text)

  tokens = []
  for sentence in sentences:
    for count, match in enumerate(_WORD_PATTERN.finditer(sentence.text)):
      if count >= max_tokens_per_sentence:
        break
      tokens.append(
          data.Token(
              tid=len(tokens),
              text=match.group(),
              char_start=sentence.char_start + match.start(),
              char_end=sentence.char_start + match.end(),
              sid=sentence.sid,
          )
      )
  return tokens


def with_sid_offset(
    sentences: Sequence[data.Sentence], sid_offset: int, char_offset: int = 0
) -> list[data.Sentence]:
  """Returns sentences renumbered by `sid_offset` and moved by `char_offset`."""
  return [
      data.Sentence(
          sid=s.sid + sid_offset,
          text=s.text,
          char_start=s.char_start + char_offset,
          char_end=s.char_end + char_offset,
          token_count=s.token_count,
      )
      for s in sentences
  ]
