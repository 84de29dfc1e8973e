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

"""Splits long texts into chunks that are analysed independently.

Chunks tile the text exactly: concatenating their texts gives back the input,
and each chunk records the offset of its first character. Cuts are made just
after a paragraph break, newline or space, never inside a word.
"""

from collections.abc import Iterator

from absl import logging

from spanground import data

DEFAULT_CHUNK_SIZE = 1000

# A boundary found before this fraction of the chunk size is too early to use.
_MIN_FILL_RATIO = 0.5


def _find_cut(text: str, offset: int, chunk_size: int) -> int:
  """Returns the end offset of the chunk starting at `offset`."""
  limit = offset + chunk_size
  if limit >= len(text):
    return len(text)

  boundary = max(
      text.rfind("\n\n", offset, limit),
      text.rfind("\n", offset, limit),
      text.rfind(" ", offset, limit),
  )
  if boundary > offset + chunk_size * _MIN_FILL_RATIO:
    return boundary + 1

  # No usable boundary behind the limit: move forward to the next whitespace
  # so that the cut does not fall inside a word.
  cut = limit
  while cut < len(text) and not text[cut].isspace():
    cut += 1
  while cut < len(text) and text[cut].isspace():
    cut += 1
  return cut


def chunk_iterator(
    text: str, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> Iterator[data.TextChunk]:
  """Yields consecutive chunks of roughly `chunk_size` characters.

  Args:
    text: The text to split.
    chunk_size: Target maximum characters per chunk. A chunk is longer only
      when a single word runs past the limit.

  Yields:
    TextChunk objects in document order, indexed from 0.

  Raises:
    ValueError: If `chunk_size` is not positive.
  """
  if chunk_size <= 0:
    raise ValueError(f"chunk_size must be positive, got {chunk_size}.")

  offset = 0
  index = 0
  while offset < len(text):
    end = _find_cut(text, offset, chunk_size)
    yield data.TextChunk(
        index=index, text=text[offset:end], start_offset=offset
    )
    offset = end
    index += 1


def chunk_text(
    text: str, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> list[data.TextChunk]:
  """Returns all chunks of `text`; see `chunk_iterator`."""
  chunks = list(chunk_iterator(text, chunk_size))
  logging.info(
      "Split %d characters into %d chunks of at most ~%d characters",
      len(text),
      len(chunks),
      chunk_size,
  )
  return chunks
