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

"""Classes used to represent segmentation, evidence and analysis records.

All character offsets are absolute positions in the storage-normalized entry
text (see `normalize.normalize_for_storage`), half-open `[start, end)`.
"""

from __future__ import annotations

from collections.abc import Sequence
import dataclasses
import enum
import re
from typing import Any

SCHEMA_VERSION = "2"

BUCKET_NAMES = ("feeling", "rule", "consequence", "decision")


@dataclasses.dataclass(frozen=True, slots=True)
class Sentence:
  """A sentence of the source text with a stable 1-based id.

  Attributes:
    sid: Sentence id, 1-based and increasing in document order.
    text: The trimmed sentence text, equal to `source[char_start:char_end]`.
    char_start: Start offset in the source text (inclusive).
    char_end: End offset in the source text (exclusive).
    token_count: Approximate model token count of the sentence.
  """

  sid: int
  text: str
  char_start: int
  char_end: int
  token_count: int


@dataclasses.dataclass(frozen=True, slots=True)
class Token:
  """A whitespace-delimited token with absolute offsets.

  Attributes:
    tid: Token id, unique within one segmentation call.
    text: The token text.
    char_start: Start offset in the source text (inclusive).
    char_end: End offset in the source text (exclusive).
    sid: Id of the sentence that owns this token.
  """

  tid: int
  text: str
  char_start: int
  char_end: int
  sid: int


class AddressingMode(enum.Enum):
  """How a selection addresses its span."""

  SENTENCE_RANGE = "sid_range"
  SENTENCE = "sid"
  TOKENS = "tokens"
  CHARS = "chars"
  TEXT = "text"
  NONE = "none"


@dataclasses.dataclass(frozen=True)
class Selection:
  """A model's claim about a span of interest.

  Sentence ranges are inclusive, token and character ranges are end-exclusive
  and relative to the named sentence.

  Attributes:
    sid: Sentence id.
    sid_range: Inclusive `(first, last)` sentence id range.
    t0: First token index within the sentence.
    t1: Token index one past the last token within the sentence.
    char0: Start character offset within the sentence text.
    char1: End character offset within the sentence text (exclusive).
    reason: Short free-text label supplied by the model.
    text: Literal quoted text, used when structured addressing fails.
    theme_ids: Ids of themes this quote supports.
    entity_ids: Ids of entities this quote mentions.
  """

  sid: int | None = None
  sid_range: tuple[int, int] | None = None
  t0: int | None = None
  t1: int | None = None
  char0: int | None = None
  char1: int | None = None
  reason: str = ""
  text: str | None = None
  theme_ids: tuple[str, ...] = ()
  entity_ids: tuple[str, ...] = ()

  @property
  def addressing(self) -> AddressingMode:
    """Returns the addressing mode in precedence order.

    A sentence range always wins over partial addressing. A `sid` carrying a
    complete token or character pair is a sentence-scoped partial selection.
    """
    if self.sid_range is not None:
      return AddressingMode.SENTENCE_RANGE
    if self.sid is not None:
      if self.t0 is not None and self.t1 is not None:
        return AddressingMode.TOKENS
      if self.char0 is not None and self.char1 is not None:
        return AddressingMode.CHARS
      return AddressingMode.SENTENCE
    if self.text:
      return AddressingMode.TEXT
    return AddressingMode.NONE

  def referenced_sids(self) -> list[int]:
    """Returns every sentence id this selection points at, ascending."""
    if self.sid_range is not None:
      first, last = self.sid_range
      return list(range(first, last + 1))
    if self.sid is not None:
      return [self.sid]
    return []


@dataclasses.dataclass(frozen=True)
class ResolvedSpan:
  """An exact span of the source text.

  Attributes:
    text: Exactly `source[start:end]`.
    start: Absolute start offset (inclusive).
    end: Absolute end offset (exclusive).
    reason: The model's reason for selecting the span.
    sids: Sentence ids the originating selection addressed.
  """

  text: str
  start: int
  end: int
  reason: str | None = None
  sids: tuple[int, ...] = ()

  def with_sid_offset(self, sid_offset: int) -> ResolvedSpan:
    if not sid_offset:
      return self
    return dataclasses.replace(
        self, sids=tuple(sid + sid_offset for sid in self.sids)
    )


class QuoteCategory(str, enum.Enum):
  TEMPTATION = "temptation"
  PAST_EXPERIENCE = "past_experience"
  CONFLICT = "conflict"
  DECISION = "decision"
  CONSEQUENCE = "consequence"


@dataclasses.dataclass(frozen=True)
class Quote:
  """A resolved evidence quote with an optional category tag."""

  span: ResolvedSpan
  category: QuoteCategory | None = None
  theme_ids: tuple[str, ...] = ()
  entity_ids: tuple[str, ...] = ()

  @property
  def text(self) -> str:
    return self.span.text

  @property
  def start(self) -> int:
    return self.span.start

  @property
  def end(self) -> int:
    return self.span.end

  @property
  def key(self) -> tuple[str, int, int]:
    return (self.span.text, self.span.start, self.span.end)


@dataclasses.dataclass(frozen=True)
class Emotion:
  label: str
  confidence: float


@dataclasses.dataclass(frozen=True)
class Theme:
  name: str
  confidence: float
  id: str | None = None


@dataclasses.dataclass(frozen=True)
class Entity:
  name: str
  type: str
  salience: float
  sentiment: float = 0.0
  id: str | None = None


@dataclasses.dataclass
class EvidenceExtraction:
  """The evidence gathered by one first-pass call (or a merge of several)."""

  quotes: list[Quote] = dataclasses.field(default_factory=list)
  emotions: list[Emotion] = dataclasses.field(default_factory=list)
  themes: list[Theme] = dataclasses.field(default_factory=list)
  entities: list[Entity] = dataclasses.field(default_factory=list)
  uncertainties: list[str] = dataclasses.field(default_factory=list)


class RelationType(str, enum.Enum):
  CONTRADICTION = "contradiction"
  UNCERTAINTY = "uncertainty"
  ESCALATION = "escalation"
  PATTERN = "pattern"
  TENSION = "tension"


@dataclasses.dataclass(frozen=True)
class Relation:
  """A typed edge between sentence ids; `sid_b` is None for single-sentence."""

  type: RelationType
  sid_a: int
  sid_b: int | None = None
  note: str = ""
  confidence: float = 0.0

  @property
  def key(self) -> tuple[str, int, int | None, str]:
    return (self.type.value, self.sid_a, self.sid_b, self.note)

  def with_sid_offset(self, sid_offset: int) -> Relation:
    if not sid_offset:
      return self
    return dataclasses.replace(
        self,
        sid_a=self.sid_a + sid_offset,
        sid_b=None if self.sid_b is None else self.sid_b + sid_offset,
    )


@dataclasses.dataclass(frozen=True)
class Observation:
  text: str = ""
  evidence_sids: tuple[int, ...] = ()


@dataclasses.dataclass(frozen=True)
class Coverage:
  begin: bool = False
  middle: bool = False
  end: bool = False


@dataclasses.dataclass(frozen=True)
class Buckets:
  """Which of the four narrative elements the entry contains."""

  feeling: bool = False
  rule: bool = False
  consequence: bool = False
  decision: bool = False
  missing: tuple[str, ...] = BUCKET_NAMES


@dataclasses.dataclass
class FirstPass(EvidenceExtraction):
  """Closed-world evidence set that the second pass may cite."""

  relations: list[Relation] = dataclasses.field(default_factory=list)
  observation: Observation = dataclasses.field(default_factory=Observation)
  coverage: Coverage = dataclasses.field(default_factory=Coverage)
  buckets: Buckets = dataclasses.field(default_factory=Buckets)

  @property
  def quote_sid_list(self) -> list[int]:
    """Sorted, de-duplicated union of every sid referenced by a quote."""
    return flatten_quote_sids(self.quotes)


def flatten_quote_sids(quotes: Sequence[Quote]) -> list[int]:
  sids = set()
  for quote in quotes:
    sids.update(quote.span.sids)
  return sorted(sids)


@dataclasses.dataclass(frozen=True)
class Sentiment:
  score: float = 0.0
  label: str = "mixed"
  rationale_sid: int | None = None


@dataclasses.dataclass(frozen=True)
class Rationale:
  sid: int | None
  why: str = ""


@dataclasses.dataclass
class Micro:
  next_action: str = ""
  question: str = ""


@dataclasses.dataclass(frozen=True)
class Trace:
  used_themes: tuple[str, ...] = ()
  used_entities: tuple[str, ...] = ()
  used_quote_sids: tuple[int, ...] = ()


@dataclasses.dataclass
class SecondPassOutput:
  """The composed summary, validated against one `FirstPass`.

  Attributes:
    surfaced_relations: Relations the composition chose to surface. Entries
      that do not decode as a `Relation` are kept as their raw JSON value.
    warnings: Soft problems found during validation (ungrounded surfaced
      relations, truncated micro fields).
  """

  summary: str
  narrative_summary: str
  observation: str
  sentiment: Sentiment = dataclasses.field(default_factory=Sentiment)
  rationales: list[Rationale] = dataclasses.field(default_factory=list)
  micro: Micro = dataclasses.field(default_factory=Micro)
  trace: Trace = dataclasses.field(default_factory=Trace)
  surfaced_relations: list[Relation | Any] = dataclasses.field(
      default_factory=list
  )
  warnings: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class TextChunk:
  """A contiguous slice of the source text processed independently."""

  index: int
  text: str
  start_offset: int

  @property
  def end_offset(self) -> int:
    return self.start_offset + len(self.text)


@dataclasses.dataclass(frozen=True)
class TextSegment:
  """A rendering segment; highlighted segments carry the quote's range id."""

  text: str
  is_highlight: bool
  range_id: str | None = None
  range_kind: str | None = None


@dataclasses.dataclass
class AnalysisResult:
  """Everything produced by one analysis run, ready to be stored."""

  text: str
  sentences: list[Sentence]
  first_pass: FirstPass
  second_pass: SecondPassOutput
  segments: list[TextSegment]
  model: str = ""
  schema_version: str = SCHEMA_VERSION

  def to_dict(self) -> dict[str, Any]:
    """Returns the camelCase wire representation."""
    first_pass = to_wire(self.first_pass)
    first_pass["quoteSidList"] = self.first_pass.quote_sid_list
    return {
        "schemaVersion": self.schema_version,
        "model": self.model,
        "firstPass": first_pass,
        "secondPass": to_wire(self.second_pass),
        "segments": to_wire(self.segments),
    }


_CAMEL_BOUNDARY = re.compile(r"_([a-z0-9])")


def _camel(name: str) -> str:
  return _CAMEL_BOUNDARY.sub(lambda m: m.group(1).upper(), name)


def to_wire(value: Any) -> Any:
  """Converts records into JSON-ready values with camelCase keys.

  Quotes are flattened so that the span fields sit beside the category.
  """
  if isinstance(value, Quote):
    out = to_wire(value.span)
    out["category"] = value.category.value if value.category else None
    out["themeIds"] = list(value.theme_ids)
    out["entityIds"] = list(value.entity_ids)
    return out
  if isinstance(value, enum.Enum):
    return value.value
  if dataclasses.is_dataclass(value) and not isinstance(value, type):
    return {
        _camel(field.name): to_wire(getattr(value, field.name))
        for field in dataclasses.fields(value)
    }
  if isinstance(value, (list, tuple)):
    return [to_wire(item) for item in value]
  return value
