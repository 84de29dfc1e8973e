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

"""Validates a second-pass output against the first pass it was built from.

The second pass may only cite sentence ids that appear in the first pass's
`quote_sid_list`. Violations are raised as typed errors, in this order:

  1. a missing or empty `summary`, `narrativeSummary` or `observation`,
  2. an empty `quote_sid_list` (nothing can be cited),
  3. a rationale sid outside `quote_sid_list`,
  4. a `sentiment.rationaleSid` outside `quote_sid_list`.

Surfaced relations that do not match a first-pass relation are kept and
reported as warnings. Over-long micro fields are truncated.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from absl import logging

from spanground import codec
from spanground import data
from spanground import exceptions

CORE_FIELDS = ("summary", "narrativeSummary", "observation")

MAX_NEXT_ACTION_CHARS = 50
MAX_QUESTION_CHARS = 80
_ELLIPSIS = "..."

SENTIMENT_LABELS = ("negative", "mixed", "positive")
_SENTIMENT_LABEL_THRESHOLD = 0.1


def truncate(text: str, limit: int) -> str:
  """Truncates `text` to `limit` characters, ending in an ellipsis."""
  if len(text) <= limit:
    return text
  return text[: limit - len(_ELLIPSIS)] + _ELLIPSIS


def label_for_score(score: float) -> str:
  if score >= _SENTIMENT_LABEL_THRESHOLD:
    return "positive"
  if score <= -_SENTIMENT_LABEL_THRESHOLD:
    return "negative"
  return "mixed"


def _decode_sentiment(value: Any) -> data.Sentiment:
  if not isinstance(value, Mapping):
    return data.Sentiment()
  score = codec.clamp(codec.as_float(value.get("score"), 0.0), -1.0, 1.0)
  label = codec.as_str(value.get("label")).lower()
  if label not in SENTIMENT_LABELS:
    label = label_for_score(score)
  return data.Sentiment(
      score=score,
      label=label,
      rationale_sid=codec.as_int(value.get("rationaleSid")),
  )


def _decode_rationales(value: Any) -> list[data.Rationale]:
  rationales = []
  for item in value if isinstance(value, list) else ():
    if not isinstance(item, Mapping):
      continue
    rationales.append(
        data.Rationale(
            sid=codec.as_int(item.get("sid")), why=codec.as_str(item.get("why"))
        )
    )
  return rationales


def _decode_trace(value: Any) -> data.Trace:
  if not isinstance(value, Mapping):
    return data.Trace()

  def strings(key):
    items = value.get(key)
    return tuple(
        s for s in (items if isinstance(items, list) else ())
        if isinstance(s, str)
    )

  raw_sids = value.get("usedQuoteSids")
  sids = (
      codec.as_int(s) for s in (raw_sids if isinstance(raw_sids, list) else ())
  )
  return data.Trace(
      used_themes=strings("usedThemes"),
      used_entities=strings("usedEntities"),
      used_quote_sids=tuple(sid for sid in sids if sid is not None),
  )


def _check_surfaced_relations(
    value: Any, first_pass: data.FirstPass, warnings: list[str]
) -> list[data.Relation | Any]:
  """Flags surfaced relations that do not match a first-pass relation.

  Every entry is kept. Entries that do not decode as a `Relation` (unknown
  type, missing `sidA`) are kept as the raw JSON value.
  """
  known = {relation.key for relation in first_pass.relations}
  surfaced = []
  for item in value if isinstance(value, list) else ():
    relation = codec.decode_relation(item)
    if relation is None:
      message = f"Surfaced relation is malformed: {item!r}"
      logging.warning(message)
      warnings.append(message)
      surfaced.append(dict(item) if isinstance(item, Mapping) else item)
      continue
    if relation.key not in known:
      message = (
          "Surfaced relation not found in first pass:"
          f" {relation.type.value}-{relation.sid_a}-"
          f"{relation.sid_b if relation.sid_b is not None else ''}-"
          f"{relation.note}"
      )
      logging.warning(message)
      warnings.append(message)
    surfaced.append(relation)
  return surfaced


def validate_second_pass(
    raw: str | Mapping[str, Any], first_pass: data.FirstPass
) -> data.SecondPassOutput:
  """Validates and repairs a second-pass response.

  Args:
    raw: The model response text, or an already-parsed JSON object.
    first_pass: The evidence the response must be grounded in. It is never
      modified.

  Returns:
    The typed, validated second pass.

  Raises:
    ParseFailureError: If `raw` is text that cannot be parsed into a JSON
      object.
    MissingCoreFieldsError: If a core text field is missing or empty.
    NoGroundingEvidenceError: If the first pass has no quote sids.
    InvalidRationaleSidError: If a rationale cites an unknown sid.
    InvalidSentimentRationaleError: If the sentiment cites an unknown sid.
  """
  payload = codec.parse_json(raw) if isinstance(raw, str) else raw
  if not isinstance(payload, Mapping):
    raise exceptions.ParseFailureError(
        "Second pass response is not a JSON object."
    )

  missing = [
      name for name in CORE_FIELDS if not codec.as_str(payload.get(name))
  ]
  if missing:
    raise exceptions.MissingCoreFieldsError(missing)

  valid_sids = set(first_pass.quote_sid_list)
  if not valid_sids:
    raise exceptions.NoGroundingEvidenceError()

  rationales = _decode_rationales(payload.get("rationales"))
  for rationale in rationales:
    if rationale.sid not in valid_sids:
      raise exceptions.InvalidRationaleSidError(rationale.sid)

  sentiment = _decode_sentiment(payload.get("sentiment"))
  if sentiment.rationale_sid not in valid_sids:
    raise exceptions.InvalidSentimentRationaleError(sentiment.rationale_sid)

  warnings: list[str] = []
  surfaced = _check_surfaced_relations(
      payload.get("surfacedRelations"), first_pass, warnings
  )

  raw_micro = payload.get("micro")
  if not isinstance(raw_micro, Mapping):
    raw_micro = {}
  micro = data.Micro(
      next_action=codec.as_str(raw_micro.get("nextAction")),
      question=codec.as_str(raw_micro.get("question")),
  )
  if len(micro.next_action) > MAX_NEXT_ACTION_CHARS:
    message = (
        f"nextAction too long ({len(micro.next_action)} chars), truncating"
    )
    logging.warning(message)
    warnings.append(message)
    micro.next_action = truncate(micro.next_action, MAX_NEXT_ACTION_CHARS)
  if len(micro.question) > MAX_QUESTION_CHARS:
    message = f"question too long ({len(micro.question)} chars), truncating"
    logging.warning(message)
    warnings.append(message)
    micro.question = truncate(micro.question, MAX_QUESTION_CHARS)

  return data.SecondPassOutput(
      summary=codec.as_str(payload.get("summary")),
      narrative_summary=codec.as_str(payload.get("narrativeSummary")),
      observation=codec.as_str(payload.get("observation")),
      sentiment=sentiment,
      rationales=rationales,
      micro=micro,
      trace=_decode_trace(payload.get("trace")),
      surfaced_relations=surfaced,
      warnings=warnings,
  )
