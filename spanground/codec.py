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

"""Selection protocol codec.

Encodes a segmentation into prompts for the two model passes and decodes the
model's loosely formed JSON into typed records.

Decoding never trusts the shape of the response. `parse_json_loose` returns
None when nothing can be recovered; `decode_extraction` returns either a fully
typed `DecodedExtraction` or None, with every optional field defaulted as
documented on the dataclass.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import dataclasses
import json
import math
import re
from typing import Any

from absl import logging
import dirtyjson

from spanground import data
from spanground import exceptions

DEFAULT_MAX_PROMPT_SENTENCES = 50

EXTRACTION_SYSTEM_PROMPT = (
    "You are a precise evidence extractor. Select key quotes using the"
    " provided sentence IDs and token indices. Return only valid JSON."
)

COMPOSITION_SYSTEM_PROMPT = (
    "You are a supportive personal coach who writes warm, evidence-based"
    " insights in UK English. Cite only the sentence ids present in the"
    " evidence. Return only valid JSON."
)

_FENCE_PATTERN = re.compile(
    r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL
)
_CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_TRAILING_COMMA_PATTERN = re.compile(r",(\s*[}\]])")
_INT_PATTERN = re.compile(r"-?[0-9]+", re.ASCII)
_DOUBLE_QUOTE_VARIANTS = re.compile("[“”„‟]")
_SINGLE_QUOTE_VARIANTS = re.compile("[‘’‚‛]")

_THEME_SEPARATOR = "|"

_DEBUG_PREVIEW_CHARS = 1000


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def sentence_table(
    sentences: Sequence[data.Sentence],
    max_sentences: int = DEFAULT_MAX_PROMPT_SENTENCES,
) -> list[dict[str, Any]]:
  """Returns the compact sentence description embedded in prompts."""
  return [
      {"sid": s.sid, "text": s.text, "tokenCount": s.token_count}
      for s in sentences[:max_sentences]
  ]


def build_selection_prompt(
    sentences: Sequence[data.Sentence],
    max_sentences: int = DEFAULT_MAX_PROMPT_SENTENCES,
) -> str:
  """Builds the first-pass prompt asking the model to select evidence.

  Sentence ranges in the schema are inclusive; token ranges (t0/t1) and
  character ranges (char0/char1) are end-exclusive. The model is told exactly
  this, so the asymmetry must be kept.

  Args:
    sentences: The segmentation of the text being analysed.
    max_sentences: Only the first `max_sentences` sentences are described.

  Returns:
    The prompt text.
  """
  table = json.dumps(
      sentence_table(sentences, max_sentences), indent=2, ensure_ascii=False
  )
  return f"""Analyze the journal entry and select key quotes that capture the emotional arc and important insights.

SENTENCES:
{table}

Return JSON using this schema (sidRange is INCLUSIVE, t1 and char1 are EXCLUSIVE):
{{
  "quotes": [
    {{ "sid": 3, "reason": "process plan", "themeIds": ["t.change"], "entityIds": ["e.dave"] }},
    {{ "sidRange": [7, 9], "reason": "emotional moment" }},
    {{ "sid": 12, "reason": "decision point" }},
    {{ "sid": 5, "t0": 2, "t1": 7, "reason": "cause" }},
    {{ "sid": 6, "char0": 14, "char1": 42, "reason": "detail" }}
  ],
  "emotions": [{{ "label": "joy", "confidence": 0.80 }}],
  "themes": [{{ "id": "t.change", "name": "change", "confidence": 0.90 }}],
  "entities": [{{ "id": "e.dave", "name": "Dave", "type": "person", "salience": 0.70, "sentiment": 0.20 }}],
  "relations": [
    {{ "type": "contradiction", "sidA": 4, "sidB": 9, "note": "claim vs action", "confidence": 0.85 }},
    {{ "type": "uncertainty", "sidA": 7, "note": "unclear about next steps", "confidence": 0.70 }}
  ],
  "observation": {{ "text": "Interpretive but grounded; no new concepts.", "evidenceSids": [3, 7] }},
  "coverage": {{ "begin": true, "middle": false, "end": true }},
  "buckets": {{ "feeling": true, "rule": true, "consequence": false, "decision": false, "missing": ["consequence", "decision"] }},
  "uncertainties": []
}}

Selection Rules:
- STRONGLY PREFER "sid" (full sentence) or "sidRange" (consecutive sentences, inclusive).
- Use "t0"/"t1" or "char0"/"char1" ONLY if the idea is fully contained in one sentence;
  both are end-exclusive and must be snapped to clean word boundaries.
- Select 3-6 quotes total. Aim to cover: feeling -> rule/boundary -> consequence -> decision (if present).
- If the entry is a brain dump, pick the most representative 3-6 sentences.

Relations Rules:
- Types: "contradiction", "uncertainty", "escalation", "pattern", "tension".
- Include a confidence (0-1) for each relation; sidB is optional for single-sentence relations.

Diversity Requirements:
Include at least one quote for (a) desire/feeling, (b) rule/boundary ("should/shouldn't"),
(c) consequence/fear, (d) decision (if present). List any missing under buckets.missing.

Important:
- Complete thoughts only; avoid mid-word fragments.
- "observation" must be supported by evidenceSids; no new topics.
- Keep every "reason" to 3 words or fewer.
- Output MUST be valid JSON."""


def first_pass_evidence(first_pass: data.FirstPass) -> dict[str, Any]:
  """Returns the first pass as the evidence object shown to the second pass."""
  evidence = data.to_wire(first_pass)
  evidence["quoteSidList"] = first_pass.quote_sid_list
  return evidence


def build_composition_prompt(
    sentences: Sequence[data.Sentence],
    first_pass: data.FirstPass,
    user_mood: int | None = None,
    max_sentences: int = DEFAULT_MAX_PROMPT_SENTENCES,
) -> str:
  """Builds the second-pass prompt composing a summary from the evidence.

  Args:
    sentences: The segmentation of the analysed text.
    first_pass: The evidence the summary must be grounded in.
    user_mood: Optional self-reported mood on a -2..2 scale.
    max_sentences: Only the first `max_sentences` sentences are described.

  Returns:
    The prompt text.
  """
  table = json.dumps(
      sentence_table(sentences, max_sentences), indent=2, ensure_ascii=False
  )
  evidence = json.dumps(
      first_pass_evidence(first_pass), indent=2, ensure_ascii=False
  )
  mood = ""
  if user_mood is not None:
    mood = f"\n\nUser mood: {user_mood} (scale: -2 to +2)"
  return f"""Using ONLY the sentences and the extracted evidence below, write STRICT JSON.

SENTENCES:
{table}

EVIDENCE:
{evidence}

Write STRICT JSON:
{{
  "summary": "<=3 sentences, warm & first-person, UK English.",
  "narrativeSummary": "Chronological facts only. 2-3 sentences; reflect the emotional arc in EVIDENCE.coverage.",
  "observation": "2-3 sentences on meaning/relations, grounded in EVIDENCE.observation.evidenceSids or quotes.",
  "sentiment": {{ "score": -1..1, "label": "negative|mixed|positive", "rationaleSid": <sid> }},
  "rationales": [{{ "sid": <number>, "why": "<=12 words" }}],
  "micro": {{ "nextAction": "<=10 words", "question": "<=15 words" }},
  "trace": {{ "usedThemes": ["<subset of themes.name>"], "usedEntities": ["<top 1-3>"], "usedQuoteSids": [] }},
  "surfacedRelations": [<subset of EVIDENCE.relations, copied exactly>]
}}

HARD RULES:
- Use ONLY content supported by SENTENCES and EVIDENCE; never invent quotes.
- Every rationales[].sid and sentiment.rationaleSid MUST be one of EVIDENCE.quoteSidList.
- If EVIDENCE.buckets.missing includes "consequence" or "decision", avoid implying them.
- Keep narrative and observation distinct. If uncertain, hedge once.
- surfacedRelations: choose 0-3 relations from EVIDENCE.relations, unchanged.
- Keep micro.nextAction to 10 words or fewer and micro.question to 15 words or fewer.
- UK English. No clinical labels. Valid JSON only.{mood}"""


# ---------------------------------------------------------------------------
# Loose JSON parsing
# ---------------------------------------------------------------------------


def _early_sanitize_input(input_str: str) -> str:
  """Removes ASCII control characters except TAB, LF and CR."""
  sanitized = _CONTROL_CHARS_PATTERN.sub("", input_str)
  if len(sanitized) != len(input_str):
    logging.debug(
        "Early sanitization removed %d control characters",
        len(input_str) - len(sanitized),
    )
  return sanitized


def _strip_code_fence(text: str) -> str:
  match = _FENCE_PATTERN.search(text)
  return match.group(1) if match else text


def strip_json_comments(text: str) -> str:
  """Removes `//` line comments and `/* */` block comments outside strings."""
  out: list[str] = []
  i = 0
  n = len(text)
  in_string = False
  escaped = False
  while i < n:
    ch = text[i]
    if in_string:
      out.append(ch)
      if escaped:
        escaped = False
      elif ch == "\\":
        escaped = True
      elif ch == '"':
        in_string = False
      i += 1
      continue

    if ch == '"':
      in_string = True
      out.append(ch)
      i += 1
    elif text.startswith("//", i):
      newline = text.find("\n", i)
      i = n if newline == -1 else newline
    elif text.startswith("/*", i):
      close = text.find("*/", i + 2)
      i = n if close == -1 else close + 2
    else:
      out.append(ch)
      i += 1
  return "".join(out)


def _repair_json(text: str) -> str:
  repaired = _TRAILING_COMMA_PATTERN.sub(r"\1", text)
  repaired = _DOUBLE_QUOTE_VARIANTS.sub('"', repaired)
  return _SINGLE_QUOTE_VARIANTS.sub("'", repaired)


def parse_json(response: str) -> Any:
  """Parses a model response that should contain one JSON value.

  Attempts, in order:
    1. strict JSON on the fence-stripped, comment-stripped content,
    2. strict JSON after trailing-comma removal and quote normalization,
    3. dirtyjson on the repaired content.

  Args:
    response: The raw model response, optionally fenced.

  Returns:
    The decoded Python value.

  Raises:
    ParseFailureError: If every attempt fails.
  """
  if not response or not isinstance(response, str):
    raise exceptions.ParseFailureError("Response must be a non-empty string.")

  content = strip_json_comments(
      _strip_code_fence(_early_sanitize_input(response))
  ).strip()
  preview = content[:_DEBUG_PREVIEW_CHARS]
  logging.debug("Parsing content (preview): %s", preview)

  try:
    return json.loads(content)
  except json.JSONDecodeError as e:
    logging.warning("JSON parse failed, trying repaired content: %s", e)

  repaired = _repair_json(content)
  try:
    return json.loads(repaired)
  except json.JSONDecodeError as e:
    logging.debug("Repaired JSON parse failed, trying dirtyjson: %s", e)

  try:
    return _plain(dirtyjson.loads(repaired))
  except Exception as e:  # dirtyjson raises a variety of error types
    logging.warning("Failed to parse content after all repair attempts.")
    raise exceptions.ParseFailureError("Failed to parse content.") from e


def _plain(value: Any) -> Any:
  """Converts dirtyjson's attributed containers into plain dicts and lists."""
  if isinstance(value, Mapping):
    return {str(k): _plain(v) for k, v in value.items()}
  if isinstance(value, list):
    return [_plain(v) for v in value]
  return value


def parse_json_loose(response: str) -> Any | None:
  """Like `parse_json` but returns None instead of raising."""
  try:
    return parse_json(response)
  except exceptions.ParseFailureError:
    return None


# ---------------------------------------------------------------------------
# Typed decoding
# ---------------------------------------------------------------------------


def as_int(value: Any) -> int | None:
  if isinstance(value, bool):
    return None
  if isinstance(value, int):
    return value
  if isinstance(value, float) and math.isfinite(value) and value.is_integer():
    return int(value)
  if isinstance(value, str) and _INT_PATTERN.fullmatch(value.strip()):
    try:
      return int(value.strip())
    except ValueError:
      # Beyond the interpreter's integer string conversion limit.
      return None
  return None


def as_float(value: Any, default: float) -> float:
  if isinstance(value, bool):
    return default
  if isinstance(value, (int, float)):
    try:
      number = float(value)
    except OverflowError:
      return default
  elif isinstance(value, str):
    try:
      number = float(value)
    except ValueError:
      return default
  else:
    return default
  return number if math.isfinite(number) else default


def clamp(value: float, low: float, high: float) -> float:
  return max(low, min(high, value))


def as_str(value: Any, default: str = "") -> str:
  return value.strip() if isinstance(value, str) else default


def _as_bool(value: Any) -> bool:
  return value is True


def _str_tuple(value: Any) -> tuple[str, ...]:
  if not isinstance(value, list):
    return ()
  return tuple(v for v in value if isinstance(v, str) and v)


def _int_tuple(value: Any) -> tuple[int, ...]:
  if not isinstance(value, list):
    return ()
  return tuple(i for i in (as_int(v) for v in value) if i is not None)


@dataclasses.dataclass
class DecodedExtraction:
  """A first-pass response decoded into typed records.

  Defaults for anything the model omitted or sent with the wrong type:
  empty lists, an empty observation, all-false coverage and buckets.
  Numbers are clamped: confidences and salience into [0, 1] (default 0.5),
  entity sentiment into [-1, 1] (default 0).
  """

  selections: list[data.Selection] = dataclasses.field(default_factory=list)
  emotions: list[data.Emotion] = dataclasses.field(default_factory=list)
  themes: list[data.Theme] = dataclasses.field(default_factory=list)
  entities: list[data.Entity] = dataclasses.field(default_factory=list)
  relations: list[data.Relation] = dataclasses.field(default_factory=list)
  observation: data.Observation = dataclasses.field(
      default_factory=data.Observation
  )
  coverage: data.Coverage = dataclasses.field(default_factory=data.Coverage)
  buckets: data.Buckets = dataclasses.field(default_factory=data.Buckets)
  uncertainties: list[str] = dataclasses.field(default_factory=list)


def decode_selection(item: Any) -> data.Selection | None:
  """Decodes one entry of `quotes`; returns None if it addresses nothing."""
  if isinstance(item, str):
    return data.Selection(text=item) if item.strip() else None
  if not isinstance(item, Mapping):
    return None

  sid_range = None
  raw_range = item.get("sidRange")
  if isinstance(raw_range, list) and len(raw_range) == 2:
    first, last = as_int(raw_range[0]), as_int(raw_range[1])
    if first is not None and last is not None:
      sid_range = (min(first, last), max(first, last))

  text = item.get("text")
  if not isinstance(text, str) or not text.strip():
    text = item.get("quote")
  if not isinstance(text, str) or not text.strip():
    text = None

  selection = data.Selection(
      sid=as_int(item.get("sid")),
      sid_range=sid_range,
      t0=as_int(item.get("t0")),
      t1=as_int(item.get("t1")),
      char0=as_int(item.get("char0")),
      char1=as_int(item.get("char1")),
      reason=as_str(item.get("reason")),
      text=text,
      theme_ids=_str_tuple(item.get("themeIds")),
      entity_ids=_str_tuple(item.get("entityIds")),
  )
  if selection.addressing is data.AddressingMode.NONE:
    return None
  return selection


def split_theme_names(name: str) -> list[str]:
  """Splits a theme name on the separator, dropping empty parts."""
  parts = (part.strip() for part in name.split(_THEME_SEPARATOR))
  return [part for part in parts if part]


def _decode_emotions(items: Any) -> list[data.Emotion]:
  emotions = []
  for item in items if isinstance(items, list) else ():
    if not isinstance(item, Mapping):
      continue
    label = as_str(item.get("label"))
    if not label:
      continue
    confidence = as_float(item.get("confidence"), 0.5)
    emotions.append(data.Emotion(label, clamp(confidence, 0.0, 1.0)))
  return emotions


def _decode_themes(items: Any) -> list[data.Theme]:
  themes = []
  for item in items if isinstance(items, list) else ():
    if not isinstance(item, Mapping) or not isinstance(item.get("name"), str):
      continue
    confidence = clamp(as_float(item.get("confidence"), 0.5), 0.0, 1.0)
    theme_id = as_str(item.get("id")) or None
    for name in split_theme_names(item["name"]):
      themes.append(data.Theme(name=name, confidence=confidence, id=theme_id))
  return themes


def _decode_entities(items: Any) -> list[data.Entity]:
  entities = []
  for item in items if isinstance(items, list) else ():
    if not isinstance(item, Mapping):
      continue
    name = as_str(item.get("name"))
    if not name:
      continue
    entities.append(
        data.Entity(
            name=name,
            type=as_str(item.get("type"), "unknown") or "unknown",
            salience=clamp(as_float(item.get("salience"), 0.5), 0.0, 1.0),
            sentiment=clamp(as_float(item.get("sentiment"), 0.0), -1.0, 1.0),
            id=as_str(item.get("id")) or None,
        )
    )
  return entities


def decode_relation(item: Any) -> data.Relation | None:
  if not isinstance(item, Mapping):
    return None
  try:
    relation_type = data.RelationType(as_str(item.get("type")).lower())
  except ValueError:
    return None
  sid_a = as_int(item.get("sidA"))
  if sid_a is None:
    return None
  return data.Relation(
      type=relation_type,
      sid_a=sid_a,
      sid_b=as_int(item.get("sidB")),
      note=as_str(item.get("note")),
      confidence=clamp(as_float(item.get("confidence"), 0.0), 0.0, 1.0),
  )


def _decode_observation(value: Any) -> data.Observation:
  if isinstance(value, str):
    return data.Observation(text=value.strip())
  if not isinstance(value, Mapping):
    return data.Observation()
  return data.Observation(
      text=as_str(value.get("text")),
      evidence_sids=_int_tuple(value.get("evidenceSids")),
  )


def _decode_coverage(value: Any) -> data.Coverage:
  if not isinstance(value, Mapping):
    return data.Coverage()
  return data.Coverage(
      begin=_as_bool(value.get("begin")),
      middle=_as_bool(value.get("middle")),
      end=_as_bool(value.get("end")),
  )


def make_buckets(flags: Mapping[str, bool]) -> data.Buckets:
  """Builds buckets whose `missing` list is derived from the flags."""
  values = {name: bool(flags.get(name)) for name in data.BUCKET_NAMES}
  missing = tuple(name for name in data.BUCKET_NAMES if not values[name])
  return data.Buckets(missing=missing, **values)


def _decode_buckets(value: Any) -> data.Buckets:
  if not isinstance(value, Mapping):
    return make_buckets({})
  return make_buckets(
      {name: _as_bool(value.get(name)) for name in data.BUCKET_NAMES}
  )


def decode_extraction_payload(payload: Any) -> DecodedExtraction | None:
  """Decodes an already-parsed first-pass payload.

  Returns:
    The typed extraction, or None if `payload` is not a JSON object.
  """
  if not isinstance(payload, Mapping):
    logging.warning(
        "Expected a JSON object from the first pass, got %s", type(payload)
    )
    return None

  raw_quotes = payload.get("quotes")
  selections = []
  for item in raw_quotes if isinstance(raw_quotes, list) else ():
    selection = decode_selection(item)
    if selection is None:
      logging.debug("Skipping quote without usable addressing: %r", item)
      continue
    selections.append(selection)

  relations = []
  raw_relations = payload.get("relations")
  for item in raw_relations if isinstance(raw_relations, list) else ():
    relation = decode_relation(item)
    if relation is not None:
      relations.append(relation)

  raw_uncertainties = payload.get("uncertainties")
  return DecodedExtraction(
      selections=selections,
      emotions=_decode_emotions(payload.get("emotions")),
      themes=_decode_themes(payload.get("themes")),
      entities=_decode_entities(payload.get("entities")),
      relations=relations,
      observation=_decode_observation(payload.get("observation")),
      coverage=_decode_coverage(payload.get("coverage")),
      buckets=_decode_buckets(payload.get("buckets")),
      uncertainties=list(_str_tuple(raw_uncertainties)),
  )


def decode_extraction(response: str) -> DecodedExtraction | None:
  """Decodes a raw first-pass response.

  Returns:
    The typed extraction, or None when the response is unparseable. Callers
    treat None as "no evidence", not as a fatal error.
  """
  payload = parse_json_loose(response)
  if payload is None:
    logging.warning(
        "Unparseable first-pass response (preview): %s",
        (response or "")[:200],
    )
    return None
  return decode_extraction_payload(payload)


# ---------------------------------------------------------------------------
# Quote categories
# ---------------------------------------------------------------------------

# (category, cues in the quote text, cues in the model reason)
_CATEGORY_CUES = (
    (
        data.QuoteCategory.TEMPTATION,
        ("want", "desire", "tempted"),
        ("temptation",),
    ),
    (
        data.QuoteCategory.PAST_EXPERIENCE,
        ("remember", "before", "used to"),
        ("past",),
    ),
    (
        data.QuoteCategory.CONFLICT,
        ("but", "however", "conflict", "shouldn't", "can't"),
        ("conflict",),
    ),
    (
        data.QuoteCategory.DECISION,
        ("decide", "choose", "going to"),
        ("decision",),
    ),
    (
        data.QuoteCategory.CONSEQUENCE,
        ("result", "happened", "because"),
        ("consequence", "outcome"),
    ),
)


def categorize_quote(
    text: str, reason: str | None = None
) -> data.QuoteCategory | None:
  """Tags a quote from keyword cues in its text and the model's reason.

  Cues are substring matches checked in a fixed order; the first category
  with a cue wins.
  """
  lower_text = fold_apostrophes(text.lower())
  lower_reason = (reason or "").lower()
  for category, text_cues, reason_cues in _CATEGORY_CUES:
    if any(cue in lower_text for cue in text_cues):
      return category
    if any(cue in lower_reason for cue in reason_cues):
      return category
  return None


def fold_apostrophes(text: str) -> str:
  return _SINGLE_QUOTE_VARIANTS.sub("'", text)
