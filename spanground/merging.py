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

"""Combines per-chunk evidence into one bounded, de-duplicated set.

Merging is pure and depends only on the order of its input list. When two
chunks supply the same item, the first-seen instance wins ties, so merging
results in chunk-index order gives a deterministic outcome.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import dataclasses

from absl import logging

from spanground import codec
from spanground import data


@dataclasses.dataclass(frozen=True)
class MergeLimits:
  """Caps applied to merged evidence."""

  max_quotes: int = 8
  max_entities: int = 5
  max_themes: int = 5


def dedupe_quotes(quotes: Iterable[data.Quote]) -> list[data.Quote]:
  """Removes quotes with an already seen `(text, start, end)`, keeping order."""
  seen = set()
  out = []
  for quote in quotes:
    if quote.key in seen:
      continue
    seen.add(quote.key)
    out.append(quote)
  return out


def dedupe_emotions(emotions: Iterable[data.Emotion]) -> list[data.Emotion]:
  """Keeps one emotion per label with the highest confidence seen."""
  best: dict[str, data.Emotion] = {}
  for emotion in emotions:
    current = best.get(emotion.label)
    if current is None or emotion.confidence > current.confidence:
      best[emotion.label] = emotion
  return list(best.values())


def dedupe_themes(themes: Iterable[data.Theme]) -> list[data.Theme]:
  """Splits compound names, then keeps one theme per name.

  The highest-confidence instance of each name is kept; the result is sorted
  by descending confidence.
  """
  best: dict[str, data.Theme] = {}
  for theme in themes:
    for name in codec.split_theme_names(theme.name):
      candidate = (
          theme if name == theme.name else dataclasses.replace(theme, name=name)
      )
      current = best.get(name)
      if current is None or candidate.confidence > current.confidence:
        best[name] = candidate
  return sorted(best.values(), key=lambda t: t.confidence, reverse=True)


def dedupe_entities(entities: Iterable[data.Entity]) -> list[data.Entity]:
  """Keeps the highest-salience entity per name, sorted by salience."""
  best: dict[str, data.Entity] = {}
  for entity in entities:
    current = best.get(entity.name)
    if current is None or entity.salience > current.salience:
      best[entity.name] = entity
  return sorted(best.values(), key=lambda e: e.salience, reverse=True)


def dedupe_strings(values: Iterable[str]) -> list[str]:
  return list(dict.fromkeys(values))


def dedupe_extraction(
    extraction: data.EvidenceExtraction,
) -> data.EvidenceExtraction:
  """Returns a copy of `extraction` with its own duplicates removed."""
  return data.EvidenceExtraction(
      quotes=dedupe_quotes(extraction.quotes),
      emotions=dedupe_emotions(extraction.emotions),
      themes=dedupe_themes(extraction.themes),
      entities=dedupe_entities(extraction.entities),
      uncertainties=dedupe_strings(extraction.uncertainties),
  )


def merge_extractions(
    extractions: Sequence[data.EvidenceExtraction],
    limits: MergeLimits = MergeLimits(),
) -> data.EvidenceExtraction:
  """Merges extractions into one bounded evidence set.

  Args:
    extractions: Per-chunk extractions, in chunk-index order.
    limits: Caps on quotes, entities and themes.

  Returns:
    A new EvidenceExtraction. The inputs are not modified.
  """
  merged = dedupe_extraction(
      data.EvidenceExtraction(
          quotes=[q for e in extractions for q in e.quotes],
          emotions=[m for e in extractions for m in e.emotions],
          themes=[t for e in extractions for t in e.themes],
          entities=[n for e in extractions for n in e.entities],
          uncertainties=[u for e in extractions for u in e.uncertainties],
      )
  )
  merged.quotes = merged.quotes[: limits.max_quotes]
  merged.themes = merged.themes[: limits.max_themes]
  merged.entities = merged.entities[: limits.max_entities]
  logging.debug(
      "Merged %d extractions: %d quotes, %d themes, %d entities",
      len(extractions),
      len(merged.quotes),
      len(merged.themes),
      len(merged.entities),
  )
  return merged


def _fields(extraction: data.EvidenceExtraction) -> dict[str, object]:
  return {
      f.name: getattr(extraction, f.name)
      for f in dataclasses.fields(data.EvidenceExtraction)
  }


def _dedupe_relations(
    relations: Iterable[data.Relation],
) -> list[data.Relation]:
  seen = set()
  out = []
  for relation in relations:
    if relation.key in seen:
      continue
    seen.add(relation.key)
    out.append(relation)
  return out


def merge_first_passes(
    passes: Sequence[data.FirstPass],
    limits: MergeLimits = MergeLimits(),
) -> data.FirstPass:
  """Merges chunk-level first passes whose sids are already document-global.

  Evidence is merged with `merge_extractions`. Relations are concatenated
  without duplicates, observation texts are joined and their evidence sids
  unioned, and coverage and bucket flags are OR-ed.
  """
  if len(passes) == 1:
    only = passes[0]
    merged = merge_extractions([only], limits)
    return data.FirstPass(
        **_fields(merged),
        relations=_dedupe_relations(only.relations),
        observation=only.observation,
        coverage=only.coverage,
        buckets=only.buckets,
    )

  merged = merge_extractions(passes, limits)

  observation_texts = dedupe_strings(
      p.observation.text for p in passes if p.observation.text
  )
  evidence_sids = sorted(
      {s for p in passes for s in p.observation.evidence_sids}
  )

  coverage = data.Coverage(
      begin=any(p.coverage.begin for p in passes),
      middle=any(p.coverage.middle for p in passes),
      end=any(p.coverage.end for p in passes),
  )
  buckets = codec.make_buckets(
      {
          name: any(getattr(p.buckets, name) for p in passes)
          for name in data.BUCKET_NAMES
      }
  )
  return data.FirstPass(
      **_fields(merged),
      relations=_dedupe_relations(r for p in passes for r in p.relations),
      observation=data.Observation(
          text=" ".join(observation_texts), evidence_sids=tuple(evidence_sids)
      ),
      coverage=coverage,
      buckets=buckets,
  )
