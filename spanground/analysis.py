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

"""Runs the two-pass evidence analysis over one text.

The flow is:

  text -> normalize -> chunk (if long) -> segment -> first-pass prompt
       -> model -> decode -> resolve -> merge -> second-pass prompt
       -> model -> validate -> highlight

First-pass calls for separate chunks run concurrently. Each chunk is
segmented on its own and its sentence ids are shifted by the number of
sentences in earlier chunks, so ids stay unique across the document.
"""

from __future__ import annotations

from collections.abc import Sequence
import concurrent.futures
import dataclasses
import threading

from absl import logging

from spanground import chunking
from spanground import codec
from spanground import config as config_lib
from spanground import data
from spanground import exceptions
from spanground import highlight
from spanground import inference
from spanground import merging
from spanground import normalize
from spanground import resolver as resolver_lib
from spanground import segmenter
from spanground import validation

MIN_USER_MOOD = -2
MAX_USER_MOOD = 2


@dataclasses.dataclass(frozen=True)
class _PreparedChunk:
  chunk: data.TextChunk
  sentences: list[data.Sentence]
  tokens: list[data.Token]
  sid_offset: int


class InsightAnalyzer:
  """Extracts grounded evidence from a text and composes a validated summary.

  Example:
    analyzer = InsightAnalyzer.from_config(LLMConfig.from_env())
    result = analyzer.analyze(entry_text, user_mood=1)
  """

  def __init__(
      self,
      model: inference.BaseLanguageModel | None,
      analysis_config: config_lib.AnalysisConfig = config_lib.AnalysisConfig(),
  ):
    """Initializes the analyzer.

    Args:
      model: The language-model collaborator. None leaves the analyzer
        unconfigured; `analyze` then raises `LLMConfigError`.
      analysis_config: Chunking, prompt and merge settings.
    """
    self._model = model
    self._config = analysis_config
    self._cancelled = threading.Event()
    self._futures: list[concurrent.futures.Future] = []
    self._futures_lock = threading.Lock()

  @classmethod
  def from_config(
      cls,
      llm_config: config_lib.LLMConfig,
      analysis_config: config_lib.AnalysisConfig = config_lib.AnalysisConfig(),
  ) -> InsightAnalyzer:
    """Builds an analyzer talking to the endpoint in `llm_config`.

    An unconfigured `llm_config` yields an unconfigured analyzer instead of
    failing, so callers can check `is_configured` first.
    """
    model = None
    if llm_config.is_configured:
      model = inference.OpenAICompatibleLanguageModel(llm_config)
    return cls(model, analysis_config)

  @property
  def is_configured(self) -> bool:
    return self._model is not None

  def cancel(self) -> None:
    """Cancels the running analysis, including in-flight model calls.

    A cancel issued while no analysis is running applies to the next call
    of `analyze`.
    """
    logging.info("Analysis cancelled by caller")
    self._cancelled.set()
    with self._futures_lock:
      for future in self._futures:
        future.cancel()
    if self._model is not None:
      self._model.cancel()

  def _ask(self, prompt: str, system: str, temperature: float) -> str:
    if self._model is None:
      raise exceptions.LLMConfigError("No language model configured.")
    if self._cancelled.is_set():
      raise exceptions.AnalysisCancelledError("Analysis was cancelled.")
    try:
      response = self._model.ask(
          prompt, system=system, temperature=temperature
      )
    except exceptions.LLMRuntimeError as e:
      if self._cancelled.is_set():
        raise exceptions.AnalysisCancelledError(
            "Analysis was cancelled."
        ) from e
      raise
    if self._cancelled.is_set():
      raise exceptions.AnalysisCancelledError("Analysis was cancelled.")
    return response

  def _prepare(self, text: str) -> list[_PreparedChunk]:
    if len(text) > self._config.chunk_threshold:
      chunks = chunking.chunk_text(text, self._config.chunk_size)
    else:
      chunks = [data.TextChunk(index=0, text=text, start_offset=0)]

    prepared = []
    sid_offset = 0
    for chunk in chunks:
      sentences = segmenter.segment_sentences(chunk.text)
      tokens = segmenter.segment_tokens(
          chunk.text, self._config.max_tokens_per_sentence, sentences
      )
      prepared.append(_PreparedChunk(chunk, sentences, tokens, sid_offset))
      sid_offset += len(sentences)
    return prepared

  def extract_evidence(
      self,
      text: str,
      *,
      chunk_index: int = 0,
      base_offset: int = 0,
      sid_offset: int = 0,
      sentences: Sequence[data.Sentence] | None = None,
      tokens: Sequence[data.Token] | None = None,
  ) -> data.FirstPass:
    """Runs the first pass over one chunk of text.

    Args:
      text: The storage-normalized chunk text.
      chunk_index: Index of the chunk, used in uncertainty notes.
      base_offset: Offset of the chunk in the full text.
      sid_offset: Number of sentences in earlier chunks.
      sentences: Segmentation of `text` with chunk-local sids. Computed when
        None.
      tokens: Token table of `text`. Computed when None.

    Returns:
      The chunk's first pass with document-global offsets and sids. An
      unparseable model response yields empty evidence with an uncertainty
      note.

    Raises:
      LLMTimeoutError: If the model call timed out.
      LLMRuntimeError: If the model call failed.
      AnalysisCancelledError: If the run was cancelled.
    """
    if sentences is None:
      sentences = segmenter.segment_sentences(text)
    if tokens is None:
      tokens = segmenter.segment_tokens(
          text, self._config.max_tokens_per_sentence, sentences
      )

    prompt = codec.build_selection_prompt(
        sentences, self._config.max_prompt_sentences
    )
    response = self._ask(
        prompt,
        codec.EXTRACTION_SYSTEM_PROMPT,
        self._config.extraction_temperature,
    )
    decoded = codec.decode_extraction(response)
    if decoded is None:
      note = f"Failed to extract evidence from chunk {chunk_index}"
      logging.warning(note)
      return data.FirstPass(uncertainties=[note])

    resolution = resolver_lib.resolve_selections(
        decoded.selections, sentences, tokens, text, base_offset=base_offset
    )
    quotes = [
        data.Quote(
            span=span.with_sid_offset(sid_offset),
            category=codec.categorize_quote(span.text, span.reason),
            theme_ids=selection.theme_ids,
            entity_ids=selection.entity_ids,
        )
        for span, selection in zip(resolution.spans, resolution.selections)
    ]
    evidence = merging.dedupe_extraction(
        data.EvidenceExtraction(
            quotes=quotes,
            emotions=decoded.emotions,
            themes=decoded.themes,
            entities=decoded.entities,
            uncertainties=decoded.uncertainties + resolution.uncertainties,
        )
    )
    logging.info(
        "Chunk %d: %d selections -> %d quotes (%d unresolved)",
        chunk_index,
        len(decoded.selections),
        len(quotes),
        len(resolution.uncertainties),
    )
    return data.FirstPass(
        quotes=evidence.quotes,
        emotions=evidence.emotions,
        themes=evidence.themes,
        entities=evidence.entities,
        uncertainties=evidence.uncertainties,
        relations=[r.with_sid_offset(sid_offset) for r in decoded.relations],
        observation=data.Observation(
            text=decoded.observation.text,
            evidence_sids=tuple(
                sid + sid_offset for sid in decoded.observation.evidence_sids
            ),
        ),
        coverage=decoded.coverage,
        buckets=decoded.buckets,
    )

  def _extract_all(
      self, prepared: list[_PreparedChunk]
  ) -> list[data.FirstPass]:
    def run(item: _PreparedChunk) -> data.FirstPass:
      return self.extract_evidence(
          item.chunk.text,
          chunk_index=item.chunk.index,
          base_offset=item.chunk.start_offset,
          sid_offset=item.sid_offset,
          sentences=item.sentences,
          tokens=item.tokens,
      )

    if len(prepared) == 1:
      return [run(prepared[0])]

    workers = max(1, min(self._config.max_workers, len(prepared)))
    logging.info(
        "Extracting evidence from %d chunks with %d workers",
        len(prepared),
        workers,
    )
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
    futures = [executor.submit(run, item) for item in prepared]
    with self._futures_lock:
      self._futures = list(futures)
    try:
      concurrent.futures.wait(
          futures, return_when=concurrent.futures.FIRST_EXCEPTION
      )
      if self._cancelled.is_set():
        raise exceptions.AnalysisCancelledError("Analysis was cancelled.")
      # Results are collected in chunk-index order, not completion order.
      return [future.result() for future in futures]
    except concurrent.futures.CancelledError as e:
      raise exceptions.AnalysisCancelledError(
          "Analysis was cancelled."
      ) from e
    finally:
      # Calls still running after a failure or cancel are not waited for.
      executor.shutdown(wait=False, cancel_futures=True)
      with self._futures_lock:
        self._futures = []

  def analyze(
      self, text: str, *, user_mood: int | None = None
  ) -> data.AnalysisResult:
    """Analyses one text end to end.

    Args:
      text: The raw entry text.
      user_mood: Optional self-reported mood from -2 to 2.

    Returns:
      The analysis result. All offsets refer to `result.text`, the
      storage-normalized input.

    Raises:
      LLMConfigError: If no model is configured. Raised before any call.
      ValueError: If `text` is empty or `user_mood` is out of range.
      ValidationFailureError: If the second pass is not grounded in the
        first pass.
      ParseFailureError: If the second-pass response cannot be parsed.
      LLMTimeoutError: If a model call timed out.
      LLMRuntimeError: If a model call failed.
      AnalysisCancelledError: If `cancel` was called.
    """
    if not self.is_configured:
      raise exceptions.LLMConfigError("No language model configured.")
    if not isinstance(text, str) or not text.strip():
      raise ValueError("Text to analyse must be a non-empty string.")
    mood_in_range = user_mood is None or (
        MIN_USER_MOOD <= user_mood <= MAX_USER_MOOD
    )
    if not mood_in_range:
      raise ValueError(
          f"user_mood must be between {MIN_USER_MOOD} and {MAX_USER_MOOD},"
          f" got {user_mood}."
      )
    try:
      return self._run(text, user_mood)
    finally:
      self._cancelled.clear()

  def _run(
      self, text: str, user_mood: int | None
  ) -> data.AnalysisResult:
    text = normalize.normalize_for_storage(text)
    prepared = self._prepare(text)
    sentences = [
        s
        for item in prepared
        for s in segmenter.with_sid_offset(
            item.sentences, item.sid_offset, item.chunk.start_offset
        )
    ]
    logging.info(
        "Analysing %d characters in %d chunk(s), %d sentences",
        len(text),
        len(prepared),
        len(sentences),
    )

    first_pass = merging.merge_first_passes(
        self._extract_all(prepared), self._config.merge_limits
    )
    if not first_pass.quote_sid_list:
      logging.warning("First pass found no quotes; skipping composition")
      raise exceptions.NoGroundingEvidenceError()

    prompt = codec.build_composition_prompt(
        sentences,
        first_pass,
        user_mood=user_mood,
        max_sentences=self._config.max_prompt_sentences,
    )
    response = self._ask(
        prompt,
        codec.COMPOSITION_SYSTEM_PROMPT,
        self._config.composition_temperature,
    )
    second_pass = validation.validate_second_pass(response, first_pass)

    return data.AnalysisResult(
        text=text,
        sentences=sentences,
        first_pass=first_pass,
        second_pass=second_pass,
        segments=highlight.to_segments(text, first_pass.quotes),
        model=self._model.model_name,
    )
