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

"""Configuration values threaded through the analysis entry point.

Nothing here is global: callers build an `LLMConfig` (directly or from the
environment) and an `AnalysisConfig`, and pass them to the objects that need
them.
"""

from __future__ import annotations

import dataclasses
import os

from absl import logging
import dotenv

from spanground import chunking
from spanground import codec
from spanground import merging
from spanground import segmenter

ENV_URL = "SPANGROUND_LLM_URL"
ENV_TOKEN = "SPANGROUND_LLM_TOKEN"
ENV_MODEL = "SPANGROUND_LLM_MODEL"
ENV_TIMEOUT = "SPANGROUND_LLM_TIMEOUT"

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclasses.dataclass(frozen=True)
class LLMConfig:
  """Where and how to reach the language-model endpoint.

  Attributes:
    url: Chat-completions endpoint URL.
    token: Optional bearer token.
    model: Model name sent with each request.
    timeout_seconds: Deadline for one request.
  """

  url: str = ""
  token: str | None = None
  model: str = ""
  timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

  @property
  def is_configured(self) -> bool:
    """True when both an endpoint and a model name are set."""
    return bool(self.url.strip() and self.model.strip())

  @classmethod
  def from_env(cls, load_dotenv: bool = True) -> LLMConfig:
    """Reads the configuration from the environment.

    Args:
      load_dotenv: Whether to load a `.env` file into the environment first.
        Variables already set are not overridden.

    Returns:
      The configuration. It may be unconfigured; check `is_configured`.
    """
    if load_dotenv:
      dotenv.load_dotenv()

    timeout = DEFAULT_TIMEOUT_SECONDS
    raw_timeout = os.getenv(ENV_TIMEOUT)
    if raw_timeout:
      try:
        timeout = float(raw_timeout)
      except ValueError:
        logging.warning(
            "Ignoring non-numeric %s=%r; using %.0fs",
            ENV_TIMEOUT,
            raw_timeout,
            DEFAULT_TIMEOUT_SECONDS,
        )
    return cls(
        url=os.getenv(ENV_URL, ""),
        token=os.getenv(ENV_TOKEN) or None,
        model=os.getenv(ENV_MODEL, ""),
        timeout_seconds=timeout,
    )


@dataclasses.dataclass(frozen=True)
class AnalysisConfig:
  """Tuning knobs for one analysis run.

  Attributes:
    chunk_threshold: Texts longer than this many characters are chunked.
    chunk_size: Target characters per chunk.
    max_tokens_per_sentence: Token cap per sentence in the token table.
    max_prompt_sentences: Sentences described in a prompt.
    merge_limits: Caps on merged evidence.
    extraction_temperature: Sampling temperature of the first pass.
    composition_temperature: Sampling temperature of the second pass.
    max_workers: Concurrent first-pass calls when chunking.
  """

  chunk_threshold: int = 2000
  chunk_size: int = chunking.DEFAULT_CHUNK_SIZE
  max_tokens_per_sentence: int = segmenter.DEFAULT_MAX_TOKENS_PER_SENTENCE
  max_prompt_sentences: int = codec.DEFAULT_MAX_PROMPT_SENTENCES
  merge_limits: merging.MergeLimits = merging.MergeLimits()
  extraction_temperature: float = 0.1
  composition_temperature: float = 0.3
  max_workers: int = 4
