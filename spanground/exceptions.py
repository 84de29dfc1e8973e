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

"""Exceptions raised by SpanGround.

Only grounding violations, unrecoverable parse failures and language-model
collaborator failures are raised. Malformed content (bad confidence values,
missing optional fields) is clamped or defaulted instead.
"""

from __future__ import annotations


class SpanGroundError(Exception):
  """Base class for all SpanGround errors."""


class ParseFailureError(SpanGroundError):
  """A model response could not be decoded as JSON after all repairs."""


class ValidationFailureError(SpanGroundError):
  """A second-pass output violates the first-pass grounding contract."""


class MissingCoreFieldsError(ValidationFailureError):
  """One of summary, narrativeSummary or observation is missing or empty."""

  def __init__(self, missing: list[str]):
    self.missing = list(missing)
    super().__init__(f"Missing core fields: {', '.join(self.missing)}")


class NoGroundingEvidenceError(ValidationFailureError):
  """The first pass has no quote sentence ids, so nothing can be cited."""

  def __init__(self):
    super().__init__("No quoteSidList in first pass")


class InvalidRationaleSidError(ValidationFailureError):
  """A rationale cites a sentence id that is not in the first pass."""

  def __init__(self, sid):
    self.sid = sid
    super().__init__(f"Invalid rationale sid: {sid}")


class InvalidSentimentRationaleError(ValidationFailureError):
  """sentiment.rationaleSid is not in the first pass."""

  def __init__(self, sid):
    self.sid = sid
    super().__init__(f"Invalid sentiment.rationaleSid: {sid}")


class InferenceError(SpanGroundError):
  """Base class for language-model collaborator failures."""


class LLMConfigError(InferenceError):
  """No model endpoint or model name is configured."""


class LLMTimeoutError(InferenceError):
  """The model call exceeded its deadline and was aborted."""


class LLMRuntimeError(InferenceError):
  """The model endpoint returned an error or could not be reached."""


class AnalysisCancelledError(InferenceError):
  """The caller cancelled the analysis run."""


__all__ = [
    "SpanGroundError",
    "ParseFailureError",
    "ValidationFailureError",
    "MissingCoreFieldsError",
    "NoGroundingEvidenceError",
    "InvalidRationaleSidError",
    "InvalidSentimentRationaleError",
    "InferenceError",
    "LLMConfigError",
    "LLMTimeoutError",
    "LLMRuntimeError",
    "AnalysisCancelledError",
]
