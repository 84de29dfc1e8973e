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

"""SpanGround: grounded evidence extraction from free-form text.

Typical use:

  import spanground

  analyzer = spanground.InsightAnalyzer.from_config(
      spanground.LLMConfig.from_env()
  )
  if analyzer.is_configured:
    result = analyzer.analyze(entry_text)
"""

from __future__ import annotations

from spanground import chunking
from spanground import codec
from spanground import data
from spanground import exceptions
from spanground import highlight
from spanground import merging
from spanground import normalize
from spanground import resolver
from spanground import segmenter
from spanground import validation
from spanground.analysis import InsightAnalyzer
from spanground.config import AnalysisConfig
from spanground.config import LLMConfig
from spanground.inference import BaseLanguageModel
from spanground.inference import OpenAICompatibleLanguageModel
from spanground.merging import MergeLimits

__all__ = [
    "AnalysisConfig",
    "BaseLanguageModel",
    "InsightAnalyzer",
    "LLMConfig",
    "MergeLimits",
    "OpenAICompatibleLanguageModel",
    "chunking",
    "codec",
    "data",
    "exceptions",
    "highlight",
    "merging",
    "normalize",
    "resolver",
    "segmenter",
    "validation",
]
