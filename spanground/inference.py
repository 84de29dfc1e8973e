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

"""Language-model collaborators.

The analysis core only needs `BaseLanguageModel.ask`: a prompt and a system
instruction in, untrusted text out.
"""

from __future__ import annotations

import abc
import threading
from typing import Any

from absl import logging
import requests

from spanground import config as config_lib
from spanground import exceptions

# Response fields tried, in order, when the body is not chat-completions shaped.
_FALLBACK_TEXT_FIELDS = ("output", "response", "content", "text")


class BaseLanguageModel(abc.ABC):
  """An abstract language model that answers one prompt at a time."""

  @abc.abstractmethod
  def ask(self, prompt: str, *, system: str, temperature: float) -> str:
    """Sends one prompt and returns the raw response text.

    Args:
      prompt: The user prompt.
      system: The system instruction.
      temperature: Sampling temperature.

    Returns:
      The response text, which may or may not contain JSON.

    Raises:
      LLMTimeoutError: If the call exceeded its deadline.
      LLMRuntimeError: If the call failed for any other reason.
      AnalysisCancelledError: If `cancel` was called while waiting.
    """

  def cancel(self) -> None:
    """Aborts in-flight calls. The default does nothing."""

  @property
  def model_name(self) -> str:
    return ""


def extract_text(body: Any) -> str:
  """Pulls the response text out of a decoded response body.

  Raises:
    LLMRuntimeError: If no text field is present.
  """
  if isinstance(body, dict):
    choices = body.get("choices")
    if isinstance(choices, list) and choices:
      choice = choices[0] if isinstance(choices[0], dict) else {}
      message = choice.get("message")
      if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
      if isinstance(choice.get("text"), str):
        return choice["text"]
    for field in _FALLBACK_TEXT_FIELDS:
      if isinstance(body.get(field), str):
        return body[field]
  elif isinstance(body, str):
    return body
  raise exceptions.LLMRuntimeError("Model response contained no text.")


class _PendingCall:
  """One in-flight request; `done` is set on completion or cancellation."""

  def __init__(self):
    self.done = threading.Event()
    self.cancelled = False
    self.text: str | None = None
    self.error: BaseException | None = None


class OpenAICompatibleLanguageModel(BaseLanguageModel):
  """Calls a chat-completions endpoint over HTTP.

  Each request runs on a daemon thread while the caller waits on it, so
  `cancel` and the request deadline release the caller immediately. A
  request abandoned that way finishes or times out in the background and
  its response is discarded.
  """

  def __init__(
      self,
      llm_config: config_lib.LLMConfig,
      session: requests.Session | None = None,
  ):
    if not llm_config.is_configured:
      raise exceptions.LLMConfigError(
          "No language-model endpoint configured; set"
          f" {config_lib.ENV_URL} and {config_lib.ENV_MODEL}."
      )
    self._config = llm_config
    self._session = session or requests.Session()
    self._pending: set[_PendingCall] = set()
    self._pending_lock = threading.Lock()

  @property
  def model_name(self) -> str:
    return self._config.model

  def _headers(self) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if self._config.token:
      headers["Authorization"] = f"Bearer {self._config.token}"
    return headers

  def _post(self, payload: dict[str, Any]) -> str:
    try:
      response = self._session.post(
          self._config.url,
          json=payload,
          headers=self._headers(),
          timeout=self._config.timeout_seconds,
      )
      response.raise_for_status()
      body = response.json()
    except requests.exceptions.Timeout as e:
      raise exceptions.LLMTimeoutError(
          f"Model call exceeded {self._config.timeout_seconds:.0f}s."
      ) from e
    except requests.exceptions.RequestException as e:
      raise exceptions.LLMRuntimeError(f"Model call failed: {e}") from e
    except ValueError as e:
      raise exceptions.LLMRuntimeError(
          "Model endpoint returned a non-JSON body."
      ) from e
    return extract_text(body)

  def _run(self, call: _PendingCall, payload: dict[str, Any]) -> None:
    try:
      call.text = self._post(payload)
    except Exception as e:  # pylint: disable=broad-exception-caught
      # Re-raised on the calling thread.
      call.error = e
    finally:
      call.done.set()

  def ask(self, prompt: str, *, system: str, temperature: float) -> str:
    payload = {
        "model": self._config.model,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature,
    }
    logging.debug(
        "POST %s model=%s prompt_chars=%d",
        self._config.url,
        self._config.model,
        len(prompt),
    )
    call = _PendingCall()
    with self._pending_lock:
      self._pending.add(call)
    try:
      threading.Thread(
          target=self._run,
          args=(call, payload),
          name="spanground-llm",
          daemon=True,
      ).start()
      finished = call.done.wait(self._config.timeout_seconds)
    finally:
      with self._pending_lock:
        self._pending.discard(call)

    if call.cancelled:
      raise exceptions.AnalysisCancelledError("Model call was cancelled.")
    if not finished:
      logging.warning(
          "Abandoning model call after %.0fs", self._config.timeout_seconds
      )
      raise exceptions.LLMTimeoutError(
          f"Model call exceeded {self._config.timeout_seconds:.0f}s."
      )
    if call.error is not None:
      raise call.error
    logging.debug("Model response (preview): %s", call.text[:500])
    return call.text

  def cancel(self) -> None:
    """Aborts every in-flight `ask`; later calls are unaffected."""
    with self._pending_lock:
      pending = list(self._pending)
    logging.info("Cancelling %d in-flight model call(s)", len(pending))
    for call in pending:
      call.cancelled = True
      call.done.set()
