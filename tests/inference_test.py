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


import http.server
import json
import os
import threading
import time
from unittest import mock

from absl.testing import absltest
from absl.testing import parameterized
import requests

from spanground import config
from spanground import exceptions
from spanground import inference

_CONFIG = config.LLMConfig(
    url="https://llm.example/v1/chat/completions",
    token="secret",
    model="test-model",
    timeout_seconds=12.0,
)


def _session_returning(body):
  session = mock.create_autospec(requests.Session, instance=True)
  response = mock.create_autospec(requests.Response, instance=True)
  response.json.return_value = body
  session.post.return_value = response
  return session


class OpenAICompatibleLanguageModelTest(absltest.TestCase):

  def test_ask_posts_chat_request(self):
    session = _session_returning(
        {"choices": [{"message": {"content": '{"quotes": []}'}}]}
    )
    model = inference.OpenAICompatibleLanguageModel(_CONFIG, session=session)

    text = model.ask("prompt text", system="be precise", temperature=0.1)

    self.assertEqual(text, '{"quotes": []}')
    session.post.assert_called_once_with(
        _CONFIG.url,
        json={
            "model": "test-model",
            "messages": [
                {"role": "system", "content": "be precise"},
                {"role": "user", "content": "prompt text"},
            ],
            "temperature": 0.1,
        },
        headers={
            "Content-Type": "application/json",
            "Authorization": "Bearer secret",
        },
        timeout=12.0,
    )

  def test_no_authorization_without_token(self):
    session = _session_returning({"output": "ok"})
    llm_config = config.LLMConfig(url="http://localhost:1234", model="m")
    model = inference.OpenAICompatibleLanguageModel(llm_config, session=session)

    self.assertEqual(model.ask("p", system="s", temperature=0.0), "ok")
    headers = session.post.call_args.kwargs["headers"]
    self.assertNotIn("Authorization", headers)

  def test_timeout_is_distinct(self):
    session = mock.create_autospec(requests.Session, instance=True)
    session.post.side_effect = requests.exceptions.Timeout("slow")
    model = inference.OpenAICompatibleLanguageModel(_CONFIG, session=session)

    with self.assertRaises(exceptions.LLMTimeoutError):
      model.ask("p", system="s", temperature=0.0)

  def test_other_failures_are_runtime_errors(self):
    session = mock.create_autospec(requests.Session, instance=True)
    session.post.side_effect = requests.exceptions.ConnectionError("down")
    model = inference.OpenAICompatibleLanguageModel(_CONFIG, session=session)

    with self.assertRaises(exceptions.LLMRuntimeError):
      model.ask("p", system="s", temperature=0.0)

  def test_http_error_is_runtime_error(self):
    session = _session_returning({})
    session.post.return_value.raise_for_status.side_effect = (
        requests.exceptions.HTTPError("500")
    )
    model = inference.OpenAICompatibleLanguageModel(_CONFIG, session=session)

    with self.assertRaises(exceptions.LLMRuntimeError):
      model.ask("p", system="s", temperature=0.0)

  def test_unconfigured_raises_before_any_call(self):
    with self.assertRaises(exceptions.LLMConfigError):
      inference.OpenAICompatibleLanguageModel(config.LLMConfig())


class _SlowHandler(http.server.BaseHTTPRequestHandler):
  """Holds every request until the server's `release` event is set."""

  def do_POST(self):  # pylint: disable=invalid-name
    self.rfile.read(int(self.headers.get("Content-Length", 0)))
    self.server.release.wait(10)
    body = json.dumps({"output": "late"}).encode("utf-8")
    self.send_response(200)
    self.send_header("Content-Type", "application/json")
    self.send_header("Content-Length", str(len(body)))
    self.end_headers()
    self.wfile.write(body)

  def log_message(self, *args):
    del args


class SlowEndpointTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self._server = http.server.ThreadingHTTPServer(
        ("127.0.0.1", 0), _SlowHandler
    )
    self._server.daemon_threads = True
    self._server.release = threading.Event()
    threading.Thread(target=self._server.serve_forever, daemon=True).start()

  def tearDown(self):
    self._server.release.set()
    self._server.shutdown()
    self._server.server_close()
    super().tearDown()

  def _model(self, timeout_seconds):
    host, port = self._server.server_address[:2]
    return inference.OpenAICompatibleLanguageModel(
        config.LLMConfig(
            url=f"http://{host}:{port}/v1/chat/completions",
            model="slow",
            timeout_seconds=timeout_seconds,
        )
    )

  def test_cancel_aborts_blocked_call(self):
    model = self._model(timeout_seconds=30.0)
    timer = threading.Timer(0.2, model.cancel)
    timer.start()
    self.addCleanup(timer.cancel)

    start = time.monotonic()
    with self.assertRaises(exceptions.AnalysisCancelledError):
      model.ask("p", system="s", temperature=0.0)
    self.assertLess(time.monotonic() - start, 5.0)

    self._server.release.set()
    self.assertEqual(model.ask("p", system="s", temperature=0.0), "late")

  def test_deadline_aborts_blocked_call(self):
    model = self._model(timeout_seconds=0.3)

    start = time.monotonic()
    with self.assertRaises(exceptions.LLMTimeoutError):
      model.ask("p", system="s", temperature=0.0)
    self.assertLess(time.monotonic() - start, 5.0)


class ExtractTextTest(parameterized.TestCase):

  @parameterized.named_parameters(
      dict(
          testcase_name="chat",
          body={"choices": [{"message": {"content": "a"}}]},
          expected="a",
      ),
      dict(
          testcase_name="completion",
          body={"choices": [{"text": "b"}]},
          expected="b",
      ),
      dict(testcase_name="response", body={"response": "c"}, expected="c"),
      dict(testcase_name="content", body={"content": "d"}, expected="d"),
      dict(testcase_name="plain_string", body="e", expected="e"),
  )
  def test_extract_text(self, body, expected):
    self.assertEqual(inference.extract_text(body), expected)

  def test_missing_text_raises(self):
    with self.assertRaises(exceptions.LLMRuntimeError):
      inference.extract_text({"choices": []})


class LLMConfigTest(absltest.TestCase):

  @mock.patch.dict(
      os.environ,
      {
          config.ENV_URL: "http://localhost:8080/v1/chat/completions",
          config.ENV_MODEL: "local",
          config.ENV_TOKEN: "",
          config.ENV_TIMEOUT: "30",
      },
  )
  def test_from_env(self):
    llm_config = config.LLMConfig.from_env(load_dotenv=False)
    self.assertTrue(llm_config.is_configured)
    self.assertIsNone(llm_config.token)
    self.assertEqual(llm_config.timeout_seconds, 30.0)

  @mock.patch.dict(
      os.environ,
      {config.ENV_URL: "http://x", config.ENV_TIMEOUT: "soon"},
      clear=True,
  )
  def test_bad_timeout_and_missing_model(self):
    llm_config = config.LLMConfig.from_env(load_dotenv=False)
    self.assertFalse(llm_config.is_configured)
    self.assertEqual(
        llm_config.timeout_seconds, config.DEFAULT_TIMEOUT_SECONDS
    )


if __name__ == "__main__":
  absltest.main()
