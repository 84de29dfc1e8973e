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


from absl.testing import absltest
from absl.testing import parameterized

from spanground import normalize


class NormalizeForStorageTest(parameterized.TestCase):

  @parameterized.named_parameters(
      dict(testcase_name="crlf", text="a\r\nb", expected="a\nb"),
      dict(testcase_name="lone_cr", text="a\rb\rc", expected="a\nb\nc"),
      dict(testcase_name="nfc", text="cafe\u0301", expected="caf\u00e9"),
      dict(testcase_name="keeps_glyphs", text="“ok”", expected="“ok”"),
      dict(testcase_name="keeps_spacing", text="  a  b ", expected="  a  b "),
  )
  def test_normalize_for_storage(self, text, expected):
    self.assertEqual(normalize.normalize_for_storage(text), expected)

  def test_unsupported_input_returned_unchanged(self):
    self.assertIsNone(normalize.normalize_for_storage(None))
    self.assertEqual(normalize.normalize_for_matching(42), 42)


class MatchingTextTest(parameterized.TestCase):

  @parameterized.named_parameters(
      dict(
          testcase_name="quotes_and_dash",
          text="  “Hi” —  there… ",
          expected='"Hi" - there...',
      ),
      dict(
          testcase_name="apostrophes",
          text="don’t `stop`",
          expected="don't 'stop'",
      ),
      dict(
          testcase_name="line_endings",
          text="one\r\n\r\ntwo",
          expected="one two",
      ),
  )
  def test_normalize_for_matching(self, text, expected):
    self.assertEqual(normalize.normalize_for_matching(text), expected)

  def test_maps_collapsed_whitespace_back_to_source(self):
    matching = normalize.build_matching_text("a  ’b")
    self.assertEqual(matching.text, "a 'b")
    self.assertEqual(matching.to_source(2, 4), (3, 5))

  def test_maps_expanded_ellipsis_back_to_source(self):
    source = "x… y"
    matching = normalize.build_matching_text(source)
    self.assertEqual(matching.text, "x... y")
    start, end = matching.to_source(1, 4)
    self.assertEqual(source[start:end], "…")

  def test_rejects_empty_range(self):
    matching = normalize.build_matching_text("abc")
    with self.assertRaises(ValueError):
      matching.to_source(2, 2)


if __name__ == "__main__":
  absltest.main()
