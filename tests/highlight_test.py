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

from spanground import data
from spanground import highlight


def _span(text, start, end):
  return data.ResolvedSpan(text=text[start:end], start=start, end=end)


class ToSegmentsTest(parameterized.TestCase):

  def test_gap_filled_segments(self):
    text = "I left early. It rained. I stayed in."
    spans = [_span(text, 14, 24), _span(text, 0, 13)]

    segments = highlight.to_segments(text, spans)

    self.assertEqual("".join(s.text for s in segments), text)
    self.assertEqual(
        [(s.text, s.is_highlight, s.range_id) for s in segments],
        [
            ("I left early.", True, "q1"),
            (" ", False, None),
            ("It rained.", True, "q0"),
            (" I stayed in.", False, None),
        ],
    )

  @parameterized.named_parameters(
      dict(testcase_name="no_spans", ranges=[]),
      dict(testcase_name="overlapping", ranges=[(0, 10), (5, 15), (6, 8)]),
      dict(testcase_name="out_of_bounds", ranges=[(-5, 3), (18, 99)]),
      dict(testcase_name="empty_and_reversed", ranges=[(4, 4), (9, 2)]),
  )
  def test_segments_reconstruct_text_without_overlap(self, ranges):
    text = "abcdefghijklmnopqrst"
    spans = [
        data.ResolvedSpan(text="", start=start, end=end) for start, end in ranges
    ]
    segments = highlight.to_segments(text, spans)

    self.assertEqual("".join(s.text for s in segments), text)
    for segment in segments:
      self.assertNotEmpty(segment.text)
    for prev, cur in zip(segments, segments[1:]):
      self.assertFalse(prev.is_highlight is False and cur.is_highlight is False)

  def test_overlap_is_clipped(self):
    text = "abcdefghijklmno"
    segments = highlight.to_segments(
        text, [_span(text, 0, 10), _span(text, 5, 15)]
    )
    self.assertEqual(
        [(s.text, s.range_id) for s in segments],
        [("abcdefghij", "q0"), ("klmno", "q1")],
    )

  def test_accepts_quotes(self):
    text = "Hello there."
    quote = data.Quote(_span(text, 0, 5))
    segments = highlight.to_segments(text, [quote])
    self.assertEqual(segments[0], data.TextSegment("Hello", True, "q0", "quote"))

  def test_is_deterministic(self):
    text = "One two three."
    spans = [_span(text, 4, 7)]
    self.assertEqual(
        highlight.to_segments(text, spans), highlight.to_segments(text, spans)
    )


class SegmentsToHtmlTest(absltest.TestCase):

  def test_escapes_and_wraps(self):
    text = "a <b> & c"
    segments = highlight.to_segments(text, [_span(text, 2, 5)])
    self.assertEqual(
        highlight.segments_to_html(segments),
        'a <span class="quote-highlight" data-range-id="q0"'
        ' data-range-kind="quote">&lt;b&gt;</span> &amp; c',
    )


if __name__ == "__main__":
  absltest.main()
