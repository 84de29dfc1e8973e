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


import copy
import json

from absl.testing import absltest
from absl.testing import parameterized

from spanground import data
from spanground import exceptions
from spanground import validation

_RELATION = data.Relation(
    type=data.RelationType.CONTRADICTION,
    sid_a=1,
    sid_b=3,
    note="claim vs action",
    confidence=0.8,
)


def _first_pass(sids=(1, 2, 3, 5, 8)):
  quotes = [
      data.Quote(
          data.ResolvedSpan(
              text=f"s{sid}", start=sid * 10, end=sid * 10 + 2, sids=(sid,)
          )
      )
      for sid in sids
  ]
  return data.FirstPass(quotes=quotes, relations=[_RELATION])


def _payload(**overrides):
  payload = {
      "summary": "I felt torn today.",
      "narrativeSummary": "I wanted to call, then waited.",
      "observation": "The wish and the rule pull apart.",
      "sentiment": {"score": -0.2, "label": "mixed", "rationaleSid": 3},
      "rationales": [{"sid": 1, "why": "the wish"}, {"sid": 8, "why": "the choice"}],
      "micro": {"nextAction": "Write it down", "question": "What would help?"},
      "trace": {
          "usedThemes": ["family"],
          "usedEntities": ["Dave"],
          "usedQuoteSids": [1, 8],
      },
      "surfacedRelations": [
          {
              "type": "contradiction",
              "sidA": 1,
              "sidB": 3,
              "note": "claim vs action",
              "confidence": 0.8,
          }
      ],
  }
  payload.update(overrides)
  return payload


class ValidateSecondPassTest(parameterized.TestCase):

  def test_valid_output(self):
    output = validation.validate_second_pass(_payload(), _first_pass())

    self.assertEqual(output.summary, "I felt torn today.")
    self.assertEqual([r.sid for r in output.rationales], [1, 8])
    self.assertEqual(output.sentiment, data.Sentiment(-0.2, "mixed", 3))
    self.assertEqual(output.trace.used_quote_sids, (1, 8))
    self.assertEqual(output.surfaced_relations, [_RELATION])
    self.assertEmpty(output.warnings)

  def test_accepts_fenced_text(self):
    raw = "```json\n" + json.dumps(_payload()) + "\n```"
    output = validation.validate_second_pass(raw, _first_pass())
    self.assertEqual(output.micro.next_action, "Write it down")

  def test_unparseable_text_raises(self):
    with self.assertRaises(exceptions.ParseFailureError):
      validation.validate_second_pass("no json here", _first_pass())

  def test_invalid_rationale_sid(self):
    payload = _payload(rationales=[{"sid": 99, "why": "x"}])
    with self.assertRaises(exceptions.InvalidRationaleSidError) as cm:
      validation.validate_second_pass(payload, _first_pass())
    self.assertEqual(cm.exception.sid, 99)

  def test_empty_quote_sid_list(self):
    with self.assertRaises(exceptions.NoGroundingEvidenceError):
      validation.validate_second_pass(_payload(), _first_pass(sids=()))

  @parameterized.named_parameters(
      dict(testcase_name="missing", field="narrativeSummary", value=None),
      dict(testcase_name="empty", field="summary", value="   "),
      dict(testcase_name="wrong_type", field="observation", value=["x"]),
  )
  def test_missing_core_fields(self, field, value):
    payload = _payload()
    if value is None:
      del payload[field]
    else:
      payload[field] = value
    with self.assertRaises(exceptions.MissingCoreFieldsError) as cm:
      validation.validate_second_pass(payload, _first_pass())
    self.assertEqual(cm.exception.missing, [field])

  @parameterized.named_parameters(
      dict(testcase_name="unknown_sid", sentiment={"score": 0.1, "rationaleSid": 4}),
      dict(testcase_name="missing_sid", sentiment={"score": 0.1}),
      dict(testcase_name="missing_sentiment", sentiment=None),
  )
  def test_invalid_sentiment_rationale(self, sentiment):
    payload = _payload(sentiment=sentiment)
    with self.assertRaises(exceptions.InvalidSentimentRationaleError):
      validation.validate_second_pass(payload, _first_pass())

  def test_rationale_checked_before_sentiment(self):
    payload = _payload(
        rationales=[{"sid": 42}], sentiment={"rationaleSid": 43}
    )
    with self.assertRaises(exceptions.InvalidRationaleSidError):
      validation.validate_second_pass(payload, _first_pass())

  @parameterized.named_parameters(
      dict(testcase_name="action_over", action="a" * 60, question="q?"),
      dict(testcase_name="question_over", action="go", question="b" * 100),
      dict(testcase_name="both_over", action="c" * 51, question="d" * 81),
  )
  def test_micro_fields_are_truncated(self, action, question):
    payload = _payload(micro={"nextAction": action, "question": question})
    output = validation.validate_second_pass(payload, _first_pass())

    self.assertLessEqual(len(output.micro.next_action), 50)
    self.assertLessEqual(len(output.micro.question), 80)
    if len(action) > 50:
      self.assertEqual(output.micro.next_action, action[:47] + "...")
    if len(question) > 80:
      self.assertEqual(output.micro.question, question[:77] + "...")
    self.assertNotEmpty(output.warnings)

  def test_limit_length_is_not_truncated(self):
    payload = _payload(micro={"nextAction": "e" * 50, "question": "f" * 80})
    output = validation.validate_second_pass(payload, _first_pass())
    self.assertEqual(output.micro.next_action, "e" * 50)
    self.assertEqual(output.micro.question, "f" * 80)

  def test_ungrounded_relation_is_kept_with_warning(self):
    payload = _payload(
        surfacedRelations=[
            {"type": "pattern", "sidA": 2, "note": "made up", "confidence": 0.5}
        ]
    )
    output = validation.validate_second_pass(payload, _first_pass())
    self.assertLen(output.surfaced_relations, 1)
    self.assertLen(output.warnings, 1)
    self.assertIn("not found in first pass", output.warnings[0])

  def test_malformed_relation_is_kept_with_warning(self):
    raw_relation = {"type": "causal", "sidA": 1, "note": "x"}
    payload = _payload(surfacedRelations=[raw_relation, {"type": "pattern"}])
    output = validation.validate_second_pass(payload, _first_pass())

    self.assertEqual(
        output.surfaced_relations, [raw_relation, {"type": "pattern"}]
    )
    self.assertLen(output.warnings, 2)
    self.assertIn("malformed", output.warnings[0])
    self.assertEqual(
        data.to_wire(output)["surfacedRelations"][0], raw_relation
    )

  def test_malformed_rationale_sid_is_a_typed_error(self):
    payload = _payload(rationales=[{"sid": "--1", "why": "x"}])
    with self.assertRaises(exceptions.InvalidRationaleSidError) as cm:
      validation.validate_second_pass(payload, _first_pass())
    self.assertIsNone(cm.exception.sid)

  def test_sentiment_label_derived_from_score(self):
    payload = _payload(
        sentiment={"score": -3, "label": "furious", "rationaleSid": 1}
    )
    output = validation.validate_second_pass(payload, _first_pass())
    self.assertEqual(output.sentiment.score, -1.0)
    self.assertEqual(output.sentiment.label, "negative")

  def test_first_pass_is_not_mutated(self):
    first_pass = _first_pass()
    before = copy.deepcopy(first_pass)
    validation.validate_second_pass(
        _payload(micro={"nextAction": "z" * 90, "question": "y" * 90}),
        first_pass,
    )
    self.assertEqual(first_pass, before)


if __name__ == "__main__":
  absltest.main()
