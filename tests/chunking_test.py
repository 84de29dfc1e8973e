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

from spanground import chunking


class ChunkTextTest(parameterized.TestCase):

  def assertTiles(self, text, chunks):
    self.assertEqual("".join(c.text for c in chunks), text)
    offset = 0
    for index, chunk in enumerate(chunks):
      self.assertEqual(chunk.index, index)
      self.assertEqual(chunk.start_offset, offset)
      offset = chunk.end_offset

  def test_short_text_is_one_chunk(self):
    chunks = chunking.chunk_text("A short entry.", chunk_size=100)
    self.assertLen(chunks, 1)
    self.assertEqual(chunks[0].text, "A short entry.")

  def test_empty_text(self):
    self.assertEqual(chunking.chunk_text(""), [])

  @parameterized.named_parameters(
      dict(testcase_name="small", chunk_size=37),
      dict(testcase_name="medium", chunk_size=100),
      dict(testcase_name="large", chunk_size=1000),
  )
  def test_chunks_tile_text_and_end_on_whitespace(self, chunk_size):
    text = " ".join(f"word{i}" for i in range(500))
    chunks = chunking.chunk_text(text, chunk_size=chunk_size)

    self.assertTiles(text, chunks)
    for chunk in chunks[:-1]:
      self.assertTrue(chunk.text[-1].isspace(), repr(chunk.text[-6:]))
      self.assertLessEqual(len(chunk.text), chunk_size)

  def test_cuts_after_line_break(self):
    text = "a" * 60 + "\n\n" + "b" * 30
    chunks = chunking.chunk_text(text, chunk_size=80)
    self.assertTiles(text, chunks)
    self.assertEqual(chunks[0].text, "a" * 60 + "\n\n")

  def test_never_splits_a_long_word(self):
    text = "x" * 250 + " tail"
    chunks = chunking.chunk_text(text, chunk_size=100)
    self.assertTiles(text, chunks)
    self.assertEqual(chunks[0].text, "x" * 250 + " ")

  def test_rejects_non_positive_size(self):
    with self.assertRaises(ValueError):
      chunking.chunk_text("text", chunk_size=0)


if __name__ == "__main__":
  absltest.main()
