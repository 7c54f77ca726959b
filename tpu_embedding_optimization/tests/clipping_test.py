# Copyright 2024 The JAX SC Authors.
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
"""Tests for clipping limits."""

import math

from absl.testing import absltest
from absl.testing import parameterized
from tpu_embedding_optimization import clipping
from tpu_embedding_optimization import errors


class ClippingTest(parameterized.TestCase):

  @parameterized.parameters(
      (None, None, -math.inf, math.inf),
      (-1.0, None, -1.0, math.inf),
      (None, 2.0, -math.inf, 2.0),
      (-1.0, 2.0, -1.0, 2.0),
      (0.5, 0.5, 0.5, 0.5),
  )
  def test_resolve(self, lower, upper, expected_lower, expected_upper):
    self.assertEqual(
        clipping.resolve(lower, upper),
        clipping.ClippingLimits(lower=expected_lower, upper=expected_upper),
    )

  def test_lower_greater_than_upper(self):
    with self.assertRaisesRegex(errors.InvalidRangeError, "greater than"):
      clipping.resolve(1.0, -1.0)

  @parameterized.parameters((math.nan, None), (None, math.nan))
  def test_nan_bound(self, lower, upper):
    with self.assertRaisesRegex(errors.InvalidRangeError, "NaN"):
      clipping.resolve(lower, upper)

  @parameterized.parameters(("-1", None), (None, [1.0]), (True, None))
  def test_non_numeric_bound(self, lower, upper):
    with self.assertRaisesRegex(errors.InvalidRangeError, "must be a number"):
      clipping.resolve(lower, upper)

  def test_resolve_limits(self):
    self.assertEqual(clipping.resolve_limits(None), clipping.UNBOUNDED)
    self.assertEqual(
        clipping.resolve_limits(clipping.ClippingLimits(upper=3.0)),
        clipping.ClippingLimits(lower=-math.inf, upper=3.0),
    )
    with self.assertRaises(errors.InvalidRangeError):
      clipping.resolve_limits(clipping.ClippingLimits(lower=3.0, upper=1.0))


if __name__ == "__main__":
  absltest.main()
