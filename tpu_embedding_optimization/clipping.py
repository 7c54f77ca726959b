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
"""Clipping limits for embedding weights and gradients."""

import dataclasses
import numbers

import numpy as np
from tpu_embedding_optimization import errors


@dataclasses.dataclass(frozen=True)
class ClippingLimits:
  """Limits to clip values to; an unset bound means no limit on that side."""

  lower: float | None = None
  upper: float | None = None


UNBOUNDED = ClippingLimits(lower=-np.inf, upper=np.inf)


def resolve(
    lower: float | None = None, upper: float | None = None
) -> ClippingLimits:
  """Resolves optional clipping bounds.

  Args:
    lower: Lower bound, or None for -inf.
    upper: Upper bound, or None for +inf.

  Returns:
    ClippingLimits with both bounds set.

  Raises:
    InvalidRangeError: if a bound is NaN or not a number, or if
      `lower > upper`.
  """
  for bound_name, bound in (('lower', lower), ('upper', upper)):
    if bound is None:
      continue
    if isinstance(bound, bool) or not isinstance(bound, numbers.Real):
      raise errors.InvalidRangeError(
          f'Clipping {bound_name} bound must be a number, got {bound!r}.'
      )
    if np.isnan(bound):
      raise errors.InvalidRangeError(
          f'Clipping {bound_name} bound must not be NaN.'
      )
  if lower is not None and upper is not None and lower > upper:
    raise errors.InvalidRangeError(
        f'Clipping lower bound {lower} is greater than upper bound {upper}.'
    )
  return ClippingLimits(
      lower=-np.inf if lower is None else float(lower),
      upper=np.inf if upper is None else float(upper),
  )


def resolve_limits(limits: ClippingLimits | None) -> ClippingLimits:
  """Resolves `limits`, where None means no clipping at all."""
  if limits is None:
    return UNBOUNDED
  return resolve(limits.lower, limits.upper)
