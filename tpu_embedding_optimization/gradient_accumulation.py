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
"""Gradient accumulation policy.

With gradient accumulation the gradients of a minibatch are first summed into
a temporary slot and then applied once using the optimization algorithm,
instead of applying the algorithm once per gradient.
"""

import dataclasses
import enum

from tpu_embedding_optimization import algorithms
from tpu_embedding_optimization import errors

NON_LAZY_ADAM_WARNING = (
    'non-lazy Adam without gradient accumulation yields incorrect updates'
)


class GradientAccumulationStatus(enum.Enum):
  """Gradient accumulation status; UNSPECIFIED means ENABLED."""

  UNSPECIFIED = 0
  ENABLED = 1
  DISABLED = 2


@dataclasses.dataclass(frozen=True)
class GradientAccumulation:
  enabled: bool
  warnings: tuple[str, ...] = ()


def resolve(
    status: GradientAccumulationStatus,
    algorithm: algorithms.Algorithm,
    use_non_lazy_adam: bool | None = None,
) -> GradientAccumulation:
  """Resolves the gradient accumulation status to a boolean.

  Args:
    status: Configured status.
    algorithm: The table's optimization algorithm.
    use_non_lazy_adam: Whether non-lazy Adam is used. Defaults to the
      `use_non_lazy_adam` field of `algorithm` when it is Adam.

  Returns:
    Whether gradient accumulation is enabled, and any warnings about the
    combination with `algorithm`.

  Raises:
    ConfigurationError: if `status` is not a GradientAccumulationStatus.
  """
  try:
    status = GradientAccumulationStatus(status)
  except ValueError:
    raise errors.ConfigurationError(
        f'Unknown gradient accumulation status: {status!r}.'
    ) from None
  enabled = status != GradientAccumulationStatus.DISABLED

  is_adam = isinstance(algorithm, algorithms.AdamParameters)
  if use_non_lazy_adam is None:
    use_non_lazy_adam = is_adam and algorithm.use_non_lazy_adam

  warnings = []
  # Soft constraint; this may become an error in the future.
  if is_adam and use_non_lazy_adam and not enabled:
    warnings.append(NON_LAZY_ADAM_WARNING)
  return GradientAccumulation(enabled=enabled, warnings=tuple(warnings))
