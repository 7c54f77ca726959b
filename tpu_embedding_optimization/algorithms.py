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
"""Parameters of the embedding optimization algorithms.

Exactly one of the parameter records below selects the algorithm used to
update a table. The records are plain frozen dataclasses and `Algorithm` is
their union; code that needs per-algorithm behavior dispatches on the record
type (see `state_variables.resolve`) instead of relying on methods here.
"""

from __future__ import annotations

import dataclasses
import numbers
from typing import Any, TypeAlias, Union

import numpy as np
from tpu_embedding_optimization import errors


@dataclasses.dataclass(frozen=True, kw_only=True)
class SGDParameters:
  """Stochastic gradient descent. No hyperparameters besides learning rate."""


@dataclasses.dataclass(frozen=True, kw_only=True)
class AdagradParameters:
  """Adagrad.

  Attributes:
    initial_accumulator: Initial value of the accumulator slot.
  """

  initial_accumulator: float = 0.1


@dataclasses.dataclass(frozen=True, kw_only=True)
class BoundedAdagradParameters:
  """Adagrad with bounds on the variable update and the accumulator.

  Attributes:
    update_accumulator_first: Whether the updated (True) or the old value of the
      accumulator is used to compute the effective learning rate.
    max_var_update: Limit on the magnitude of the variable update. 0 disables
      the limit.
    max_accumulator: Limit on the accumulator value. 0 disables the limit.
    initial_accumulator: Initial value of the accumulator slot.
  """

  update_accumulator_first: bool = False
  max_var_update: float = 0.0
  max_accumulator: float = 0.0
  initial_accumulator: float = 0.1


@dataclasses.dataclass(frozen=True, kw_only=True)
class FTRLParameters:
  """Follow The Regularized Leader.

  Attributes:
    l1: L1 regularization strength, must be >= 0.
    l2: L2 regularization strength, must be >= 0.
    lr_power: Learning rate power, typically -0.5.
    initial_accum: Initial value of the accumulator slot.
    initial_linear: Initial value of the linear slot.
  """

  l1: float = 0.0
  l2: float = 0.0
  lr_power: float = -0.5
  initial_accum: float = 0.1
  initial_linear: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class AdamParameters:
  """Adam.

  The lazy variant is used unless `use_non_lazy_adam` is set, in which case
  every row of the table is updated, including rows absent from the
  minibatch. Non-lazy Adam needs gradient accumulation to produce correct
  updates.

  Attributes:
    beta1: Decay rate of the first moment estimates.
    beta2: Decay rate of the second moment estimates.
    epsilon: Small constant for numerical stability.
    initial_m: Initial value of the first moment slot.
    initial_v: Initial value of the second moment slot.
    use_non_lazy_adam: Whether to update rows that are not in the minibatch.
    use_sum_inside_sqrt: Use m / sqrt(v + epsilon**2) instead of
      m / (sqrt(v) + epsilon).
  """

  beta1: float = 0.9
  beta2: float = 0.999
  epsilon: float = 1e-07
  initial_m: float = 0.0
  initial_v: float = 0.0
  use_non_lazy_adam: bool = False
  use_sum_inside_sqrt: bool = True


@dataclasses.dataclass(frozen=True, kw_only=True)
class MomentumParameters:
  momentum: float = 0.9
  use_nesterov: bool = False
  initial_accum: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class RMSPropParameters:
  rho: float = 0.9
  momentum: float = 0.0
  epsilon: float = 1e-10
  initial_ms: float = 0.0
  initial_mom: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class CenteredRMSPropParameters:
  rho: float = 0.9
  momentum: float = 0.0
  epsilon: float = 1e-10
  initial_ms: float = 0.0
  initial_mom: float = 0.0
  initial_mg: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class MdlAdagradLightParameters:
  """Variant of the MDL Adagrad algorithm (Shamir, 2015).

  Only `initial_weight`, `initial_accumulator` and `initial_benefit` describe
  state; the remaining fields are consumed by the update itself.
  """

  l2: float = 0.0
  lr_power: float = -0.5
  min_servable_mdl_benefit: float = 0.0
  mdl_mix_in_margin: float = 0.0
  mdl_benefit_rampup_coeff: float = 0.0
  mdl_min_weight: float = 0.0
  benefit_revisit_scale: float = 0.0
  max_event_benefit: float = 0.0
  max_total_benefit: float = 0.0
  mdl_hard_limit: float = 0.0
  hard_limit_min_benefit: bool = False
  mdl_regularize: bool = False
  initial_accumulator: float = 0.1
  initial_weight: float = 0.0
  initial_benefit: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class AdadeltaParameters:
  rho: float = 0.95
  epsilon: float = 1e-07
  initial_accumulator: float = 0.0
  initial_update: float = 0.0


@dataclasses.dataclass(frozen=True, kw_only=True)
class ProximalAdagradParameters:
  l1: float = 0.0
  l2: float = 0.0
  initial_accumulator: float = 0.1


Algorithm: TypeAlias = Union[
    SGDParameters,
    AdagradParameters,
    BoundedAdagradParameters,
    FTRLParameters,
    AdamParameters,
    MomentumParameters,
    RMSPropParameters,
    CenteredRMSPropParameters,
    MdlAdagradLightParameters,
    AdadeltaParameters,
    ProximalAdagradParameters,
]

# Field names of the `parameters` oneof in the TPU embedding
# OptimizationParameters message.
ONEOF_FIELD_NAMES: dict[type[Any], str] = {
    AdagradParameters: 'adagrad',
    BoundedAdagradParameters: 'bounded_adagrad',
    SGDParameters: 'stochastic_gradient_descent',
    FTRLParameters: 'ftrl',
    AdamParameters: 'adam',
    MomentumParameters: 'momentum',
    RMSPropParameters: 'rms_prop',
    CenteredRMSPropParameters: 'centered_rms_prop',
    MdlAdagradLightParameters: 'mdl_adagrad_light',
    AdadeltaParameters: 'adadelta',
    ProximalAdagradParameters: 'proximal_adagrad',
}
_TYPES_BY_FIELD_NAME = {name: t for t, name in ONEOF_FIELD_NAMES.items()}


def is_algorithm(value: Any) -> bool:
  return type(value) in ONEOF_FIELD_NAMES


def algorithm_name(algorithm: Algorithm) -> str:
  """Returns the oneof field name of `algorithm`, e.g. "adam"."""
  try:
    return ONEOF_FIELD_NAMES[type(algorithm)]
  except KeyError:
    raise errors.UnknownAlgorithmError(
        f'{algorithm!r} is not an optimization algorithm. Expected one of '
        f'{sorted(ONEOF_FIELD_NAMES.values())}.'
    ) from None


def select_algorithm(**fields: Algorithm | None) -> Algorithm:
  """Returns the single populated algorithm out of oneof-style fields.

  Example:
    select_algorithm(adagrad=None, adam=AdamParameters())  # -> the Adam record

  Args:
    **fields: Parameter records keyed by their oneof field name. Fields set to
      None are treated as not populated.

  Returns:
    The populated parameter record.

  Raises:
    UnknownAlgorithmError: if no field is populated, a field name is unknown or
      a record does not match its field.
    AmbiguousAlgorithmError: if more than one field is populated.
  """
  populated = {}
  for field_name, value in fields.items():
    if field_name not in _TYPES_BY_FIELD_NAME:
      raise errors.UnknownAlgorithmError(
          f'Unknown optimization algorithm field: {field_name}.'
      )
    if value is None:
      continue
    if not isinstance(value, _TYPES_BY_FIELD_NAME[field_name]):
      raise errors.UnknownAlgorithmError(
          f'Field {field_name} expects '
          f'{_TYPES_BY_FIELD_NAME[field_name].__name__}, got '
          f'{type(value).__name__}.'
      )
    populated[field_name] = value

  if not populated:
    raise errors.UnknownAlgorithmError('No optimization algorithm selected.')
  if len(populated) > 1:
    raise errors.AmbiguousAlgorithmError(
        'Exactly one optimization algorithm must be selected, got: '
        f'{sorted(populated)}.'
    )
  return next(iter(populated.values()))


def _check_non_negative(algorithm: Algorithm, *field_names: str) -> None:
  for field_name in field_names:
    value = getattr(algorithm, field_name)
    if value < 0:
      raise errors.InvalidHyperparameterError(
          f'{algorithm_name(algorithm)}.{field_name} must be >= 0, got {value}.'
      )


def check_hyperparameters(algorithm: Algorithm) -> None:
  """Checks the update-time hyperparameters of `algorithm`.

  Initial values are not checked here; they become state variables and are
  checked by the validator once resolved.

  Args:
    algorithm: The parameter record to check.

  Raises:
    InvalidHyperparameterError: if a hyperparameter is outside its domain.
    UnknownAlgorithmError: if `algorithm` is not a parameter record.
  """
  name = algorithm_name(algorithm)
  for field in dataclasses.fields(algorithm):
    value = getattr(algorithm, field.name)
    if field.name.startswith('initial_') or isinstance(value, bool):
      continue
    if not isinstance(value, numbers.Real) or not np.isfinite(value):
      raise errors.InvalidHyperparameterError(
          f'{name}.{field.name} must be a finite number, got {value!r}.'
      )

  if isinstance(algorithm, BoundedAdagradParameters):
    # 0 disables the bound.
    _check_non_negative(algorithm, 'max_var_update', 'max_accumulator')
  elif isinstance(algorithm, (FTRLParameters, ProximalAdagradParameters)):
    _check_non_negative(algorithm, 'l1', 'l2')
