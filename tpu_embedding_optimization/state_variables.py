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
"""State variables (embedding values and optimizer slots) of each algorithm."""

from __future__ import annotations

import dataclasses
import numbers
import typing
from typing import Callable, Sequence, TypeAlias

import jax
import numpy as np
from tpu_embedding_optimization import algorithms
from tpu_embedding_optimization import errors

# Standard initializers are defined in jax.nn.initializers. See
# http://jax.readthedocs.io/en/latest/jax.nn.initializers.html
CallableTableInitializer: TypeAlias = jax.nn.initializers.Initializer

PARAMETERS = 'parameters'
GRADIENT_ACCUMULATORS = 'gradient_accumulators'


@dataclasses.dataclass(frozen=True)
class UserDefined:
  """A state variable visible to users and saved in checkpoints.

  Attributes:
    padding_initial_value: Value of the padding row, which is looked up when a
      feature has no ids in a minibatch. It must keep the row an identity under
      zero gradients, so it can never be NaN or +-infinity.
  """

  padding_initial_value: float


@dataclasses.dataclass(frozen=True)
class FillWithConstant:
  """An internal state variable filled with a constant and hidden from users."""

  initial_value: float


StateVariableUsage: TypeAlias = UserDefined | FillWithConstant


@dataclasses.dataclass(frozen=True)
class StateVariableSpec:
  """Specifies one state variable of an embedding table."""

  name: str
  usage: StateVariableUsage

  @property
  def initial_value(self) -> float:
    if isinstance(self.usage, UserDefined):
      return self.usage.padding_initial_value
    return self.usage.initial_value

  def is_user_defined(self) -> bool:
    return isinstance(self.usage, UserDefined)

  def is_finite(self) -> bool:
    """Whether the initial value is a finite number; False for non-numbers."""
    value = self.initial_value
    return isinstance(value, numbers.Real) and bool(np.isfinite(value))

  def initializer(self) -> CallableTableInitializer:
    """Returns a constant initializer for this state variable."""
    return jax.nn.initializers.constant(self.initial_value)


def _user_defined(name: str, value: float) -> StateVariableSpec:
  return StateVariableSpec(name=name, usage=UserDefined(value))


def _parameters(value: float = 0.0) -> StateVariableSpec:
  return _user_defined(PARAMETERS, value)


def _sgd(unused_params: algorithms.SGDParameters):
  return (_parameters(),)


def _adagrad(
    params: (
        algorithms.AdagradParameters
        | algorithms.BoundedAdagradParameters
        | algorithms.ProximalAdagradParameters
    ),
):
  # BoundedAdagrad bounds are applied by the update, they add no slot.
  return (
      _parameters(),
      _user_defined('accumulators', params.initial_accumulator),
  )


def _ftrl(params: algorithms.FTRLParameters):
  return (
      _parameters(),
      _user_defined('accumulators', params.initial_accum),
      _user_defined('linear', params.initial_linear),
  )


def _momentum(params: algorithms.MomentumParameters):
  return (_parameters(), _user_defined('momenta', params.initial_accum))


def _adam(params: algorithms.AdamParameters):
  return (
      _parameters(),
      _user_defined('momenta', params.initial_m),
      _user_defined('velocities', params.initial_v),
  )


def _rms_prop(params: algorithms.RMSPropParameters):
  return (
      _parameters(),
      _user_defined('ms', params.initial_ms),
      _user_defined('mom', params.initial_mom),
  )


def _centered_rms_prop(params: algorithms.CenteredRMSPropParameters):
  return (
      _parameters(),
      _user_defined('ms', params.initial_ms),
      _user_defined('mom', params.initial_mom),
      _user_defined('mg', params.initial_mg),
  )


def _adadelta(params: algorithms.AdadeltaParameters):
  return (
      _parameters(),
      _user_defined('accumulators', params.initial_accumulator),
      _user_defined('updates', params.initial_update),
  )


def _mdl_adagrad_light(params: algorithms.MdlAdagradLightParameters):
  return (
      _parameters(params.initial_weight),
      _user_defined('accumulators', params.initial_accumulator),
      _user_defined('benefit', params.initial_benefit),
  )


_Layout: TypeAlias = Callable[..., tuple[StateVariableSpec, ...]]

_LAYOUTS: dict[type[algorithms.Algorithm], _Layout] = {
    algorithms.SGDParameters: _sgd,
    algorithms.AdagradParameters: _adagrad,
    algorithms.BoundedAdagradParameters: _adagrad,
    algorithms.ProximalAdagradParameters: _adagrad,
    algorithms.FTRLParameters: _ftrl,
    algorithms.MomentumParameters: _momentum,
    algorithms.AdamParameters: _adam,
    algorithms.RMSPropParameters: _rms_prop,
    algorithms.CenteredRMSPropParameters: _centered_rms_prop,
    algorithms.AdadeltaParameters: _adadelta,
    algorithms.MdlAdagradLightParameters: _mdl_adagrad_light,
}

# Every member of `algorithms.Algorithm` needs a layout.
assert set(_LAYOUTS) == set(typing.get_args(algorithms.Algorithm)), (
    'Missing state variable layouts for: '
    f'{set(typing.get_args(algorithms.Algorithm)) - set(_LAYOUTS)}'
)


def resolve(
    algorithm: algorithms.Algorithm | None,
) -> tuple[StateVariableSpec, ...]:
  """Returns the ordered state variables of `algorithm`.

  The first entry is always the embedding values themselves (`parameters`),
  followed by the optimizer slots in the order the update expects them. Initial
  values are returned as configured; callers must reject non-finite ones (see
  `non_finite_state_variables`).

  Args:
    algorithm: A parameter record from `algorithms`.

  Returns:
    A tuple of state variable specs.

  Raises:
    UnknownAlgorithmError: if `algorithm` is None or not a parameter record.
  """
  layout = _LAYOUTS.get(type(algorithm))
  if layout is None:
    if algorithm is None:
      raise errors.UnknownAlgorithmError('No optimization algorithm selected.')
    raise errors.UnknownAlgorithmError(
        f'Unsupported optimization algorithm: {type(algorithm).__name__}.'
    )
  return layout(algorithm)


def gradient_accumulator() -> StateVariableSpec:
  """The hidden slot holding gradients summed over a minibatch."""
  return StateVariableSpec(
      name=GRADIENT_ACCUMULATORS, usage=FillWithConstant(0.0)
  )


def non_finite_state_variables(
    state_variables: Sequence[StateVariableSpec],
) -> list[StateVariableSpec]:
  return [spec for spec in state_variables if not spec.is_finite()]
