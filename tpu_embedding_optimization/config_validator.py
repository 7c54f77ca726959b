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
"""Validates the optimization configuration of all tables of a job.

Typical usage:

  validator = config_validator.ConfigurationValidator()
  result = validator.validate([
      table_config.TableConfig(
          name='users',
          algorithm=algorithms.AdagradParameters(),
          learning_rate=table_config.DynamicLearningRate(tag=0),
      ),
      table_config.TableConfig(
          name='items',
          algorithm=algorithms.SGDParameters(),
          learning_rate=0.1,
      ),
  ])
  job_config = result.unwrap()  # raises ValidationFailedError on errors.

Every table is resolved independently (algorithm state variables, clipping
limits, gradient accumulation, hot id replication and learning rate), errors
are collected instead of stopping at the first one, and finally the learning
rate tags of the whole job are checked.
"""

from __future__ import annotations

import collections
from concurrent import futures
import dataclasses
import numbers
from typing import Sequence

from absl import flags
from absl import logging
from flax import struct
import numpy as np
from tpu_embedding_optimization import algorithms
from tpu_embedding_optimization import clipping
from tpu_embedding_optimization import errors
from tpu_embedding_optimization import gradient_accumulation
from tpu_embedding_optimization import hot_id_replication as hot_id_replication_lib
from tpu_embedding_optimization import learning_rate as learning_rate_lib
from tpu_embedding_optimization import state_variables as state_variables_lib
from tpu_embedding_optimization import table_config as table_config_lib

_WARNINGS_AS_ERRORS = flags.DEFINE_bool(
    'optimization_config_warnings_as_errors',
    False,
    'If True, warnings about embedding optimization configs (e.g. non-lazy'
    ' Adam without gradient accumulation) fail validation.',
)

SGD_WEIGHT_DECAY_WARNING = 'SGD does not behave as expected with weight decay'
WEIGHT_DECAY_WITHOUT_ACCUMULATION_WARNING = (
    'weight decay without gradient accumulation is applied once per gradient'
    ' instead of once per minibatch'
)


@struct.dataclass(frozen=True, kw_only=True)
class ResolvedTableConfig:
  """Validated optimization configuration of one table.

  Attributes:
    name: Name of the table.
    algorithm: Parameters of the optimization algorithm.
    learning_rate: ConstantLearningRate or DynamicLearningRate.
    state_variables: Ordered state variables, starting with `parameters`.
      Includes internal FillWithConstant slots.
    clipping_limits: Weight clipping limits, applied after the update.
    gradient_clipping_limits: Gradient clipping limits, applied before the
      update.
    weight_decay_factor: Amount of weight decay.
    gradient_accumulation: Whether gradient accumulation is enabled.
    hot_id_replication: Resolved hot id replication.
    warnings: Non-fatal problems found for this table.
  """

  name: str = struct.field(pytree_node=False)
  algorithm: algorithms.Algorithm = struct.field(pytree_node=False)
  learning_rate: learning_rate_lib.ClassifiedLearningRate = struct.field(
      pytree_node=False
  )
  state_variables: tuple[state_variables_lib.StateVariableSpec, ...] = (
      struct.field(pytree_node=False)
  )
  clipping_limits: clipping.ClippingLimits = struct.field(pytree_node=False)
  gradient_clipping_limits: clipping.ClippingLimits = struct.field(
      pytree_node=False
  )
  weight_decay_factor: float = struct.field(pytree_node=False, default=0.0)
  gradient_accumulation: bool = struct.field(pytree_node=False, default=True)
  hot_id_replication: hot_id_replication_lib.HotIdReplication = struct.field(
      pytree_node=False, default=hot_id_replication_lib.DISABLED
  )
  warnings: tuple[str, ...] = struct.field(pytree_node=False, default=())

  @property
  def algorithm_name(self) -> str:
    return algorithms.algorithm_name(self.algorithm)

  def user_defined_state_variables(
      self,
  ) -> tuple[state_variables_lib.StateVariableSpec, ...]:
    """State variables visible to users, e.g. for checkpointing."""
    return tuple(sv for sv in self.state_variables if sv.is_user_defined())


@struct.dataclass(frozen=True, kw_only=True)
class ResolvedJobConfig:
  """Validated optimization configuration of all tables of a job."""

  tables: tuple[ResolvedTableConfig, ...] = struct.field(pytree_node=False)
  tag_allocation: learning_rate_lib.TagAllocation = struct.field(
      pytree_node=False
  )
  warnings: tuple[str, ...] = struct.field(pytree_node=False, default=())

  @property
  def learning_rate_list_size(self) -> int:
    """Length of the dynamic learning rate list to supply at every step."""
    return self.tag_allocation.unique_tag_count

  def table(self, name: str) -> ResolvedTableConfig:
    for table in self.tables:
      if table.name == name:
        return table
    raise KeyError(f'No table named {name}.')


@dataclasses.dataclass(frozen=True)
class ValidationResult:
  """Outcome of `ConfigurationValidator.validate`.

  Attributes:
    config: The resolved configuration, None if there are errors.
    errors: Every error found, per-table errors first.
    warnings: Every warning found, prefixed with the table name.
  """

  config: ResolvedJobConfig | None
  errors: tuple[errors.OptimizationConfigError, ...] = ()
  warnings: tuple[str, ...] = ()

  @property
  def ok(self) -> bool:
    return not self.errors

  def unwrap(self) -> ResolvedJobConfig:
    """Returns the resolved configuration or raises every error at once."""
    if self.errors:
      raise errors.ValidationFailedError(self.errors)
    assert self.config is not None
    return self.config


@dataclasses.dataclass(frozen=True)
class _TableResolution:
  name: str
  learning_rate: learning_rate_lib.ClassifiedLearningRate | None
  resolved: ResolvedTableConfig | None
  errors: tuple[errors.ConfigurationError, ...]
  warnings: tuple[str, ...]


class ConfigurationValidator:
  """Resolves and validates the optimization configuration of a job."""

  def __init__(
      self,
      hot_id_default_max_slot_count: int | None = None,
      warnings_as_errors: bool | None = None,
  ):
    """Creates a validator.

    Args:
      hot_id_default_max_slot_count: Hot id slot count used for tables that
        enable replication without a positive `max_slot_count`. Defaults to
        `--hot_id_default_max_slot_count`.
      warnings_as_errors: Whether warnings fail validation. Defaults to
        `--optimization_config_warnings_as_errors`.
    """
    if hot_id_default_max_slot_count is None:
      hot_id_default_max_slot_count = (
          hot_id_replication_lib.default_max_slot_count()
      )
    if warnings_as_errors is None:
      warnings_as_errors = flags.FLAGS[_WARNINGS_AS_ERRORS.name].value
    self._hot_id_default_max_slot_count = hot_id_default_max_slot_count
    self._warnings_as_errors = warnings_as_errors

  def _weight_decay_warnings(
      self,
      table: table_config_lib.TableConfig,
      accumulation_enabled: bool,
  ) -> list[str]:
    factor = table.weight_decay_factor
    if (
        isinstance(factor, bool)
        or not isinstance(factor, numbers.Real)
        or not np.isfinite(factor)
        or factor < 0
    ):
      raise errors.InvalidHyperparameterError(
          f'weight_decay_factor must be a finite number >= 0, got {factor!r}.'
      )
    if factor == 0:
      return []
    if isinstance(table.algorithm, algorithms.MdlAdagradLightParameters):
      raise errors.UnsupportedWeightDecayError(
          'MDL Adagrad Light does not support weight decay.'
      )
    warnings = []
    if isinstance(table.algorithm, algorithms.SGDParameters):
      warnings.append(SGD_WEIGHT_DECAY_WARNING)
    if not accumulation_enabled:
      warnings.append(WEIGHT_DECAY_WITHOUT_ACCUMULATION_WARNING)
    return warnings

  def _resolve_table(
      self, index: int, table: table_config_lib.TableConfig
  ) -> _TableResolution:
    """Resolves one table; depends on no other table."""
    name = table.name if table.name is not None else f'table_{index}'
    table_errors = []
    warnings = []

    def attempt(fn, *args):
      try:
        return fn(*args)
      except errors.ConfigurationError as e:
        table_errors.append(e.with_table(name))
        return None

    state_variables = attempt(state_variables_lib.resolve, table.algorithm)
    if state_variables is not None:
      attempt(algorithms.check_hyperparameters, table.algorithm)
      for spec in state_variables_lib.non_finite_state_variables(
          state_variables
      ):
        # Padding rows must stay an identity under zero gradients.
        table_errors.append(
            errors.NonFiniteInitialValueError(
                f'Initial value of state variable {spec.name} must be a'
                f' finite number, got {spec.initial_value!r}.',
                slot_name=spec.name,
                table_name=name,
            )
        )
    clipping_limits = attempt(clipping.resolve_limits, table.clipping_limits)
    gradient_clipping_limits = attempt(
        clipping.resolve_limits, table.gradient_clipping_limits
    )
    accumulation = attempt(
        gradient_accumulation.resolve,
        table.gradient_accumulation_status,
        table.algorithm,
    )
    if accumulation is not None:
      warnings.extend(accumulation.warnings)
    replication = attempt(
        hot_id_replication_lib.resolve,
        table.hot_id_replication.status,
        table.hot_id_replication.max_slot_count,
        self._hot_id_default_max_slot_count,
    )
    learning_rate = attempt(learning_rate_lib.classify, table.learning_rate)
    decay_warnings = attempt(
        self._weight_decay_warnings,
        table,
        accumulation is None or accumulation.enabled,
    )
    warnings.extend(decay_warnings or [])

    if self._warnings_as_errors:
      table_errors.extend(
          errors.ConfigurationError(warning, table_name=name)
          for warning in warnings
      )

    resolved = None
    if not table_errors:
      if accumulation.enabled:
        state_variables += (state_variables_lib.gradient_accumulator(),)
      resolved = ResolvedTableConfig(
          name=name,
          algorithm=table.algorithm,
          learning_rate=learning_rate,
          state_variables=state_variables,
          clipping_limits=clipping_limits,
          gradient_clipping_limits=gradient_clipping_limits,
          weight_decay_factor=float(table.weight_decay_factor),
          gradient_accumulation=accumulation.enabled,
          hot_id_replication=replication,
          warnings=tuple(warnings),
      )
      logging.vlog(2, 'Resolved table %s: %s', name, resolved)
    return _TableResolution(
        name=name,
        learning_rate=learning_rate,
        resolved=resolved,
        errors=tuple(table_errors),
        warnings=tuple(warnings),
    )

  def _resolve_tables(
      self,
      tables: Sequence[table_config_lib.TableConfig],
      max_workers: int | None,
  ) -> list[_TableResolution]:
    if max_workers is None or max_workers <= 1 or len(tables) <= 1:
      return [self._resolve_table(i, t) for i, t in enumerate(tables)]
    with futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
      return list(
          executor.map(self._resolve_table, range(len(tables)), tables)
      )

  def validate(
      self,
      tables: Sequence[table_config_lib.TableConfig],
      max_workers: int | None = None,
  ) -> ValidationResult:
    """Resolves and validates the configuration of every table of a job.

    Args:
      tables: Configuration of every table.
      max_workers: If greater than one, tables are resolved in parallel on this
        many threads. The result does not depend on it.

    Returns:
      A ValidationResult holding the ResolvedJobConfig if there are no errors,
      and otherwise every per-table and job-wide error.
    """
    tables = list(tables)
    resolutions = self._resolve_tables(tables, max_workers)

    all_errors: list[errors.OptimizationConfigError] = []
    all_warnings = []
    for resolution in resolutions:
      all_errors.extend(resolution.errors)
      all_warnings.extend(
          f'Table {resolution.name}: {warning}'
          for warning in resolution.warnings
      )

    if not tables:
      all_errors.append(errors.JobConsistencyError('No tables to validate.'))

    name_counts = collections.Counter(r.name for r in resolutions)
    duplicates = sorted(name for name, n in name_counts.items() if n > 1)
    if duplicates:
      all_errors.append(
          errors.DuplicateTableNameError(
              f'Tables must have a unique name. Repeated names: {duplicates}.'
          )
      )

    tag_allocation = learning_rate_lib.build_tag_allocation(
        (resolution.name, resolution.learning_rate)
        for resolution in resolutions
        if resolution.learning_rate is not None
    )
    all_errors.extend(
        learning_rate_lib.check_tag_allocation(tag_allocation, len(tables))
    )

    for warning in all_warnings:
      logging.warning('Embedding optimization config: %s', warning)
    if all_errors:
      for error in all_errors:
        logging.error('Embedding optimization config: %s', error)
      return ValidationResult(
          config=None,
          errors=tuple(all_errors),
          warnings=tuple(all_warnings),
      )

    logging.info(
        'Validated optimization config of %d table(s) with %d unique learning'
        ' rate tag(s).',
        len(tables),
        tag_allocation.unique_tag_count,
    )
    config = ResolvedJobConfig(
        tables=tuple(resolution.resolved for resolution in resolutions),
        tag_allocation=tag_allocation,
        warnings=tuple(all_warnings),
    )
    return ValidationResult(config=config, warnings=tuple(all_warnings))


def validate(
    tables: Sequence[table_config_lib.TableConfig],
    max_workers: int | None = None,
) -> ValidationResult:
  """Validates `tables` with a default ConfigurationValidator."""
  return ConfigurationValidator().validate(tables, max_workers=max_workers)
