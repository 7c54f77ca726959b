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
"""Errors raised while resolving embedding optimization parameters.

Per-table problems are `ConfigurationError`s and problems that only show up
when looking at all tables of a job together are `JobConsistencyError`s. The
resolvers raise these; `config_validator.ConfigurationValidator` collects them
so that one call reports every problem at once.
"""

from typing import Sequence


class OptimizationConfigError(ValueError):
  """Base class for invalid embedding optimization configuration."""


class ConfigurationError(OptimizationConfigError):
  """A problem with the configuration of a single table.

  Attributes:
    table_name: Name of the offending table, or None if the error was raised
      before the table was known (e.g. by a standalone resolver call).
  """

  def __init__(self, message: str, table_name: str | None = None):
    super().__init__(message)
    self.message = message
    self.table_name = table_name

  def with_table(self, table_name: str) -> 'ConfigurationError':
    """Returns this error attributed to `table_name`."""
    self.table_name = table_name
    return self

  def __str__(self) -> str:
    if self.table_name is None:
      return self.message
    return f'Table {self.table_name}: {self.message}'


class UnknownAlgorithmError(ConfigurationError):
  """No (or an unrecognized) optimization algorithm was selected."""


class AmbiguousAlgorithmError(ConfigurationError):
  """More than one optimization algorithm was selected."""


class NonFiniteInitialValueError(ConfigurationError):
  """A state variable would be initialized to NaN or +-infinity."""

  def __init__(
      self, message: str, slot_name: str, table_name: str | None = None
  ):
    super().__init__(message, table_name)
    self.slot_name = slot_name


class InvalidRangeError(ConfigurationError):
  """Clipping limits or bounds that do not describe a valid range."""


class InvalidTagError(ConfigurationError):
  """A dynamic learning rate tag outside of the non-negative int32 range."""


class InvalidLearningRateError(ConfigurationError):
  """A constant learning rate that is not finite."""


class InvalidHyperparameterError(ConfigurationError):
  """An algorithm hyperparameter outside of its valid domain."""


class UnsupportedWeightDecayError(ConfigurationError):
  """Weight decay requested for an algorithm that does not support it."""


class JobConsistencyError(OptimizationConfigError):
  """A problem spanning several tables of one job."""


class TagNotContiguousError(JobConsistencyError):
  """Dynamic learning rate tags do not form the range [0, num_unique_tags)."""

  def __init__(self, message: str, missing_tags: Sequence[int]):
    super().__init__(message)
    self.missing_tags = tuple(missing_tags)


class TooManyTagsError(JobConsistencyError):
  """More unique learning rate tags than tables."""


class DuplicateTableNameError(JobConsistencyError):
  """Two or more tables share a name."""


class ValidationFailedError(OptimizationConfigError):
  """Raised by `ValidationResult.unwrap` on a failed validation."""

  def __init__(self, errors: Sequence[OptimizationConfigError]):
    self.errors = tuple(errors)
    super().__init__(
        f'{len(self.errors)} error(s) in embedding optimization config:\n'
        + '\n'.join(f'  {error}' for error in self.errors)
    )
