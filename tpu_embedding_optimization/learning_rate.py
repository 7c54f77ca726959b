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
"""Constant and dynamic learning rates.

A table either uses a constant learning rate or a dynamic one identified by a
tag. Dynamic learning rates are supplied at every training step as a list of
scalars whose i-th entry is the learning rate of tag i, so the tags used in a
job must be exactly 0, 1, ..., num_unique_tags - 1. Tables that share a tag
must share the learning rate (e.g. compute it with the same function); this
cannot be verified here, only the numbering is.

Fewer unique tags partition better, so reuse a tag wherever tables share a
learning rate. `assign_tags` does this for learning rate callables.
"""

from __future__ import annotations

import dataclasses
import functools
import inspect
import types
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeAlias

import jax
import jax.numpy as jnp
import numpy as np
from tpu_embedding_optimization import errors

_INT32_MAX = int(np.iinfo(np.int32).max)


@dataclasses.dataclass(frozen=True)
class ConstantLearningRate:
  value: float


@dataclasses.dataclass(frozen=True)
class DynamicLearningRate:
  """A learning rate supplied at runtime.

  Attributes:
    tag: Index of this learning rate in the per-step list of learning rates.
  """

  tag: int


LearningRateSource: TypeAlias = (
    float | ConstantLearningRate | DynamicLearningRate
)
ClassifiedLearningRate: TypeAlias = ConstantLearningRate | DynamicLearningRate
LearningRateCallable: TypeAlias = Callable[..., float | jax.Array]


def classify(source: LearningRateSource) -> ClassifiedLearningRate:
  """Classifies the learning rate of one table.

  Args:
    source: A float (constant), a ConstantLearningRate or a
      DynamicLearningRate.

  Returns:
    The ConstantLearningRate or DynamicLearningRate.

  Raises:
    InvalidTagError: if a dynamic tag is negative or does not fit in int32.
    InvalidLearningRateError: if a constant learning rate is not a finite
      number.
  """
  if isinstance(source, DynamicLearningRate):
    tag = source.tag
    if isinstance(tag, bool) or not isinstance(tag, (int, np.integer)):
      raise errors.InvalidTagError(
          f'Learning rate tag must be an integer, got {tag!r}.'
      )
    if not 0 <= tag <= _INT32_MAX:
      raise errors.InvalidTagError(
          f'Learning rate tag must be in [0, {_INT32_MAX}], got {tag}.'
      )
    return DynamicLearningRate(tag=int(tag))

  value = source.value if isinstance(source, ConstantLearningRate) else source
  if callable(value):
    raise errors.InvalidLearningRateError(
        'Learning rate callables must be mapped to tags first, see'
        ' `assign_tags`.'
    )
  try:
    value = float(value)
  except (TypeError, ValueError):
    raise errors.InvalidLearningRateError(
        f'Unsupported learning rate: {value!r}.'
    ) from None
  if not np.isfinite(value):
    raise errors.InvalidLearningRateError(
        f'Constant learning rate must be finite, got {value}.'
    )
  return ConstantLearningRate(value=value)


@dataclasses.dataclass(frozen=True)
class TagAllocation:
  """Dynamic learning rate tags used by a job.

  Attributes:
    tables_by_tag: Read-only mapping of tag to the names of the tables using
      it, in table order.
    unique_tag_count: Number of unique tags, which is also the length of the
      learning rate list supplied at every step.
  """

  tables_by_tag: Mapping[int, tuple[str, ...]]
  unique_tag_count: int

  @property
  def tags(self) -> tuple[int, ...]:
    return tuple(sorted(self.tables_by_tag))

  def index_of(self, tag: int) -> int:
    """Position of `tag`'s learning rate in the per-step learning rate list."""
    if tag not in self.tables_by_tag:
      raise KeyError(f'Learning rate tag {tag} is not used by any table.')
    # Tags are dense and zero based, so they index the list directly.
    return tag

  def pack_learning_rates(
      self, learning_rates: Sequence[float | jax.Array]
  ) -> jax.Array:
    """Packs the per-step learning rates, checking them against the tags.

    Args:
      learning_rates: One scalar per tag, the i-th for tag i.

    Returns:
      A float32 array of shape [unique_tag_count].

    Raises:
      ValueError: if the number of learning rates does not match the number of
        unique tags.
    """
    if len(learning_rates) != self.unique_tag_count:
      raise ValueError(
          f'Expected {self.unique_tag_count} dynamic learning rate(s), one per'
          f' tag, got {len(learning_rates)}.'
      )
    scalars = [
        jnp.asarray(lr, dtype=jnp.float32).reshape(()) for lr in learning_rates
    ]
    return jnp.asarray(scalars, dtype=jnp.float32).reshape(
        (self.unique_tag_count,)
    )


EMPTY_TAG_ALLOCATION = TagAllocation(
    tables_by_tag=types.MappingProxyType({}), unique_tag_count=0
)


def _add_table(
    tables_by_tag: Mapping[int, tuple[str, ...]],
    table: tuple[str, ClassifiedLearningRate],
) -> Mapping[int, tuple[str, ...]]:
  name, learning_rate = table
  if not isinstance(learning_rate, DynamicLearningRate):
    return tables_by_tag
  tag = learning_rate.tag
  return {**tables_by_tag, tag: tables_by_tag.get(tag, ()) + (name,)}


def build_tag_allocation(
    classified: Iterable[tuple[str, ClassifiedLearningRate]],
) -> TagAllocation:
  """Folds per-table learning rates into a TagAllocation without checking it."""
  tables_by_tag = functools.reduce(_add_table, classified, {})
  return TagAllocation(
      tables_by_tag=types.MappingProxyType(dict(sorted(tables_by_tag.items()))),
      unique_tag_count=len(tables_by_tag),
  )


def check_tag_allocation(
    allocation: TagAllocation, table_count: int
) -> list[errors.JobConsistencyError]:
  """Returns every numbering problem of `allocation`.

  Args:
    allocation: Tags used by the job.
    table_count: Total number of tables in the job.

  Returns:
    TagNotContiguousError if tags are missing from [0, unique_tag_count) and
    TooManyTagsError if there are more unique tags than tables.
  """
  problems = []
  expected = set(range(allocation.unique_tag_count))
  missing = sorted(expected - set(allocation.tags))
  if missing:
    problems.append(
        errors.TagNotContiguousError(
            'Learning rate tags must form the range [0, '
            f'{allocation.unique_tag_count}); missing tag(s) {missing}, used'
            f' tag(s) {list(allocation.tags)}.',
            missing_tags=missing,
        )
    )
  if allocation.unique_tag_count > table_count:
    problems.append(
        errors.TooManyTagsError(
            f'{allocation.unique_tag_count} unique learning rate tags but only'
            f' {table_count} table(s); each table uses at most one tag.'
        )
    )
  return problems


def allocate_tags(
    classified: Sequence[tuple[str, ClassifiedLearningRate]],
    table_count: int | None = None,
) -> TagAllocation:
  """Builds and checks the tag allocation of a job.

  Args:
    classified: (table name, classified learning rate) of every table.
    table_count: Total number of tables. Defaults to `len(classified)`.

  Returns:
    The TagAllocation.

  Raises:
    TagNotContiguousError: if a tag in [0, unique_tag_count) is unused.
    TooManyTagsError: if unique_tag_count > table_count.
  """
  if table_count is None:
    table_count = len(classified)
  allocation = build_tag_allocation(classified)
  problems = check_tag_allocation(allocation, table_count)
  if problems:
    raise problems[0]
  return allocation


def assign_tags(
    learning_rates: Sequence[float | LearningRateCallable],
) -> tuple[list[LearningRateSource], list[LearningRateCallable]]:
  """Maps learning rate callables to dense tags.

  We don't simply create one tag per table as this has bad performance
  characteristics: tables using the same callable share a tag. Tags are given
  in order of first appearance.

  Args:
    learning_rates: Per-table learning rates, floats or callables.

  Returns:
    The per-table learning rate sources, and the callables ordered by tag.
  """
  tag_of: dict[Any, int] = {}
  sources: list[LearningRateSource] = []
  for learning_rate in learning_rates:
    if callable(learning_rate):
      tag = tag_of.setdefault(learning_rate, len(tag_of))
      sources.append(DynamicLearningRate(tag=tag))
    else:
      sources.append(learning_rate)
  return sources, list(tag_of)


def _evaluate(
    learning_rate: LearningRateCallable, step: jax.Array | int | None
) -> jax.Array:
  # Callables take a single step count argument, or no arguments.
  args = inspect.getfullargspec(learning_rate).args
  # If not a function, then it's an object instance with `self` as the first
  # argument.
  num_args = len(args) if inspect.isfunction(learning_rate) else len(args) - 1
  if num_args == 0:
    return jnp.array(learning_rate(), dtype=jnp.float32)
  elif num_args == 1:
    if step is None:
      raise ValueError(
          f'Learning rate callable {learning_rate} requires a `step` argument'
          ' to be specified.'
      )
    return jnp.array(learning_rate(step), dtype=jnp.float32)
  raise ValueError(
      'Learning rate callbacks should either take no parameters, or a single'
      ' step count argument.'
  )


def evaluate_learning_rates(
    allocation: TagAllocation,
    learning_rates_by_tag: Sequence[LearningRateCallable],
    step: jax.Array | int | None = None,
) -> jax.Array:
  """Evaluates the dynamic learning rates of one step, in tag order."""
  return allocation.pack_learning_rates(
      [_evaluate(fn, step) for fn in learning_rates_by_tag]
  )
