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
"""Hot id replication policy (experimental, disabled by default)."""

import dataclasses
import enum

from absl import flags
import numpy as np
from tpu_embedding_optimization import errors

_DEFAULT_MAX_SLOT_COUNT = flags.DEFINE_integer(
    'hot_id_default_max_slot_count',
    1024,
    'Number of slots reserved for hot id replicas of a table when hot id'
    ' replication is enabled without a positive max_slot_count.',
)

_INT32_MAX = int(np.iinfo(np.int32).max)


class HotIdReplicationStatus(enum.Enum):
  """Hot id replication status; UNSPECIFIED means DISABLED."""

  UNSPECIFIED = 0
  ENABLED = 1
  DISABLED = 2


@dataclasses.dataclass(frozen=True)
class HotIdReplicationConfig:
  """Hot id replication request of a table.

  Attributes:
    status: Whether to replicate hot ids.
    max_slot_count: Total number of replica slots (across all hot ids of the
      table). Not expected to be set by most models, a default is chosen when
      it is not positive.
  """

  status: HotIdReplicationStatus = HotIdReplicationStatus.UNSPECIFIED
  max_slot_count: int | None = None


@dataclasses.dataclass(frozen=True)
class HotIdReplication:
  enabled: bool
  max_slot_count: int


DISABLED = HotIdReplication(enabled=False, max_slot_count=0)


def default_max_slot_count() -> int:
  # Read through FLAGS so the default applies even when flags are unparsed.
  return flags.FLAGS[_DEFAULT_MAX_SLOT_COUNT.name].value


def resolve(
    status: HotIdReplicationStatus,
    max_slot_count: int | None = None,
    default_slot_count: int | None = None,
) -> HotIdReplication:
  """Resolves hot id replication for one table.

  Args:
    status: Configured status.
    max_slot_count: Requested slot count. Ignored unless replication is
      enabled.
    default_slot_count: Slot count to use when replication is enabled and
      `max_slot_count` is not positive. Defaults to
      `--hot_id_default_max_slot_count`.

  Returns:
    The resolved replication setting.

  Raises:
    ConfigurationError: if `status` is not a HotIdReplicationStatus.
    InvalidRangeError: if an enabled slot count is not an integer or does not
      fit in int32.
  """
  try:
    status = HotIdReplicationStatus(status)
  except ValueError:
    raise errors.ConfigurationError(
        f'Unknown hot id replication status: {status!r}.'
    ) from None
  if status != HotIdReplicationStatus.ENABLED:
    return DISABLED

  if max_slot_count is not None and (
      isinstance(max_slot_count, bool)
      or not isinstance(max_slot_count, (int, np.integer))
  ):
    raise errors.InvalidRangeError(
        f'Hot id max_slot_count must be an integer, got {max_slot_count!r}.'
    )
  if max_slot_count is None or max_slot_count <= 0:
    if default_slot_count is None:
      default_slot_count = default_max_slot_count()
    max_slot_count = default_slot_count
  if not 0 < max_slot_count <= _INT32_MAX:
    raise errors.InvalidRangeError(
        f'Hot id max_slot_count must be in (0, {_INT32_MAX}], got'
        f' {max_slot_count}.'
    )
  return HotIdReplication(enabled=True, max_slot_count=int(max_slot_count))
