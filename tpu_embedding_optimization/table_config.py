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
"""User facing optimization configuration of one embedding table."""

from __future__ import annotations

import dataclasses

from tpu_embedding_optimization import algorithms
from tpu_embedding_optimization import clipping
from tpu_embedding_optimization import gradient_accumulation
from tpu_embedding_optimization import hot_id_replication
from tpu_embedding_optimization import learning_rate as learning_rate_lib

ClippingLimits = clipping.ClippingLimits
DynamicLearningRate = learning_rate_lib.DynamicLearningRate
GradientAccumulationStatus = gradient_accumulation.GradientAccumulationStatus
HotIdReplicationConfig = hot_id_replication.HotIdReplicationConfig
HotIdReplicationStatus = hot_id_replication.HotIdReplicationStatus


@dataclasses.dataclass(frozen=True, kw_only=True)
class TableConfig:
  """Optimization configuration of one embedding table.

  Attributes:
    name: Name of the table. Tables without a name are named `table_{i}` after
      their position in the job.
    algorithm: Parameters of the optimization algorithm, one of the records in
      `algorithms`.
    learning_rate: A constant float, or a DynamicLearningRate whose tag selects
      the learning rate supplied at runtime.
    clipping_limits: Limits to clip the weights to after each update; None
      means no clipping.
    gradient_clipping_limits: Limits to clip gradients to before they are used;
      None means no clipping.
    weight_decay_factor: Amount of weight decay to apply. Not supported by MDL
      Adagrad Light and not recommended with SGD.
    gradient_accumulation_status: Whether to sum the gradients of a minibatch
      before applying them. UNSPECIFIED means enabled.
    hot_id_replication: Experimental hot id replication; disabled by default.
  """

  name: str | None = None
  algorithm: algorithms.Algorithm | None = None
  learning_rate: learning_rate_lib.LearningRateSource = 0.01
  clipping_limits: ClippingLimits | None = None
  gradient_clipping_limits: ClippingLimits | None = None
  weight_decay_factor: float = 0.0
  gradient_accumulation_status: GradientAccumulationStatus = (
      GradientAccumulationStatus.UNSPECIFIED
  )
  hot_id_replication: HotIdReplicationConfig = dataclasses.field(
      default_factory=HotIdReplicationConfig
  )
