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
"""Tests for the job-wide configuration validator."""

import dataclasses
import math

from absl.testing import absltest
from absl.testing import parameterized
from tpu_embedding_optimization import algorithms
from tpu_embedding_optimization import clipping
from tpu_embedding_optimization import config_validator
from tpu_embedding_optimization import errors
from tpu_embedding_optimization import gradient_accumulation
from tpu_embedding_optimization import learning_rate
from tpu_embedding_optimization import state_variables
from tpu_embedding_optimization import table_config


def _table(name, tag=None, **kwargs):
  kwargs.setdefault("algorithm", algorithms.AdagradParameters())
  if tag is not None:
    kwargs["learning_rate"] = table_config.DynamicLearningRate(tag=tag)
  return table_config.TableConfig(name=name, **kwargs)


def _error_types(result):
  return [type(error) for error in result.errors]


class ConfigurationValidatorTest(parameterized.TestCase):

  def setUp(self):
    super().setUp()
    self.validator = config_validator.ConfigurationValidator(
        hot_id_default_max_slot_count=128, warnings_as_errors=False
    )

  def test_shared_tags(self):
    result = self.validator.validate(
        [_table("a", tag=0), _table("b", tag=0), _table("c", tag=1)]
    )
    self.assertTrue(result.ok)
    job = result.unwrap()
    self.assertEqual(job.tag_allocation.unique_tag_count, 2)
    self.assertEqual(job.learning_rate_list_size, 2)
    self.assertEqual(
        dict(job.tag_allocation.tables_by_tag), {0: ("a", "b"), 1: ("c",)}
    )
    self.assertEqual(
        job.table("c").learning_rate, learning_rate.DynamicLearningRate(1)
    )

  def test_tag_gap(self):
    result = self.validator.validate([_table("a", tag=0), _table("b", tag=2)])
    self.assertFalse(result.ok)
    self.assertIsNone(result.config)
    self.assertEqual(_error_types(result), [errors.TagNotContiguousError])
    self.assertEqual(result.errors[0].missing_tags, (1,))
    with self.assertRaises(errors.ValidationFailedError) as cm:
      result.unwrap()
    self.assertLen(cm.exception.errors, 1)

  def test_no_dynamic_learning_rates(self):
    result = self.validator.validate(
        [_table(f"t{i}", learning_rate=0.1 * (i + 1)) for i in range(4)]
    )
    job = result.unwrap()
    self.assertEqual(job.tag_allocation.unique_tag_count, 0)
    self.assertLen(job.tables, 4)
    self.assertEqual(
        job.table("t2").learning_rate,
        learning_rate.ConstantLearningRate(0.1 * 3),
    )

  def test_non_finite_initial_value_names_slot(self):
    result = self.validator.validate([
        _table("adam", algorithm=algorithms.AdamParameters(initial_m=math.nan)),
    ])
    self.assertEqual(_error_types(result), [errors.NonFiniteInitialValueError])
    error = result.errors[0]
    self.assertEqual(error.slot_name, "momenta")
    self.assertEqual(error.table_name, "adam")
    self.assertIn("momenta", str(error))

  def test_infinite_parameters_initial_value(self):
    result = self.validator.validate([
        _table(
            "mdl",
            algorithm=algorithms.MdlAdagradLightParameters(
                initial_weight=math.inf, initial_benefit=-math.inf
            ),
        ),
    ])
    self.assertEqual(
        [error.slot_name for error in result.errors], ["parameters", "benefit"]
    )

  def test_non_lazy_adam_without_accumulation_warns(self):
    result = self.validator.validate([
        _table(
            "adam",
            algorithm=algorithms.AdamParameters(use_non_lazy_adam=True),
            gradient_accumulation_status=(
                table_config.GradientAccumulationStatus.DISABLED
            ),
        ),
    ])
    self.assertTrue(result.ok)
    self.assertEqual(
        result.warnings,
        (f"Table adam: {gradient_accumulation.NON_LAZY_ADAM_WARNING}",),
    )
    table = result.unwrap().table("adam")
    self.assertFalse(table.gradient_accumulation)
    self.assertEqual(
        table.warnings, (gradient_accumulation.NON_LAZY_ADAM_WARNING,)
    )

  def test_warnings_as_errors(self):
    validator = config_validator.ConfigurationValidator(warnings_as_errors=True)
    result = validator.validate([
        _table(
            "adam",
            algorithm=algorithms.AdamParameters(use_non_lazy_adam=True),
            gradient_accumulation_status=(
                table_config.GradientAccumulationStatus.DISABLED
            ),
        ),
    ])
    self.assertEqual(_error_types(result), [errors.ConfigurationError])

  def test_errors_are_collected_across_tables(self):
    result = self.validator.validate([
        _table("no_algorithm", algorithm=None),
        _table(
            "bad_clip",
            clipping_limits=clipping.ClippingLimits(lower=1.0, upper=0.0),
        ),
        _table("negative_tag", tag=-1),
        _table("fine", tag=0),
    ])
    self.assertEqual(
        _error_types(result),
        [
            errors.UnknownAlgorithmError,
            errors.InvalidRangeError,
            errors.InvalidTagError,
        ],
    )
    self.assertEqual(
        [error.table_name for error in result.errors],
        ["no_algorithm", "bad_clip", "negative_tag"],
    )

  def test_errors_are_collected_within_table(self):
    result = self.validator.validate([
        _table(
            "bad",
            algorithm=algorithms.FTRLParameters(
                l1=-1.0, initial_linear=math.nan
            ),
            gradient_clipping_limits=clipping.ClippingLimits(
                lower=2.0, upper=1.0
            ),
            learning_rate=math.nan,
        ),
    ])
    self.assertEqual(
        _error_types(result),
        [
            errors.InvalidHyperparameterError,
            errors.NonFiniteInitialValueError,
            errors.InvalidRangeError,
            errors.InvalidLearningRateError,
        ],
    )

  @parameterized.named_parameters(
      (
          "weight_decay_none",
          dict(weight_decay_factor=None),
          errors.InvalidHyperparameterError,
      ),
      (
          "weight_decay_string",
          dict(weight_decay_factor="0.1"),
          errors.InvalidHyperparameterError,
      ),
      (
          "initial_value_none",
          dict(algorithm=algorithms.AdamParameters(initial_m=None)),
          errors.NonFiniteInitialValueError,
      ),
      (
          "hyperparameter_string",
          dict(algorithm=algorithms.AdamParameters(beta1="0.9")),
          errors.InvalidHyperparameterError,
      ),
      (
          "clipping_bound_string",
          dict(clipping_limits=clipping.ClippingLimits(lower="-1")),
          errors.InvalidRangeError,
      ),
      (
          "hot_id_slot_count_float",
          dict(
              hot_id_replication=table_config.HotIdReplicationConfig(
                  status=table_config.HotIdReplicationStatus.ENABLED,
                  max_slot_count=16.5,
              )
          ),
          errors.InvalidRangeError,
      ),
  )
  def test_wrongly_typed_field_is_collected(self, kwargs, expected_error):
    result = self.validator.validate([_table("bad", **kwargs), _table("good")])
    self.assertEqual(_error_types(result), [expected_error])
    self.assertEqual(result.errors[0].table_name, "bad")

  def test_invalid_tag_excluded_from_allocation(self):
    result = self.validator.validate([_table("a", tag=-1), _table("b", tag=0)])
    self.assertEqual(_error_types(result), [errors.InvalidTagError])

  def test_resolved_table(self):
    job = self.validator.validate([
        _table(
            "ftrl",
            algorithm=algorithms.FTRLParameters(initial_accum=0.2),
            clipping_limits=clipping.ClippingLimits(lower=-1.0),
            gradient_clipping_limits=clipping.ClippingLimits(upper=5.0),
        ),
    ]).unwrap()
    table = job.table("ftrl")
    self.assertEqual(table.algorithm_name, "ftrl")
    self.assertEqual(
        table.clipping_limits,
        clipping.ClippingLimits(lower=-1.0, upper=math.inf),
    )
    self.assertEqual(
        table.gradient_clipping_limits,
        clipping.ClippingLimits(lower=-math.inf, upper=5.0),
    )
    self.assertTrue(table.gradient_accumulation)
    self.assertFalse(table.hot_id_replication.enabled)
    self.assertEqual(
        [spec.name for spec in table.state_variables],
        ["parameters", "accumulators", "linear", "gradient_accumulators"],
    )
    self.assertEqual(
        [spec.name for spec in table.user_defined_state_variables()],
        ["parameters", "accumulators", "linear"],
    )
    with self.assertRaises(KeyError):
      job.table("missing")

  def test_no_accumulator_slot_when_disabled(self):
    job = self.validator.validate([
        _table(
            "sgd",
            algorithm=algorithms.SGDParameters(),
            gradient_accumulation_status=(
                table_config.GradientAccumulationStatus.DISABLED
            ),
        ),
    ]).unwrap()
    self.assertEqual(
        job.table("sgd").state_variables,
        (
            state_variables.StateVariableSpec(
                name="parameters", usage=state_variables.UserDefined(0.0)
            ),
        ),
    )

  def test_hot_id_replication(self):
    job = self.validator.validate([
        _table(
            "default_slots",
            hot_id_replication=table_config.HotIdReplicationConfig(
                status=table_config.HotIdReplicationStatus.ENABLED
            ),
        ),
        _table(
            "explicit_slots",
            hot_id_replication=table_config.HotIdReplicationConfig(
                status=table_config.HotIdReplicationStatus.ENABLED,
                max_slot_count=16,
            ),
        ),
        _table(
            "ignored_slots",
            hot_id_replication=table_config.HotIdReplicationConfig(
                max_slot_count=16
            ),
        ),
    ]).unwrap()
    self.assertEqual(
        [
            (t.hot_id_replication.enabled, t.hot_id_replication.max_slot_count)
            for t in job.tables
        ],
        [(True, 128), (True, 16), (False, 0)],
    )

  def test_weight_decay_with_mdl_adagrad_light(self):
    result = self.validator.validate([
        _table(
            "mdl",
            algorithm=algorithms.MdlAdagradLightParameters(),
            weight_decay_factor=0.1,
        ),
    ])
    self.assertEqual(_error_types(result), [errors.UnsupportedWeightDecayError])

  @parameterized.parameters(-0.1, math.nan)
  def test_invalid_weight_decay(self, factor):
    result = self.validator.validate([_table("t", weight_decay_factor=factor)])
    self.assertEqual(_error_types(result), [errors.InvalidHyperparameterError])

  def test_weight_decay_warnings(self):
    result = self.validator.validate([
        _table(
            "sgd",
            algorithm=algorithms.SGDParameters(),
            weight_decay_factor=0.01,
            gradient_accumulation_status=(
                table_config.GradientAccumulationStatus.DISABLED
            ),
        ),
        _table("adagrad", weight_decay_factor=0.01),
    ])
    self.assertTrue(result.ok)
    self.assertEqual(
        result.warnings,
        (
            f"Table sgd: {config_validator.SGD_WEIGHT_DECAY_WARNING}",
            "Table sgd: "
            f"{config_validator.WEIGHT_DECAY_WITHOUT_ACCUMULATION_WARNING}",
        ),
    )

  def test_default_and_duplicate_names(self):
    result = self.validator.validate([_table(None), _table("table_0")])
    self.assertEqual(_error_types(result), [errors.DuplicateTableNameError])
    self.assertIn("table_0", str(result.errors[0]))

    job = self.validator.validate([_table(None), _table(None)]).unwrap()
    self.assertEqual([t.name for t in job.tables], ["table_0", "table_1"])

  def test_empty_job(self):
    result = self.validator.validate([])
    self.assertEqual(_error_types(result), [errors.JobConsistencyError])

  def test_parallel_resolution_matches_sequential(self):
    tables = [
        _table(f"t{i}", tag=i % 3, weight_decay_factor=0.001 * i)
        for i in range(16)
    ]
    sequential = self.validator.validate(tables).unwrap()
    parallel = self.validator.validate(tables, max_workers=4).unwrap()
    self.assertEqual(sequential.tables, parallel.tables)
    self.assertEqual(sequential.tag_allocation, parallel.tag_allocation)

  def test_resolved_config_is_immutable(self):
    job = self.validator.validate([_table("a")]).unwrap()
    with self.assertRaises(dataclasses.FrozenInstanceError):
      job.tables[0].name = "b"

  def test_module_level_validate(self):
    result = config_validator.validate([_table("a", tag=0)])
    self.assertEqual(result.unwrap().learning_rate_list_size, 1)


if __name__ == "__main__":
  absltest.main()
