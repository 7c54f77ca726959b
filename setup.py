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

"""Setup.py file for tpu_embedding_optimization."""

from setuptools import find_namespace_packages
from setuptools import setup

install_requires = [
    'absl-py',
    'flax',
    'jax',
    'numpy',
]

tests_require = [
    'pytest',
]

setup(
    name='tpu_embedding_optimization',
    version='0.1.0',
    description=(
        'Optimizer configuration resolution and validation for TPU embedding'
        ' tables'
    ),
    author='Jax TPU Embedding Team',
    author_email='jax-tpu-embedding-dev@google.com',
    packages=find_namespace_packages(
        include=['tpu_embedding_optimization', 'tpu_embedding_optimization.*']
    ),
    python_requires='>=3.10',
    install_requires=install_requires,
    extras_require={'test': tests_require},
    url='https://github.com/jax-ml/jax-tpu-embedding',
    license='Apache-2.0',
    classifiers=[
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
    zip_safe=False,
)
