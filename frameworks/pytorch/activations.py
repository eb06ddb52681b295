# Copyright 2020 LMNT, Inc. All Rights Reserved.
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
# ==============================================================================

"""Named activation functions with explicit derivatives.

The backward pass never differentiates through autograd, so every activation
used by a training forward pass must supply its derivative. Derivatives take
both the pre-activation `z` and the activation `a = apply(z)` so that the
common cases (sigmoid, tanh) can reuse the stored forward value.

Variants:
    sigmoid:     1 / (1 + exp(-z))
    tanh:        tanh(z)
    hardsigmoid: clamp(z / 6 + 1/2, 0, 1)
    hardtanh:    clamp(z, -1, 1)
    softsign:    z / (1 + |z|) - gradient-friendly, non-saturating
    relu:        max(z, 0)
    identity:    z
    sign:        sign(z) - forward only, has no usable derivative
"""

from typing import Callable, NamedTuple, Optional

import torch
import torch.nn.functional as F

from .errors import UnsupportedConfiguration


__all__ = [
    'Activation',
    'get_activation',
    'available_activations',
    'SIGMOID',
    'TANH',
]


SIGMOID = 'sigmoid'
TANH = 'tanh'


class Activation(NamedTuple):
  name: str
  apply: Callable[[torch.Tensor], torch.Tensor]
  derivative: Optional[Callable[[torch.Tensor, torch.Tensor], torch.Tensor]]


def _hardsigmoid_derivative(z, a):
  return ((z > -3.0) & (z < 3.0)).to(z.dtype) / 6.0


def _hardtanh_derivative(z, a):
  return ((z > -1.0) & (z < 1.0)).to(z.dtype)


def _softsign_derivative(z, a):
  return 1.0 / (1.0 + z.abs()) ** 2


_ACTIVATIONS = {
    SIGMOID: Activation(SIGMOID, torch.sigmoid, lambda z, a: a * (1.0 - a)),
    TANH: Activation(TANH, torch.tanh, lambda z, a: 1.0 - a * a),
    'hardsigmoid': Activation('hardsigmoid', F.hardsigmoid, _hardsigmoid_derivative),
    'hardtanh': Activation('hardtanh', F.hardtanh, _hardtanh_derivative),
    'softsign': Activation('softsign', F.softsign, _softsign_derivative),
    'relu': Activation('relu', torch.relu, lambda z, a: (z > 0).to(z.dtype)),
    'identity': Activation('identity', lambda z: z, lambda z, a: torch.ones_like(z)),
    'sign': Activation('sign', torch.sign, None),
}


def available_activations():
  return sorted(_ACTIVATIONS)


def get_activation(name, require_derivative=True):
  """
  Looks up an activation by name.

  Arguments:
    name: str, one of `available_activations()`. Matching is case-insensitive.
    require_derivative: (optional) bool, if `True` the activation must
      provide a derivative for the backward pass.

  Returns:
    activation: Activation, the named activation.

  Raises:
    UnsupportedConfiguration: the name is unknown, or a derivative is
      required and the activation has none.
  """
  key = str(name).lower()
  if key not in _ACTIVATIONS:
    raise UnsupportedConfiguration(
        f'Unknown activation {name!r}; expected one of {available_activations()}')
  activation = _ACTIVATIONS[key]
  if require_derivative and activation.derivative is None:
    raise UnsupportedConfiguration(
        f'Activation {activation.name!r} has no derivative and cannot be used for backprop')
  return activation
