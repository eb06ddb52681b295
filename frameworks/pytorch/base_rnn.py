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

import enum
from typing import Protocol, runtime_checkable

import torch.nn as nn

from .errors import DimensionMismatch


__all__ = [
    'BaseRNN',
    'MaskState',
    'ForwardStep',
    'BackwardStep',
]


class MaskState(enum.Enum):
  ACTIVE = 'active'
  PASSTHROUGH = 'passthrough'


@runtime_checkable
class ForwardStep(Protocol):
  """Runs one forward pass given the previous recurrent state."""

  def forward_pass(self, input, kernel, recurrent_kernel, bias, training,
                   prev_activation=None, prev_memory_cell=None, mask=None,
                   for_backprop=False, workspace=None):
    ...


@runtime_checkable
class BackwardStep(Protocol):
  """Runs one backward pass over a retained trajectory."""

  def backward_pass(self, epsilon, trajectory, gradients=None, truncated=False,
                    truncation_length=-1, grad_last_activation=None,
                    grad_last_memory_cell=None, workspace=None):
    ...


class BaseRNN(nn.Module):
  def __init__(self, input_size, hidden_size, batch_first):
    super().__init__()
    self.input_size = input_size
    self.hidden_size = hidden_size
    self.batch_first = batch_first

  def _permute(self, x):
    if x is not None and self.batch_first:
      return x.transpose(0, 1)
    return x

  def _permute_mask(self, mask):
    if mask is not None and self.batch_first:
      return mask.transpose(0, 1)
    return mask

  def _get_state(self, input, state, state_shape):
    if state is None:
      state = _zero_state(input, state_shape)
    elif isinstance(state, (tuple, list)):
      state = [_zero_state(input, state_shape) if s is None else s for s in state]
      for s in state:
        _validate_state(s, state_shape)
    else:
      _validate_state(state, state_shape)
    return state


def _validate_state(state, state_shape):
  if tuple(state.shape) != tuple(state_shape):
    raise DimensionMismatch(
        f'State shape {tuple(state.shape)} does not match expected {tuple(state_shape)}')


def _zero_state(input, state_shape):
  return input.new_zeros(*state_shape)
