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

"""Forward-pass trajectory bundle and the single-slot cache that hands it to
the next backward call."""

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from .activations import SIGMOID, TANH
from .workspace import ArrayType


__all__ = [
    'CacheMode',
    'Trajectory',
    'ForwardPassCache',
]


logger = logging.getLogger(__name__)


class CacheMode(enum.Enum):
  NONE = 'none'
  HOST = 'host'
  DEVICE = 'device'


@dataclass
class Trajectory:
  """
  Everything one forward pass produced that an exact backward pass needs.

  Shapes use T = seq_len, B = batch_size, H = hidden_size. Gate tensors are
  laid out `[i, f, o, g]` along the last dimension.

  Attributes:
    output: (T, B, H) output activations; zero at masked steps.
    hidden_states: (T+1, B, H) carried hidden state; index 0 is the initial state.
    cell_states: (T+1, B, H) carried memory cell state; index 0 is the initial state.
    last_activation: (B, H) view of `hidden_states[-1]`.
    last_memory_cell: (B, H) view of `cell_states[-1]`.
    training: bool, whether the pass ran in training mode.
    input: (T, B, C) input the pass consumed.
    kernel, recurrent_kernel, bias: the (possibly noised) weights used.
    pre_activations: (T, B, 4H) gate pre-activations, peepholes included.
    activations: (T, B, 4H) gate activations.
    memory_cells: (T, B, H) unmasked cell update `f*c_prev + i*g`.
    cell_activations: (T, B, H) `activation(memory_cells)`.
    mask: (T, B, 1) bool step mask, or None.
    sources: references to the caller's input, initial state and mask used
      to detect a stale bundle.
    input_version, weight_versions: in-place version counters of the input
      and of the parameters the weights were taken from, at forward time.
  """

  output: torch.Tensor
  hidden_states: torch.Tensor
  cell_states: torch.Tensor
  training: bool
  input: Optional[torch.Tensor] = None
  kernel: Optional[torch.Tensor] = None
  recurrent_kernel: Optional[torch.Tensor] = None
  bias: Optional[torch.Tensor] = None
  pre_activations: Optional[torch.Tensor] = None
  activations: Optional[torch.Tensor] = None
  memory_cells: Optional[torch.Tensor] = None
  cell_activations: Optional[torch.Tensor] = None
  mask: Optional[torch.Tensor] = None
  gate_activation: str = SIGMOID
  activation: str = TANH
  sources: Tuple = ()
  input_version: int = -1
  weight_versions: Tuple = ()

  @property
  def last_activation(self):
    return self.hidden_states[-1]

  @property
  def last_memory_cell(self):
    return self.cell_states[-1]

  @property
  def time_steps(self):
    return self.output.shape[0]

  @property
  def batch_size(self):
    return self.output.shape[1]

  @property
  def hidden_size(self):
    return self.output.shape[2]

  @property
  def retained(self):
    return self.pre_activations is not None

  @property
  def device(self):
    return self.output.device

  def matches(self, input, prev_activation=None, prev_memory_cell=None, mask=None,
              weight_versions=None):
    """True if this bundle was computed from exactly these caller tensors.

    If `weight_versions` is given, the parameters must also be unmodified
    since the forward pass.
    """
    if len(self.sources) != 4:
      return False
    expected = (input, prev_activation, prev_memory_cell, mask)
    if any(a is not b for a, b in zip(self.sources, expected)):
      return False
    if weight_versions is not None and tuple(weight_versions) != tuple(self.weight_versions):
      return False
    return input is None or input._version == self.input_version

  def to(self, device):
    """Returns a copy with every tensor moved to `device`."""
    changes = {}
    for field in dataclasses.fields(self):
      value = getattr(self, field.name)
      if isinstance(value, torch.Tensor):
        changes[field.name] = value.to(device)
    return dataclasses.replace(self, **changes)

  def promote(self, workspace, array_type=ArrayType.CACHE):
    """Returns a copy whose tensors are owned outside any workspace scope."""
    changes = {}
    for field in dataclasses.fields(self):
      value = getattr(self, field.name)
      if isinstance(value, torch.Tensor):
        changes[field.name] = workspace.leverage_to(array_type, value)
    return dataclasses.replace(self, **changes)


class ForwardPassCache:
  """
  Hand-off buffer for exactly one forward -> backward pair.

  Holds at most one trajectory. `take_if_present` is single-use: it returns
  the bundle and empties the slot. In `HOST` mode the bundle is parked in CPU
  memory and moved back to its original device when taken.
  """

  def __init__(self, cache_mode=CacheMode.NONE):
    self.cache_mode = CacheMode(cache_mode)
    self._trajectory = None
    self._device = None

  @property
  def enabled(self):
    return self.cache_mode is not CacheMode.NONE

  def is_present(self):
    return self._trajectory is not None

  def store(self, trajectory, workspace=None):
    """Keeps `trajectory` for the next backward call.

    With a `workspace`, the bundle is first promoted to `ArrayType.CACHE`
    so that it outlives the scopes its arrays were allocated in.
    """
    if not self.enabled:
      return
    if workspace is not None:
      trajectory = trajectory.promote(workspace)
    if self._trajectory is not None:
      logger.debug('Overwriting cached forward pass')
    self._device = trajectory.device
    if self.cache_mode is CacheMode.HOST:
      trajectory = trajectory.to('cpu')
    self._trajectory = trajectory
    logger.debug('Cached forward pass (T=%d, B=%d, mode=%s)',
                 trajectory.time_steps, trajectory.batch_size, self.cache_mode.value)

  def take_if_present(self):
    trajectory, self._trajectory = self._trajectory, None
    if trajectory is None:
      return None
    if trajectory.device != self._device:
      trajectory = trajectory.to(self._device)
    return trajectory

  def invalidate(self):
    if self._trajectory is not None:
      logger.debug('Invalidating cached forward pass')
    self._trajectory = None
