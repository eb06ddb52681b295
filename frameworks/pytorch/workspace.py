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

"""Scoped tensor workspace.

WORKSPACE LIFECYCLE:
1. Open a scope for one kind of memory: `with workspace.scope(ArrayType.X):`
2. Allocate temporaries with `workspace.create(ArrayType.X, shape, like)`
3. On scope exit (normal return or exception) the workspace drops every
   reference it handed out for that scope
4. Tensors that must outlive the call (recurrent state, cached trajectories)
   are promoted with `leverage_to`, which returns an untracked copy

Allocating outside an open scope is allowed; the tensor is simply untracked,
so the engines run the same with or without a caller-supplied workspace.
"""

import contextlib
import enum
import logging
from collections import Counter


__all__ = [
    'ArrayType',
    'Workspace',
]


logger = logging.getLogger(__name__)


class ArrayType(enum.Enum):
  ACTIVATIONS = 'activations'
  FF_WORKING_MEM = 'ff_working_mem'
  BP_WORKING_MEM = 'bp_working_mem'
  RNN_STATE = 'rnn_state'
  CACHE = 'cache'


class Workspace:
  def __init__(self, name='workspace'):
    self.name = name
    self._scopes = {}
    self._promoted = Counter()

  @contextlib.contextmanager
  def scope(self, array_type):
    """Tracks allocations of `array_type` until the block exits."""
    if array_type in self._scopes:
      # Nested scope of the same type shares the outer one.
      yield self
      return
    self._scopes[array_type] = []
    try:
      yield self
    finally:
      released = self._scopes.pop(array_type)
      logger.debug('%s: released %d %s arrays', self.name, len(released), array_type.value)

  def is_open(self, array_type):
    return array_type in self._scopes

  def create(self, array_type, shape, like, zero=False):
    """Allocates a tensor with the dtype and device of `like`."""
    shape = tuple(shape)
    tensor = like.new_zeros(shape) if zero else like.new_empty(shape)
    tracked = self._scopes.get(array_type)
    if tracked is not None:
      tracked.append(tensor)
    return tensor

  def leverage_to(self, array_type, tensor):
    """Moves `tensor` to longer-lived ownership as an independent copy."""
    if tensor is None:
      return None
    self._promoted[array_type] += 1
    logger.debug('%s: promoted %s array of shape %s', self.name, array_type.value, tuple(tensor.shape))
    return tensor.detach().clone()

  def live_count(self, array_type):
    return len(self._scopes.get(array_type, ()))

  def promoted_count(self, array_type):
    return self._promoted[array_type]
