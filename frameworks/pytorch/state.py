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

"""Recurrent state carried between calls.

A layer owns two independent tables. The streaming table feeds step-wise
inference (`rnn_time_step`); the TBPTT table seeds the next truncated
training segment. Neither call path reads or writes the other's table.
"""

import enum
import logging

from .workspace import ArrayType


__all__ = [
    'PREV_ACTIVATION',
    'PREV_MEMORY_CELL',
    'StateKind',
    'StateTable',
    'RecurrentStateManager',
]


logger = logging.getLogger(__name__)


PREV_ACTIVATION = 'prevActivation'
PREV_MEMORY_CELL = 'prevMemoryCell'


class StateKind(enum.Enum):
  STREAMING = 'streaming'
  TBPTT = 'tbptt'


class StateTable:
  def __init__(self, kind):
    self.kind = kind
    self._entries = {}

  def get(self, key):
    return self._entries.get(key)

  def put(self, key, tensor):
    self._entries[key] = tensor

  def clear(self):
    self._entries.clear()

  def snapshot(self):
    return dict(self._entries)

  def __contains__(self, key):
    return key in self._entries

  def __len__(self):
    return len(self._entries)

  def __repr__(self):
    return f'StateTable({self.kind.value}, keys={sorted(self._entries)})'


class RecurrentStateManager:
  def __init__(self):
    self._tables = {kind: StateTable(kind) for kind in StateKind}

  def table(self, kind):
    return self._tables[StateKind(kind)]

  def get(self, kind, key):
    return self.table(kind).get(key)

  def put(self, kind, key, tensor):
    self.table(kind).put(key, tensor)

  def initial_state(self, kind):
    """Returns `(prev_activation, prev_memory_cell)`; either may be None."""
    table = self.table(kind)
    return table.get(PREV_ACTIVATION), table.get(PREV_MEMORY_CELL)

  def store_last(self, kind, trajectory, workspace):
    """Promotes the trajectory's last-step snapshots into the `kind` table."""
    table = self.table(kind)
    table.put(PREV_ACTIVATION, workspace.leverage_to(ArrayType.RNN_STATE, trajectory.last_activation))
    table.put(PREV_MEMORY_CELL, workspace.leverage_to(ArrayType.RNN_STATE, trajectory.last_memory_cell))
    logger.debug('Stored %s state (B=%d, H=%d)', table.kind.value,
                 trajectory.batch_size, trajectory.hidden_size)

  def set_state(self, kind, states):
    table = self.table(kind)
    table.clear()
    for key, value in states.items():
      table.put(key, value.detach())

  def clear(self, kind):
    self.table(kind).clear()
    logger.debug('Cleared %s state', StateKind(kind).value)
