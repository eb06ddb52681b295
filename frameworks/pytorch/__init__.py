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

"""
Peephole LSTM: a recurrent layer with explicit forward/backward engines,
truncated BPTT and streaming inference state.
"""

from ._version import __version__
from .activations import get_activation, available_activations
from .base_rnn import BackwardStep, ForwardStep, MaskState
from .engine import (
    forward_pass,
    backward_pass,
    check_backward_inputs,
    PeepholeLSTMEngine,
    PeepholeLSTMFunction,
)
from .errors import (
    ErrorKind,
    LSTMError,
    UnsupportedOperation,
    DimensionMismatch,
    StateMismatch,
    UnsupportedConfiguration,
)
from .peephole_lstm import PeepholeLSTM
from .state import PREV_ACTIVATION, PREV_MEMORY_CELL, StateKind, RecurrentStateManager
from .trajectory import CacheMode, Trajectory, ForwardPassCache
from .workspace import ArrayType, Workspace

__all__ = [
    'PeepholeLSTM',
    'PeepholeLSTMEngine',
    'PeepholeLSTMFunction',
    'forward_pass',
    'backward_pass',
    'check_backward_inputs',
    'get_activation',
    'available_activations',
    'CacheMode',
    'MaskState',
    'ForwardStep',
    'BackwardStep',
    'Trajectory',
    'ForwardPassCache',
    'RecurrentStateManager',
    'StateKind',
    'PREV_ACTIVATION',
    'PREV_MEMORY_CELL',
    'ArrayType',
    'Workspace',
    'ErrorKind',
    'LSTMError',
    'UnsupportedOperation',
    'DimensionMismatch',
    'StateMismatch',
    'UnsupportedConfiguration',
]
