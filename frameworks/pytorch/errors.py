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

"""Errors raised by the peephole LSTM layer.

Every error carries a `kind` so callers can branch on the error class
without matching exception types. All of them abort the current call; none
are retried internally.
"""

import enum


__all__ = [
    'ErrorKind',
    'LSTMError',
    'UnsupportedOperation',
    'DimensionMismatch',
    'StateMismatch',
    'UnsupportedConfiguration',
]


class ErrorKind(enum.Enum):
  UNSUPPORTED_OPERATION = 'unsupported_operation'
  DIMENSION_MISMATCH = 'dimension_mismatch'
  STATE_MISMATCH = 'state_mismatch'
  UNSUPPORTED_CONFIGURATION = 'unsupported_configuration'


class LSTMError(Exception):
  kind = None


class UnsupportedOperation(LSTMError, NotImplementedError):
  """The operation has no defined semantics for this layer."""
  kind = ErrorKind.UNSUPPORTED_OPERATION


class DimensionMismatch(LSTMError, ValueError):
  """Weights, input, mask or epsilon have inconsistent shapes."""
  kind = ErrorKind.DIMENSION_MISMATCH


class StateMismatch(LSTMError, ValueError):
  """A trajectory disagrees with the epsilon or input it is used with."""
  kind = ErrorKind.STATE_MISMATCH


class UnsupportedConfiguration(LSTMError, ValueError):
  """An activation function cannot be used as configured."""
  kind = ErrorKind.UNSUPPORTED_CONFIGURATION
