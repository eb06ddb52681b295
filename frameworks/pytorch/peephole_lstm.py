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

"""Peephole LSTM

LSTM with peephole connections from the previous memory cell into the input,
forget and output gates (Graves, "Supervised Sequence Labelling with
Recurrent Neural Networks"; the "vanilla" variant of Greff et al. 2015).

The layer can be used two ways:
  * as an ordinary module, `output, (h_n, c_n) = layer(x)`, with autograd;
  * through the explicit activate / backprop API used by a training driver,
    which adds gradients into `param.grad`, caches the forward pass for the
    next backward call, and carries recurrent state for truncated BPTT and
    step-wise streaming inference.
"""

import logging
from collections import OrderedDict

import torch
import torch.nn as nn

from .activations import SIGMOID, TANH
from .base_rnn import BackwardStep, BaseRNN, ForwardStep, MaskState
from .engine import (
    BIAS,
    KERNEL,
    NUM_GATES,
    NUM_PEEPHOLES,
    RECURRENT_KERNEL,
    PeepholeLSTMEngine,
    PeepholeLSTMFunction,
    check_backward_inputs,
)
from .errors import DimensionMismatch, StateMismatch, UnsupportedOperation
from .state import RecurrentStateManager, StateKind
from .trajectory import CacheMode, ForwardPassCache
from .workspace import ArrayType, Workspace


__all__ = [
    'PeepholeLSTM'
]


logger = logging.getLogger(__name__)


class PeepholeLSTM(BaseRNN):
  """
  Peephole LSTM layer.

  Per timestep (gate layout `i, f, o, g`):
    i = gate_activation(W_i x + R_i h + p_i * c_prev + b_i)
    f = gate_activation(W_f x + R_f h + p_f * c_prev + b_f)
    o = gate_activation(W_o x + R_o h + p_o * c_prev + b_o)
    g = activation(W_g x + R_g h + b_g)
    c = f * c_prev + i * g
    h = o * activation(c)

  Each instance owns one streaming state table, one TBPTT state table and at
  most one cached forward pass. It is not safe to use from more than one
  thread at a time.
  """

  def __init__(self,
      input_size,
      hidden_size,
      batch_first=False,
      forget_bias=1.0,
      gate_activation=SIGMOID,
      activation=TANH,
      cache_mode=CacheMode.NONE,
      weight_noise=0.0,
      engine=None):
    """
    Initialize the parameters of the peephole LSTM layer.

    Arguments:
      input_size: int, the feature dimension of the input.
      hidden_size: int, the feature dimension of the output.
      batch_first: (optional) bool, if `True`, then the input and output
        tensors are provided as `(batch, seq, feature)`.
      forget_bias: (optional) float, sets the initial bias of the forget gate.
      gate_activation: (optional) str, activation of the i, f and o gates.
      activation: (optional) str, activation of the g gate and the cell output.
      cache_mode: (optional) CacheMode or str, if not `NONE` a training
        forward pass is kept for the next backward call instead of being
        recomputed. `HOST` parks it in CPU memory.
      weight_noise: (optional) float, standard deviation of additive Gaussian
        noise applied to `kernel` and `recurrent_kernel` during training.
      engine: (optional) object with `forward_pass` and `backward_pass` used by
        the activate / backprop API. Defaults to a `PeepholeLSTMEngine` built
        from `gate_activation` and `activation`.

    Variables:
      kernel: input projection weight matrix. Dimensions
        (input_size, hidden_size * 4) with `i,f,o,g` gate layout. Initialized
        with Xavier uniform.
      recurrent_kernel: recurrent projection weight matrix. Dimensions
        (hidden_size, hidden_size * 4 + 3): `i,f,o,g` gate blocks initialized
        orthogonal, followed by the zero-initialized peephole columns
        `p_i, p_f, p_o`.
      bias: bias vector. Dimensions (hidden_size * 4) with `i,f,o,g` layout.
    """
    super().__init__(input_size, hidden_size, batch_first)

    if input_size <= 0 or hidden_size <= 0:
      raise ValueError('PeepholeLSTM: input_size and hidden_size must be positive')
    if weight_noise < 0:
      raise ValueError('PeepholeLSTM: weight_noise must be non-negative')

    self.forget_bias = forget_bias
    self.weight_noise = weight_noise
    if engine is None:
      engine = PeepholeLSTMEngine(gate_activation, activation)
    elif not isinstance(engine, ForwardStep) or not isinstance(engine, BackwardStep):
      raise TypeError('PeepholeLSTM: engine must implement forward_pass and backward_pass')
    self.engine = engine
    self.cache_mode = CacheMode(cache_mode)

    self.kernel = nn.Parameter(torch.empty(input_size, hidden_size * NUM_GATES))
    self.recurrent_kernel = nn.Parameter(
        torch.empty(hidden_size, hidden_size * NUM_GATES + NUM_PEEPHOLES))
    self.bias = nn.Parameter(torch.empty(hidden_size * NUM_GATES))
    self.reset_parameters()

    self._input = None
    self._mask = None
    self._cache = ForwardPassCache(self.cache_mode)
    self._state = RecurrentStateManager()
    self._weight_noise_params = {}

  @property
  def gate_activation(self):
    return self.engine.gate_activation

  @property
  def activation(self):
    return self.engine.activation

  def reset_parameters(self):
    """Resets this layer's parameters to their initial values."""
    hidden_size = self.hidden_size
    for i in range(NUM_GATES):
      nn.init.xavier_uniform_(self.kernel[:, i*hidden_size:(i+1)*hidden_size])
      nn.init.orthogonal_(self.recurrent_kernel[:, i*hidden_size:(i+1)*hidden_size])
    nn.init.zeros_(self.recurrent_kernel[:, NUM_GATES*hidden_size:])
    nn.init.zeros_(self.bias)
    nn.init.constant_(self.bias[hidden_size:hidden_size*2], self.forget_bias)

  def forward(self, input, state=None, mask=None):
    """
    Runs a forward pass of the peephole LSTM layer.

    Arguments:
      input: Tensor, a batch of input sequences to pass through the LSTM.
        Dimensions (seq_len, batch_size, input_size) if `batch_first` is
        `False`, otherwise (batch_size, seq_len, input_size).
      state: (optional) tuple of (h0, c0), the initial hidden and memory cell
        states. Each has dimensions (1, batch_size, hidden_size).
      mask: (optional) Tensor, zero marks a padded time step. Dimensions
        (seq_len, batch_size), or (batch_size, seq_len) if `batch_first`.

    Returns:
      output: Tensor, the output of the LSTM layer. Dimensions
        (seq_len, batch_size, hidden_size) if `batch_first` is `False` (default)
        or (batch_size, seq_len, hidden_size) if `batch_first` is `True`.
      (h_n, c_n): the hidden and memory cell state after the last valid
        sequence item. Dimensions (1, batch_size, hidden_size).
    """
    input = self._permute(input)
    mask = self._permute_mask(mask)
    state_shape = [1, input.shape[1], self.hidden_size]
    h0, c0 = self._get_state(input, (None, None) if state is None else state, state_shape)

    kernel, recurrent_kernel = self.kernel, self.recurrent_kernel
    if self.training and self.weight_noise:
      kernel = kernel + self.weight_noise * torch.randn_like(kernel)
      recurrent_kernel = recurrent_kernel + self.weight_noise * torch.randn_like(recurrent_kernel)

    output, h_n, c_n = PeepholeLSTMFunction.apply(
        self.training,
        self.gate_activation,
        self.activation,
        input.contiguous(),
        h0[0].contiguous(),
        c0[0].contiguous(),
        kernel.contiguous(),
        recurrent_kernel.contiguous(),
        self.bias.contiguous(),
        mask)
    return self._permute(output), (h_n.unsqueeze(0), c_n.unsqueeze(0))

  def set_input(self, input):
    if input.dim() != 3:
      raise DimensionMismatch(
          f'PeepholeLSTM: input must be 3-D, got shape {tuple(input.shape)}')
    self._input = self._permute(input)

  def set_mask_array(self, mask):
    self._mask = self._permute_mask(mask)

  @property
  def mask_array(self):
    return self._permute_mask(self._mask)

  def _get_param_with_noise(self, name, training):
    param = getattr(self, name).detach()
    if not training or not self.weight_noise or name == BIAS:
      return param
    # Noise is drawn once per parameter version.
    version, noisy = self._weight_noise_params.get(name, (None, None))
    if version != param._version:
      noisy = param + self.weight_noise * torch.randn_like(param)
      self._weight_noise_params[name] = (param._version, noisy)
    return noisy

  def _parameter_versions(self):
    return tuple(getattr(self, name)._version for name in (KERNEL, RECURRENT_KERNEL, BIAS))

  def _gradient_views(self):
    gradients = OrderedDict()
    for name in (KERNEL, RECURRENT_KERNEL, BIAS):
      param = getattr(self, name)
      if param.grad is None:
        param.grad = torch.zeros_like(param)
      gradients[name] = param.grad
    return gradients

  def _activate_helper(self, training, prev_activation, prev_memory_cell, for_backprop, workspace):
    if self._input is None:
      raise StateMismatch('PeepholeLSTM: no input has been set')

    weight_versions = self._parameter_versions()
    if for_backprop:
      cached = self._cache.take_if_present()
      if cached is not None:
        if cached.matches(self._input, prev_activation, prev_memory_cell, self._mask, weight_versions):
          logger.debug('Using cached forward pass for backprop')
          return cached
        logger.debug('Discarding stale cached forward pass')

    kernel = self._get_param_with_noise(KERNEL, training)
    recurrent_kernel = self._get_param_with_noise(RECURRENT_KERNEL, training)
    bias = self._get_param_with_noise(BIAS, training)

    store = training and not for_backprop and self._cache.enabled
    with workspace.scope(ArrayType.FF_WORKING_MEM):
      trajectory = self.engine.forward_pass(
          self._input, kernel, recurrent_kernel, bias, training,
          prev_activation=prev_activation,
          prev_memory_cell=prev_memory_cell,
          mask=self._mask,
          for_backprop=for_backprop or store,
          workspace=workspace)
    trajectory.weight_versions = weight_versions

    if store:
      self._cache.store(trajectory, workspace)
    elif not for_backprop:
      self._cache.invalidate()
    return trajectory

  def activate(self, input=None, training=False, workspace=None):
    """
    Runs a single forward pass from a zero initial state.

    Arguments:
      input: (optional) Tensor, the input sequence. If None, the input from
        the previous `set_input` or `activate` call is reused.
      training: (optional) bool, whether this is a training pass. Training
        passes are cached for the next backward call if `cache_mode` is set.
      workspace: (optional) Workspace.

    Returns:
      output: Tensor, the output activations.
    """
    if input is not None:
      self.set_input(input)
    workspace = workspace if workspace is not None else Workspace()
    trajectory = self._activate_helper(training, None, None, False, workspace)
    return self._permute(trajectory.output)

  def backprop_gradient(self, epsilon, workspace=None):
    """
    Full backpropagation through time for the current input.

    Returns:
      gradients: OrderedDict, the `param.grad` buffers the gradients were added to.
      input_gradient: Tensor, gradient with respect to the input sequence.
    """
    return self._backprop_gradient_helper(epsilon, False, -1, workspace)

  def tbptt_backprop_gradient(self, epsilon, tbptt_backward_length, workspace=None):
    """
    Truncated BPTT for one segment.

    The forward pass starts from the TBPTT state left by the previous
    segment; after a successful backward pass that state is replaced by this
    segment's last step.
    """
    return self._backprop_gradient_helper(epsilon, True, tbptt_backward_length, workspace)

  def _backprop_gradient_helper(self, epsilon, truncated, tbptt_backward_length, workspace):
    workspace = workspace if workspace is not None else Workspace()
    epsilon = self._permute(epsilon)
    try:
      if truncated:
        prev_activation, prev_memory_cell = self._state.initial_state(StateKind.TBPTT)
      else:
        prev_activation = prev_memory_cell = None
      trajectory = self._activate_helper(True, prev_activation, prev_memory_cell, True, workspace)
      check_backward_inputs(epsilon, trajectory, truncated, tbptt_backward_length)

      gradients = self._gradient_views()
      with workspace.scope(ArrayType.BP_WORKING_MEM):
        gradients, input_gradient, _, _ = self.engine.backward_pass(
            epsilon, trajectory, gradients,
            truncated=truncated,
            truncation_length=tbptt_backward_length,
            workspace=workspace)

      if truncated:
        self._state.store_last(StateKind.TBPTT, trajectory, workspace)
    finally:
      self._weight_noise_params.clear()
    return gradients, self._permute(input_gradient)

  def rnn_time_step(self, input, workspace=None):
    """
    Streaming inference from the stored streaming state.

    Arguments:
      input: Tensor, a single step (batch_size, input_size) or a sequence.

    Returns:
      output: Tensor, (batch_size, hidden_size) for a single step, otherwise
        the output sequence.
    """
    single_step = input.dim() == 2
    if single_step:
      input = input.unsqueeze(1 if self.batch_first else 0)
    self.set_input(input)
    workspace = workspace if workspace is not None else Workspace()

    prev_activation, prev_memory_cell = self._state.initial_state(StateKind.STREAMING)
    trajectory = self._activate_helper(False, prev_activation, prev_memory_cell, False, workspace)
    self._state.store_last(StateKind.STREAMING, trajectory, workspace)

    output = trajectory.output
    if single_step:
      return output[0]
    return self._permute(output)

  def rnn_activate_using_stored_state(self, input, training, store_last_for_tbptt, workspace=None):
    """
    Forward pass from the stored streaming state without updating it.

    If `store_last_for_tbptt` is set, the last step's state is written to the
    TBPTT table.
    """
    self.set_input(input)
    workspace = workspace if workspace is not None else Workspace()

    prev_activation, prev_memory_cell = self._state.initial_state(StateKind.STREAMING)
    trajectory = self._activate_helper(training, prev_activation, prev_memory_cell, False, workspace)
    if store_last_for_tbptt:
      self._state.store_last(StateKind.TBPTT, trajectory, workspace)
    return self._permute(trajectory.output)

  def feed_forward_mask_array(self, mask, current_mask_state, minibatch_size):
    # Masking is applied inside this layer's forward and backward passes, so
    # downstream layers see the mask as passthrough.
    return mask, MaskState.PASSTHROUGH

  def rnn_get_previous_state(self):
    return self._state.table(StateKind.STREAMING).snapshot()

  def rnn_set_previous_state(self, states):
    self._state.set_state(StateKind.STREAMING, states)

  def rnn_clear_previous_state(self):
    self._state.clear(StateKind.STREAMING)

  def rnn_get_tbptt_state(self):
    return self._state.table(StateKind.TBPTT).snapshot()

  def rnn_set_tbptt_state(self, states):
    self._state.set_state(StateKind.TBPTT, states)

  def gradient(self):
    raise UnsupportedOperation(
        'gradient() for layerwise pretraining is not supported for PeepholeLSTM')

  def transpose(self):
    raise UnsupportedOperation('transpose() is not supported for PeepholeLSTM')

  def is_pretrain_layer(self):
    return False

  def extra_repr(self):
    return (f'input_size={self.input_size}, hidden_size={self.hidden_size}, '
            f'batch_first={self.batch_first}, gate_activation={self.gate_activation}, '
            f'activation={self.activation}, cache_mode={self.cache_mode.value}')
