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

"""Forward and backward engines for the peephole LSTM.

Per timestep, with gate layout [i, f, o, g]:
  i = gate(x @ W_i + h_prev @ R_i + c_prev * p_i + b_i)
  f = gate(x @ W_f + h_prev @ R_f + c_prev * p_f + b_f)
  o = gate(x @ W_o + h_prev @ R_o + c_prev * p_o + b_o)
  g = act(x @ W_g + h_prev @ R_g + b_g)
  c = f * c_prev + i * g
  h = o * act(c)

`recurrent_kernel` is (H, 4H + 3): the four recurrent gate blocks followed by
the peephole columns p_i, p_f, p_o. At a masked step the carried state is
frozen and the output is zero; the backward pass mirrors that exactly.
"""

from collections import OrderedDict

import torch

from .activations import SIGMOID, TANH, get_activation
from .errors import DimensionMismatch, StateMismatch, UnsupportedOperation
from .trajectory import Trajectory
from .workspace import ArrayType, Workspace


__all__ = [
    'KERNEL',
    'RECURRENT_KERNEL',
    'BIAS',
    'forward_pass',
    'backward_pass',
    'check_backward_inputs',
    'PeepholeLSTMEngine',
    'PeepholeLSTMFunction',
]


KERNEL = 'kernel'
RECURRENT_KERNEL = 'recurrent_kernel'
BIAS = 'bias'

NUM_GATES = 4
NUM_PEEPHOLES = 3


def _check_weights(input, kernel, recurrent_kernel, bias):
  if input.dim() != 3:
    raise DimensionMismatch(
        f'Input must be (seq_len, batch_size, input_size), got shape {tuple(input.shape)}')
  if recurrent_kernel.dim() != 2:
    raise DimensionMismatch(
        f'recurrent_kernel must be 2-D, got shape {tuple(recurrent_kernel.shape)}')
  hidden_size = recurrent_kernel.shape[0]
  expected = {
      KERNEL: (kernel, (input.shape[2], NUM_GATES * hidden_size)),
      RECURRENT_KERNEL: (recurrent_kernel, (hidden_size, NUM_GATES * hidden_size + NUM_PEEPHOLES)),
      BIAS: (bias, (NUM_GATES * hidden_size,)),
  }
  for name, (tensor, shape) in expected.items():
    if tuple(tensor.shape) != shape:
      raise DimensionMismatch(
          f'{name} has shape {tuple(tensor.shape)}, expected {shape} '
          f'for input_size={input.shape[2]}, hidden_size={hidden_size}')
  return hidden_size


def _check_state(state, name, batch_size, hidden_size, like):
  if state is None:
    return like.new_zeros(batch_size, hidden_size)
  if state.dim() == 3 and state.shape[0] == 1:
    state = state[0]
  if tuple(state.shape) != (batch_size, hidden_size):
    raise DimensionMismatch(
        f'{name} has shape {tuple(state.shape)}, expected {(batch_size, hidden_size)}')
  return state.to(dtype=like.dtype, device=like.device)


def _check_mask(mask, time_steps, batch_size, device):
  if mask is None:
    return None
  if tuple(mask.shape) != (time_steps, batch_size):
    raise DimensionMismatch(
        f'Mask has shape {tuple(mask.shape)}, expected (seq_len, batch_size) = '
        f'{(time_steps, batch_size)}')
  return (mask != 0).to(device).unsqueeze(-1)


def _gradient_buffers(gradients, kernel, recurrent_kernel, bias):
  params = OrderedDict([(KERNEL, kernel), (RECURRENT_KERNEL, recurrent_kernel), (BIAS, bias)])
  if gradients is None:
    return OrderedDict((name, torch.zeros_like(p)) for name, p in params.items())
  for name, p in params.items():
    buffer = gradients.get(name)
    if buffer is None or buffer.shape != p.shape:
      raise DimensionMismatch(
          f'Gradient buffer {name!r} must have shape {tuple(p.shape)}, '
          f'got {None if buffer is None else tuple(buffer.shape)}')
  return gradients


@torch.no_grad()
def forward_pass(
    input,
    kernel,
    recurrent_kernel,
    bias,
    training,
    prev_activation=None,
    prev_memory_cell=None,
    mask=None,
    for_backprop=False,
    gate_activation=SIGMOID,
    activation=TANH,
    workspace=None):
  """
  Computes the gate, cell and output trajectory for one input sequence.

  Arguments:
    input: Tensor, (seq_len, batch_size, input_size).
    kernel: Tensor, (input_size, 4 * hidden_size).
    recurrent_kernel: Tensor, (hidden_size, 4 * hidden_size + 3).
    bias: Tensor, (4 * hidden_size).
    training: bool, recorded in the trajectory; only training trajectories
      can be backpropagated.
    prev_activation: (optional) Tensor, initial hidden state
      (batch_size, hidden_size). Zeros if None.
    prev_memory_cell: (optional) Tensor, initial memory cell state. Zeros if None.
    mask: (optional) Tensor, (seq_len, batch_size); zero marks a padded step.
    for_backprop: (optional) bool, if `True` retain every intermediate the
      backward pass needs.
    gate_activation: (optional) str, activation of the i, f and o gates.
    activation: (optional) str, activation of the g gate and the cell output.
    workspace: (optional) Workspace used for allocations.

  Returns:
    trajectory: Trajectory.
  """
  hidden_size = _check_weights(input, kernel, recurrent_kernel, bias)
  time_steps, batch_size, _ = input.shape
  gate_fn = get_activation(gate_activation, require_derivative=for_backprop)
  act_fn = get_activation(activation, require_derivative=for_backprop)
  if workspace is None:
    workspace = Workspace()

  h0 = _check_state(prev_activation, 'prev_activation', batch_size, hidden_size, input)
  c0 = _check_state(prev_memory_cell, 'prev_memory_cell', batch_size, hidden_size, input)
  step_mask = _check_mask(mask, time_steps, batch_size, input.device)

  H = hidden_size
  R = recurrent_kernel[:, :NUM_GATES * H]
  peephole = recurrent_kernel[:, NUM_GATES * H:].t().reshape(-1)  # [p_i, p_f, p_o]

  hidden_states = workspace.create(ArrayType.ACTIVATIONS, (time_steps + 1, batch_size, H), input)
  cell_states = workspace.create(ArrayType.ACTIVATIONS, (time_steps + 1, batch_size, H), input)
  output = workspace.create(ArrayType.ACTIVATIONS, (time_steps, batch_size, H), input)
  hidden_states[0] = h0
  cell_states[0] = c0

  pre_activations = activations = memory_cells = cell_activations = gates = None
  if for_backprop:
    pre_activations = workspace.create(ArrayType.FF_WORKING_MEM, (time_steps, batch_size, 4 * H), input)
    activations = workspace.create(ArrayType.FF_WORKING_MEM, (time_steps, batch_size, 4 * H), input)
    memory_cells = workspace.create(ArrayType.FF_WORKING_MEM, (time_steps, batch_size, H), input)
    cell_activations = workspace.create(ArrayType.FF_WORKING_MEM, (time_steps, batch_size, H), input)
  else:
    gates = workspace.create(ArrayType.FF_WORKING_MEM, (batch_size, 4 * H), input)

  Wx = input @ kernel + bias  # [T, B, H*4]
  for t in range(time_steps):
    h_prev = hidden_states[t]
    c_prev = cell_states[t]

    z = Wx[t] + h_prev @ R
    z[:, :3 * H] += c_prev.repeat(1, NUM_PEEPHOLES) * peephole

    a = activations[t] if for_backprop else gates
    a[:, :3 * H] = gate_fn.apply(z[:, :3 * H])
    a[:, 3 * H:] = act_fn.apply(z[:, 3 * H:])
    i, f, o, g = torch.chunk(a, NUM_GATES, 1)

    c_new = f * c_prev + i * g
    c_act = act_fn.apply(c_new)
    h_new = o * c_act

    if step_mask is None:
      hidden_states[t + 1] = h_new
      cell_states[t + 1] = c_new
      output[t] = h_new
    else:
      m = step_mask[t]
      hidden_states[t + 1] = torch.where(m, h_new, h_prev)
      cell_states[t + 1] = torch.where(m, c_new, c_prev)
      output[t] = torch.where(m, h_new, torch.zeros_like(h_new))

    if for_backprop:
      pre_activations[t] = z
      memory_cells[t] = c_new
      cell_activations[t] = c_act

  return Trajectory(
      output=output,
      hidden_states=hidden_states,
      cell_states=cell_states,
      training=training,
      input=input if for_backprop else None,
      kernel=kernel if for_backprop else None,
      recurrent_kernel=recurrent_kernel if for_backprop else None,
      bias=bias if for_backprop else None,
      pre_activations=pre_activations,
      activations=activations,
      memory_cells=memory_cells,
      cell_activations=cell_activations,
      mask=step_mask,
      gate_activation=gate_fn.name,
      activation=act_fn.name,
      sources=(input, prev_activation, prev_memory_cell, mask),
      input_version=input._version,
      weight_versions=(kernel._version, recurrent_kernel._version, bias._version))


def check_backward_inputs(epsilon, trajectory, truncated=False, truncation_length=-1):
  """Raises if `epsilon` cannot be backpropagated through `trajectory`."""
  if not trajectory.retained:
    raise StateMismatch('Trajectory was not retained for backprop')
  if not trajectory.training:
    raise UnsupportedOperation('PeepholeLSTM backward can only be called in training mode')

  time_steps, batch_size, H = trajectory.time_steps, trajectory.batch_size, trajectory.hidden_size
  if epsilon.dim() != 3:
    raise DimensionMismatch(
        f'Epsilon must be (seq_len, batch_size, hidden_size), got shape {tuple(epsilon.shape)}')
  if epsilon.shape[0] != time_steps:
    raise StateMismatch(
        f'Epsilon has {epsilon.shape[0]} time steps but the trajectory has {time_steps}')
  if tuple(epsilon.shape[1:]) != (batch_size, H):
    raise DimensionMismatch(
        f'Epsilon has shape {tuple(epsilon.shape)}, expected {(time_steps, batch_size, H)}')
  if truncated and truncation_length <= 0:
    raise ValueError(f'PeepholeLSTM: truncation_length must be positive, got {truncation_length}')


@torch.no_grad()
def backward_pass(
    epsilon,
    trajectory,
    gradients=None,
    truncated=False,
    truncation_length=-1,
    grad_last_activation=None,
    grad_last_memory_cell=None,
    workspace=None):
  """
  Backpropagates through time over a retained trajectory.

  Arguments:
    epsilon: Tensor, (seq_len, batch_size, hidden_size) gradient of the loss
      with respect to the trajectory's output.
    trajectory: Trajectory, from a training `forward_pass(for_backprop=True)`.
    gradients: (optional) dict of `kernel`, `recurrent_kernel` and `bias`
      buffers. Gradients are added to their contents. Fresh zero buffers are
      used if None.
    truncated: (optional) bool, if `True` only the last `truncation_length`
      steps are backpropagated.
    truncation_length: (optional) int, the truncation window.
    grad_last_activation: (optional) Tensor, (batch_size, hidden_size)
      gradient with respect to the final carried hidden state.
    grad_last_memory_cell: (optional) Tensor, gradient with respect to the
      final carried memory cell state.
    workspace: (optional) Workspace used for allocations.

  Returns:
    gradients: dict, the parameter gradient buffers.
    input_gradient: Tensor, (seq_len, batch_size, input_size).
    grad_prev_activation: Tensor, gradient with respect to the initial hidden
      state; zero when the truncation window does not reach the first step.
    grad_prev_memory_cell: Tensor, same for the initial memory cell state.
  """
  check_backward_inputs(epsilon, trajectory, truncated, truncation_length)
  time_steps, batch_size, H = trajectory.time_steps, trajectory.batch_size, trajectory.hidden_size

  gate_fn = get_activation(trajectory.gate_activation)
  act_fn = get_activation(trajectory.activation)
  if workspace is None:
    workspace = Workspace()

  input = trajectory.input
  kernel = trajectory.kernel
  recurrent_kernel = trajectory.recurrent_kernel
  gradients = _gradient_buffers(gradients, kernel, recurrent_kernel, trajectory.bias)
  epsilon = epsilon.to(dtype=input.dtype, device=input.device)

  R = recurrent_kernel[:, :NUM_GATES * H]
  p_i, p_f, p_o = recurrent_kernel[:, NUM_GATES * H:].t()
  step_mask = trajectory.mask

  dz_all = workspace.create(ArrayType.BP_WORKING_MEM, (time_steps, batch_size, 4 * H), input, zero=True)
  dh = _check_state(grad_last_activation, 'grad_last_activation', batch_size, H, input).clone()
  dc = _check_state(grad_last_memory_cell, 'grad_last_memory_cell', batch_size, H, input).clone()

  end = max(0, time_steps - truncation_length) if truncated else 0
  for t in range(time_steps - 1, end - 1, -1):
    zi, zf, zo, zg = torch.chunk(trajectory.pre_activations[t], NUM_GATES, 1)
    i, f, o, g = torch.chunk(trajectory.activations[t], NUM_GATES, 1)
    c_prev = trajectory.cell_states[t]
    c_new = trajectory.memory_cells[t]
    c_act = trajectory.cell_activations[t]

    dh_new = dh + epsilon[t]
    dc_in = dc
    if step_mask is not None:
      m = step_mask[t]
      zero = torch.zeros_like(dh)
      carry_h = torch.where(m, zero, dh)
      carry_c = torch.where(m, zero, dc)
      dh_new = torch.where(m, dh_new, zero)
      dc_in = torch.where(m, dc, zero)

    dc_new = dc_in + dh_new * o * act_fn.derivative(c_new, c_act)

    dz = dz_all[t]
    dz[:, :H] = dc_new * g * gate_fn.derivative(zi, i)
    dz[:, H:2 * H] = dc_new * c_prev * gate_fn.derivative(zf, f)
    dz[:, 2 * H:3 * H] = dh_new * c_act * gate_fn.derivative(zo, o)
    dz[:, 3 * H:] = dc_new * i * act_fn.derivative(zg, g)

    dc = dc_new * f + dz[:, :H] * p_i + dz[:, H:2 * H] * p_f + dz[:, 2 * H:3 * H] * p_o
    dh = dz @ R.t()
    if step_mask is not None:
      dh = dh + carry_h
      dc = dc + carry_c

  # Parameter gradients over the backpropagated window only.
  window = slice(end, time_steps)
  steps = time_steps - end
  dz_w = dz_all[window].reshape(steps * batch_size, 4 * H)
  h_prev_w = trajectory.hidden_states[window].reshape(steps * batch_size, H)
  c_prev_w = trajectory.cell_states[window].reshape(steps * batch_size, H)

  gradients[KERNEL].add_(input[window].reshape(steps * batch_size, -1).t() @ dz_w)
  gradients[RECURRENT_KERNEL][:, :NUM_GATES * H].add_(h_prev_w.t() @ dz_w)
  peephole_grad = torch.stack(
      [(dz_w[:, k * H:(k + 1) * H] * c_prev_w).sum(0) for k in range(NUM_PEEPHOLES)], 1)
  gradients[RECURRENT_KERNEL][:, NUM_GATES * H:].add_(peephole_grad)
  gradients[BIAS].add_(dz_w.sum(0))

  input_gradient = workspace.create(ArrayType.ACTIVATIONS, input.shape, input, zero=True)
  input_gradient[window] = dz_all[window] @ kernel.t()

  if end > 0:
    dh = torch.zeros_like(dh)
    dc = torch.zeros_like(dc)
  return gradients, input_gradient, dh, dc


class PeepholeLSTMEngine:
  """Forward/backward engine bound to one pair of activation functions."""

  def __init__(self, gate_activation=SIGMOID, activation=TANH):
    self.gate_activation = get_activation(gate_activation, require_derivative=False).name
    self.activation = get_activation(activation, require_derivative=False).name

  def forward_pass(self, input, kernel, recurrent_kernel, bias, training,
                   prev_activation=None, prev_memory_cell=None, mask=None,
                   for_backprop=False, workspace=None):
    return forward_pass(
        input, kernel, recurrent_kernel, bias, training,
        prev_activation=prev_activation,
        prev_memory_cell=prev_memory_cell,
        mask=mask,
        for_backprop=for_backprop,
        gate_activation=self.gate_activation,
        activation=self.activation,
        workspace=workspace)

  def backward_pass(self, epsilon, trajectory, gradients=None, truncated=False,
                    truncation_length=-1, grad_last_activation=None,
                    grad_last_memory_cell=None, workspace=None):
    return backward_pass(
        epsilon, trajectory,
        gradients=gradients,
        truncated=truncated,
        truncation_length=truncation_length,
        grad_last_activation=grad_last_activation,
        grad_last_memory_cell=grad_last_memory_cell,
        workspace=workspace)


class PeepholeLSTMFunction(torch.autograd.Function):
  @staticmethod
  def forward(ctx, training, gate_activation, activation, x, h0, c0, kernel, recurrent_kernel, bias, mask):
    trajectory = forward_pass(
        x, kernel, recurrent_kernel, bias, training,
        prev_activation=h0,
        prev_memory_cell=c0,
        mask=mask,
        for_backprop=training,
        gate_activation=gate_activation,
        activation=activation)
    if training:
      ctx.save_for_backward(
          x, kernel, recurrent_kernel, bias,
          trajectory.output,
          trajectory.hidden_states,
          trajectory.cell_states,
          trajectory.pre_activations,
          trajectory.activations,
          trajectory.memory_cells,
          trajectory.cell_activations,
          trajectory.mask)
    ctx.training = training
    ctx.gate_activation = trajectory.gate_activation
    ctx.activation = trajectory.activation
    return trajectory.output, trajectory.last_activation.clone(), trajectory.last_memory_cell.clone()

  @staticmethod
  def backward(ctx, grad_output, grad_h_n, grad_c_n):
    if not ctx.training:
      raise UnsupportedOperation('PeepholeLSTM backward can only be called in training mode')

    (x, kernel, recurrent_kernel, bias, output, hidden_states, cell_states,
     pre_activations, activations, memory_cells, cell_activations, mask) = ctx.saved_tensors
    trajectory = Trajectory(
        output=output,
        hidden_states=hidden_states,
        cell_states=cell_states,
        training=True,
        input=x,
        kernel=kernel,
        recurrent_kernel=recurrent_kernel,
        bias=bias,
        pre_activations=pre_activations,
        activations=activations,
        memory_cells=memory_cells,
        cell_activations=cell_activations,
        mask=mask,
        gate_activation=ctx.gate_activation,
        activation=ctx.activation)
    grads, dx, dh0, dc0 = backward_pass(
        grad_output.contiguous(), trajectory,
        grad_last_activation=grad_h_n,
        grad_last_memory_cell=grad_c_n)
    return (None, None, None, dx, dh0, dc0,
            grads[KERNEL], grads[RECURRENT_KERNEL], grads[BIAS], None)
