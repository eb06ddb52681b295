import pytest
import torch

from peephole_lstm import (
    ErrorKind,
    PeepholeLSTMFunction,
    StateMismatch,
    UnsupportedOperation,
    backward_pass,
    forward_pass,
)


PARAMS = ('kernel', 'recurrent_kernel', 'bias')


def _autograd_reference(layer, x, epsilon, reference_lstm, weights_of, mask=None, detach_before=0):
    x = x.clone().requires_grad_()
    weights = weights_of(layer, requires_grad=True)
    output, _, _ = reference_lstm(x, *weights, mask=mask, detach_before=detach_before)
    loss = (output[detach_before:] * epsilon[detach_before:]).sum()
    grads = torch.autograd.grad(loss, [x] + weights)
    return dict(zip(('input',) + PARAMS, grads))


@pytest.mark.parametrize('with_mask', [False, True])
def test_gradcheck(layer_factory, sequence, weights_of, with_mask):
    layer = layer_factory(input_size=2, hidden_size=3)
    x = sequence(seq_len=4, batch_size=2, input_size=2).requires_grad_()
    h0 = torch.randn(2, 3, dtype=torch.float64, requires_grad=True)
    c0 = torch.randn(2, 3, dtype=torch.float64, requires_grad=True)
    mask = torch.tensor([[1, 1], [1, 1], [1, 0], [0, 0]]) if with_mask else None

    def fn(x, h0, c0, kernel, recurrent_kernel, bias):
        return PeepholeLSTMFunction.apply(True, 'sigmoid', 'tanh', x, h0, c0, kernel, recurrent_kernel, bias, mask)

    inputs = (x, h0, c0, *weights_of(layer, requires_grad=True))
    assert torch.autograd.gradcheck(fn, inputs)


def test_backprop_matches_finite_differences(layer_factory, sequence):
    layer = layer_factory()
    x = sequence(seq_len=4)
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)

    def loss():
        return (layer.activate(x) * u).sum().item()

    layer.set_input(x)
    gradients, input_gradient = layer.backprop_gradient(u)
    eps = 1e-6

    for name in PARAMS:
        param = getattr(layer, name)
        numeric = torch.zeros_like(param)
        for idx in range(param.numel()):
            flat = param.data.view(-1)
            saved = flat[idx].item()
            flat[idx] = saved + eps
            plus = loss()
            flat[idx] = saved - eps
            minus = loss()
            flat[idx] = saved
            numeric.view(-1)[idx] = (plus - minus) / (2 * eps)
        assert torch.allclose(gradients[name], numeric, rtol=1e-5, atol=1e-7), name

    numeric = torch.zeros_like(x)
    for idx in range(x.numel()):
        flat = x.view(-1)
        saved = flat[idx].item()
        flat[idx] = saved + eps
        plus = loss()
        flat[idx] = saved - eps
        minus = loss()
        flat[idx] = saved
        numeric.view(-1)[idx] = (plus - minus) / (2 * eps)
    assert torch.allclose(input_gradient, numeric, rtol=1e-5, atol=1e-7)


def test_backprop_matches_autograd_reference(layer_factory, sequence, reference_lstm, weights_of):
    layer = layer_factory()
    x = sequence()
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)

    layer.set_input(x)
    gradients, input_gradient = layer.backprop_gradient(u)
    expected = _autograd_reference(layer, x, u, reference_lstm, weights_of)

    for name in PARAMS:
        assert torch.allclose(gradients[name], expected[name]), name
    assert torch.allclose(input_gradient, expected['input'])


def test_gradients_land_in_param_grad(layer_factory, sequence):
    layer = layer_factory()
    x = sequence()
    layer.set_input(x)
    gradients, _ = layer.backprop_gradient(torch.ones(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64))
    for name in PARAMS:
        assert gradients[name] is getattr(layer, name).grad


def test_gradients_accumulate(layer_factory, sequence):
    layer = layer_factory()
    x = sequence()
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)
    layer.set_input(x)

    once = {name: g.clone() for name, g in layer.backprop_gradient(u)[0].items()}
    twice = layer.backprop_gradient(u)[0]
    for name in PARAMS:
        assert torch.allclose(twice[name], 2 * once[name]), name


def test_backward_pass_adds_to_existing_buffers(layer_factory, sequence, weights_of):
    layer = layer_factory()
    x = sequence()
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)
    trajectory = forward_pass(x, *weights_of(layer), training=True, for_backprop=True)

    fresh, _, _, _ = backward_pass(u, trajectory)
    buffers = {name: torch.ones_like(g) for name, g in fresh.items()}
    result, _, _, _ = backward_pass(u, trajectory, buffers)

    assert result is buffers
    for name in PARAMS:
        assert torch.allclose(buffers[name], fresh[name] + 1), name


def test_module_autograd_matches_backprop_gradient(layer_factory, sequence):
    layer = layer_factory()
    x = sequence()
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)

    output, _ = layer(x)
    (output * u).sum().backward()
    autograd_grads = {name: getattr(layer, name).grad.clone() for name in PARAMS}

    layer.zero_grad(set_to_none=True)
    layer.set_input(x)
    gradients, _ = layer.backprop_gradient(u)
    for name in PARAMS:
        assert torch.allclose(gradients[name], autograd_grads[name]), name


@pytest.mark.parametrize('length', [5, 9])
def test_truncation_at_or_beyond_length_is_full_bptt(layer_factory, sequence, weights_of, length):
    layer = layer_factory()
    x = sequence(seq_len=5)
    u = torch.randn(5, x.shape[1], layer.hidden_size, dtype=torch.float64)
    trajectory = forward_pass(x, *weights_of(layer), training=True, for_backprop=True)

    full = backward_pass(u, trajectory)
    truncated = backward_pass(u, trajectory, truncated=True, truncation_length=length)
    for name in PARAMS:
        assert torch.allclose(full[0][name], truncated[0][name])
    assert torch.allclose(full[1], truncated[1])
    assert torch.allclose(full[2], truncated[2])


def test_truncated_window(layer_factory, sequence, reference_lstm, weights_of):
    layer = layer_factory()
    T, L = 6, 2
    x = sequence(seq_len=T)
    u = torch.randn(T, x.shape[1], layer.hidden_size, dtype=torch.float64)
    trajectory = forward_pass(x, *weights_of(layer), training=True, for_backprop=True)

    gradients, input_gradient, dh0, dc0 = backward_pass(u, trajectory, truncated=True, truncation_length=L)
    expected = _autograd_reference(layer, x, u, reference_lstm, weights_of, detach_before=T - L)

    assert torch.all(input_gradient[:T - L] == 0)
    assert torch.allclose(input_gradient, expected['input'])
    for name in PARAMS:
        assert torch.allclose(gradients[name], expected[name]), name
    assert torch.all(dh0 == 0) and torch.all(dc0 == 0)


def test_invalid_truncation_length(layer_factory, sequence, weights_of):
    layer = layer_factory()
    x = sequence()
    trajectory = forward_pass(x, *weights_of(layer), training=True, for_backprop=True)
    with pytest.raises(ValueError):
        backward_pass(torch.zeros_like(trajectory.output), trajectory, truncated=True, truncation_length=0)


def test_epsilon_time_mismatch(layer_factory, sequence):
    layer = layer_factory()
    x = sequence(seq_len=5)
    layer.set_input(x)
    with pytest.raises(StateMismatch) as excinfo:
        layer.backprop_gradient(torch.zeros(4, x.shape[1], layer.hidden_size, dtype=torch.float64))
    assert excinfo.value.kind is ErrorKind.STATE_MISMATCH


def test_backprop_without_input(layer_factory):
    layer = layer_factory()
    with pytest.raises(StateMismatch):
        layer.backprop_gradient(torch.zeros(5, 2, layer.hidden_size, dtype=torch.float64))


def test_backward_requires_retained_training_trajectory(layer_factory, sequence, weights_of):
    layer = layer_factory()
    x = sequence()
    epsilon = torch.zeros(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)

    with pytest.raises(StateMismatch):
        backward_pass(epsilon, forward_pass(x, *weights_of(layer), training=False))
    with pytest.raises(UnsupportedOperation) as excinfo:
        backward_pass(epsilon, forward_pass(x, *weights_of(layer), training=False, for_backprop=True))
    assert excinfo.value.kind is ErrorKind.UNSUPPORTED_OPERATION


def test_unsupported_operations(layer_factory):
    layer = layer_factory()
    with pytest.raises(UnsupportedOperation):
        layer.gradient()
    with pytest.raises(UnsupportedOperation):
        layer.transpose()
    with pytest.raises(NotImplementedError):
        layer.gradient()
    assert not layer.is_pretrain_layer()


def test_weight_noise_is_reused_within_one_backprop(layer_factory, sequence):
    layer = layer_factory(weight_noise=0.1)
    x = sequence()
    u = torch.randn(x.shape[0], x.shape[1], layer.hidden_size, dtype=torch.float64)
    layer.set_input(x)

    layer.backprop_gradient(u)
    assert not layer._weight_noise_params

    noisy = layer._get_param_with_noise('kernel', training=True)
    assert noisy is layer._get_param_with_noise('kernel', training=True)
    assert not torch.equal(noisy, layer.kernel.detach())
    assert torch.equal(layer._get_param_with_noise('bias', training=True), layer.bias.detach())
    assert torch.equal(layer._get_param_with_noise('kernel', training=False), layer.kernel.detach())


def test_weight_noise_is_redrawn_after_update(layer_factory):
    layer = layer_factory(weight_noise=0.1)
    first = layer._get_param_with_noise('kernel', training=True)
    with torch.no_grad():
        layer.kernel.add_(1.0)
    second = layer._get_param_with_noise('kernel', training=True)

    assert second is not first
    assert torch.allclose(second, layer.kernel.detach(), atol=1.0)
    assert not torch.allclose(second, first, atol=0.5)


@pytest.mark.parametrize('epsilon_shape', [(6, 2, 4), (5, 3, 4), (5, 2)])
def test_failed_backprop_leaves_param_grad_untouched(layer_factory, sequence, epsilon_shape):
    layer = layer_factory()
    layer.set_input(sequence(seq_len=5, batch_size=2))

    with pytest.raises(ValueError):
        layer.backprop_gradient(torch.zeros(epsilon_shape, dtype=torch.float64))
    for name in PARAMS:
        assert getattr(layer, name).grad is None, name


def test_inference_output_cannot_backprop(layer_factory, sequence):
    layer = layer_factory().eval()
    output, _ = layer(sequence())
    assert output.requires_grad
    with pytest.raises(UnsupportedOperation):
        output.sum().backward()
