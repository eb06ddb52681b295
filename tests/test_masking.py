import pytest
import torch

from peephole_lstm import MaskState, backward_pass, forward_pass


def _suffix_mask(lengths, seq_len):
    return (torch.arange(seq_len).unsqueeze(1) < torch.tensor(lengths).unsqueeze(0)).to(torch.float64)


def test_masked_sequence_stops_at_last_valid_step(layer_factory, sequence, weights_of):
    layer = layer_factory()
    x = sequence(seq_len=6, batch_size=2)
    mask = _suffix_mask([6, 3], 6)

    trajectory = forward_pass(x, *weights_of(layer), training=False, mask=mask)
    short = forward_pass(x[:3, 1:], *weights_of(layer), training=False)
    full = forward_pass(x[:, :1], *weights_of(layer), training=False)

    assert torch.allclose(trajectory.last_activation[1], short.last_activation[0])
    assert torch.allclose(trajectory.last_memory_cell[1], short.last_memory_cell[0])
    assert torch.allclose(trajectory.last_activation[0], full.last_activation[0])
    assert torch.all(trajectory.output[3:, 1] == 0)
    assert torch.allclose(trajectory.output[:3, 1], short.output[:, 0])


def test_padding_does_not_leak(layer_factory, sequence, weights_of):
    layer = layer_factory()
    x = sequence(seq_len=6, batch_size=2)
    mask = _suffix_mask([4, 2], 6)
    u = torch.randn(6, 2, layer.hidden_size, dtype=torch.float64)

    noisy_x = x.clone()
    noisy_x[4:, 0] = 100.0
    noisy_x[2:, 1] = -100.0
    noisy_u = u.clone()
    noisy_u[4:, 0] = 7.0
    noisy_u[2:, 1] = 7.0

    a = forward_pass(x, *weights_of(layer), training=True, mask=mask, for_backprop=True)
    b = forward_pass(noisy_x, *weights_of(layer), training=True, mask=mask, for_backprop=True)
    assert torch.equal(a.output, b.output)

    grads_a, dx_a, _, _ = backward_pass(u, a)
    grads_b, dx_b, _, _ = backward_pass(noisy_u, b)
    for name in grads_a:
        assert torch.allclose(grads_a[name], grads_b[name]), name
    assert torch.allclose(dx_a, dx_b)
    assert torch.all(dx_a[4:, 0] == 0)
    assert torch.all(dx_a[2:, 1] == 0)


def test_masked_gradients_match_reference(layer_factory, sequence, reference_lstm, weights_of):
    layer = layer_factory()
    x = sequence(seq_len=5, batch_size=3)
    mask = torch.tensor([[1, 0, 1], [1, 1, 1], [0, 1, 1], [1, 1, 0], [1, 0, 0]], dtype=torch.float64)
    u = torch.randn(5, 3, layer.hidden_size, dtype=torch.float64)

    trajectory = forward_pass(x, *weights_of(layer), training=True, mask=mask, for_backprop=True)
    gradients, input_gradient, _, _ = backward_pass(u, trajectory)

    x_ref = x.clone().requires_grad_()
    weights = weights_of(layer, requires_grad=True)
    output, _, _ = reference_lstm(x_ref, *weights, mask=mask)
    assert torch.allclose(trajectory.output, output)

    expected = torch.autograd.grad((output * u).sum(), [x_ref] + weights)
    assert torch.allclose(input_gradient, expected[0])
    for name, grad in zip(('kernel', 'recurrent_kernel', 'bias'), expected[1:]):
        assert torch.allclose(gradients[name], grad), name


def test_layer_mask_array(layer_factory, sequence):
    layer = layer_factory(batch_first=True)
    x = sequence(seq_len=4, batch_size=2).transpose(0, 1)
    mask = torch.tensor([[1, 1, 1, 1], [1, 1, 0, 0]])

    layer.set_mask_array(mask)
    assert torch.equal(layer.mask_array, mask)

    output = layer.activate(x)
    assert output.shape == (2, 4, layer.hidden_size)
    assert torch.all(output[1, 2:] == 0)
    assert not torch.all(output[0, 2:] == 0)


@pytest.mark.parametrize('mask', [None, torch.ones(4, 2), torch.tensor([[1, 0], [0, 0]])])
@pytest.mark.parametrize('mask_state', [None, MaskState.ACTIVE, MaskState.PASSTHROUGH])
def test_feed_forward_mask_is_passthrough(layer_factory, mask, mask_state):
    layer = layer_factory()
    returned, state = layer.feed_forward_mask_array(mask, mask_state, 2)
    assert returned is mask
    assert state is MaskState.PASSTHROUGH
