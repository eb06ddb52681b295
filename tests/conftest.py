import pytest
import torch

from peephole_lstm import PeepholeLSTM


INPUT_SIZE = 3
HIDDEN_SIZE = 4
SEQ_LEN = 5
BATCH_SIZE = 2


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(1234)


@pytest.fixture
def layer_factory():
    """Double-precision layers with non-zero peepholes and biases."""

    def make(input_size=INPUT_SIZE, hidden_size=HIDDEN_SIZE, **kwargs):
        layer = PeepholeLSTM(input_size, hidden_size, **kwargs).double()
        with torch.no_grad():
            layer.recurrent_kernel[:, 4 * hidden_size:].uniform_(-0.5, 0.5)
            layer.bias.uniform_(-0.5, 0.5)
        return layer

    return make


@pytest.fixture
def sequence():
    def make(seq_len=SEQ_LEN, batch_size=BATCH_SIZE, input_size=INPUT_SIZE):
        return torch.randn(seq_len, batch_size, input_size, dtype=torch.float64)

    return make


def _reference_lstm(x, kernel, recurrent_kernel, bias, h0=None, c0=None, mask=None, detach_before=0):
    """Step-by-step peephole LSTM written with plain differentiable ops."""
    T, B, _ = x.shape
    H = recurrent_kernel.shape[0]
    h = x.new_zeros(B, H) if h0 is None else h0
    c = x.new_zeros(B, H) if c0 is None else c0
    R = recurrent_kernel[:, :4 * H]
    p_i, p_f, p_o = recurrent_kernel[:, 4 * H:].t()

    outputs = []
    for t in range(T):
        if t == detach_before and t > 0:
            h = h.detach()
            c = c.detach()
        z = x[t] @ kernel + h @ R + bias
        zi, zf, zo, zg = z.split(H, dim=1)
        i = torch.sigmoid(zi + c * p_i)
        f = torch.sigmoid(zf + c * p_f)
        o = torch.sigmoid(zo + c * p_o)
        g = torch.tanh(zg)
        c_new = f * c + i * g
        h_new = o * torch.tanh(c_new)
        if mask is None:
            outputs.append(h_new)
            h, c = h_new, c_new
        else:
            m = (mask[t] != 0).unsqueeze(-1)
            outputs.append(torch.where(m, h_new, torch.zeros_like(h_new)))
            h = torch.where(m, h_new, h)
            c = torch.where(m, c_new, c)
    return torch.stack(outputs), h, c


@pytest.fixture
def reference_lstm():
    return _reference_lstm


def layer_weights(layer, requires_grad=False):
    return [
        getattr(layer, name).detach().clone().requires_grad_(requires_grad)
        for name in ('kernel', 'recurrent_kernel', 'bias')
    ]


@pytest.fixture
def weights_of():
    return layer_weights
