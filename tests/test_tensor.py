"""
test_tensor.py
~~~~~~~~~~~~~~

Unit tests for tensor primitives: shape checks, convolution and pooling.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nnbench import tensor
from nnbench.errors import ShapeMismatch


def naive_conv2d(x, kernel, stride, pad_h=(0, 0), pad_w=(0, 0)):
    """Reference cross-correlation with explicit loops."""
    x = np.pad(x, ((0, 0), (0, 0), pad_h, pad_w))
    batch, _, height, width = x.shape
    filters, _, kh, kw = kernel.shape
    out_h = (height - kh) // stride + 1
    out_w = (width - kw) // stride + 1
    out = np.zeros((batch, filters, out_h, out_w))
    for n in range(batch):
        for f in range(filters):
            for i in range(out_h):
                for j in range(out_w):
                    window = x[n, :, i * stride:i * stride + kh, j * stride:j * stride + kw]
                    out[n, f, i, j] = np.sum(window * kernel[f])
    return out


@pytest.mark.unit
class TestElementwise:
    """Test element-wise operations and their shape checks."""

    def test_add_subtract_multiply(self):
        """Test that element-wise operations compute on equal shapes."""
        a = np.array([[1.0, 2.0], [3.0, 4.0]])
        b = np.array([[0.5, 0.5], [2.0, 2.0]])

        assert np.array_equal(tensor.add(a, b), [[1.5, 2.5], [5.0, 6.0]])
        assert np.array_equal(tensor.subtract(a, b), [[0.5, 1.5], [1.0, 2.0]])
        assert np.array_equal(tensor.multiply(a, b), [[0.5, 1.0], [6.0, 8.0]])

    @pytest.mark.parametrize('operation', [tensor.add, tensor.subtract, tensor.multiply])
    def test_mismatch_is_not_broadcast(self, operation):
        """Test that a broadcastable but unequal shape still fails."""
        with pytest.raises(ShapeMismatch) as exc_info:
            operation(np.ones((3, 2)), np.ones((1, 2)))

        assert exc_info.value.expected == (3, 2)
        assert exc_info.value.actual == (1, 2)

    def test_as_tensor_converts_to_float64(self):
        """Test that integer input becomes float64."""
        array = tensor.as_tensor([[1, 2], [3, 4]])
        assert array.dtype == np.float64

    def test_as_tensor_checks_shape(self):
        """Test that a required shape is enforced, with None as wildcard."""
        tensor.as_tensor(np.zeros((5, 3)), shape=(None, 3))
        with pytest.raises(ShapeMismatch):
            tensor.as_tensor(np.zeros((5, 3)), shape=(None, 4))

    def test_frozen_copy_is_read_only_and_detached(self):
        """Test that frozen copies cannot be written and do not alias."""
        source = np.zeros(3)
        copy = tensor.frozen_copy(source)
        source[0] = 5.0

        assert copy[0] == 0.0
        with pytest.raises(ValueError):
            copy[1] = 1.0

    def test_is_finite(self):
        """Test NaN and inf detection."""
        assert tensor.is_finite(np.ones(3))
        assert not tensor.is_finite(np.array([1.0, np.nan]))
        assert not tensor.is_finite(np.array([np.inf]))


@pytest.mark.unit
class TestMatrixOps:
    """Test matmul, transpose and bias broadcasting."""

    def test_matmul_shape(self):
        """Test [m x k] . [k x n] -> [m x n]."""
        result = tensor.matmul(np.ones((2, 3)), np.ones((3, 4)))
        assert result.shape == (2, 4)
        assert np.all(result == 3.0)

    def test_matmul_inner_mismatch(self):
        """Test that differing inner sizes raise ShapeMismatch."""
        with pytest.raises(ShapeMismatch):
            tensor.matmul(np.ones((2, 3)), np.ones((4, 2)))

    def test_matmul_requires_matrices(self):
        """Test that vectors are rejected."""
        with pytest.raises(ShapeMismatch):
            tensor.matmul(np.ones(3), np.ones((3, 1)))

    def test_transpose(self):
        """Test matrix transpose and explicit axis permutation."""
        a = np.arange(6.0).reshape(2, 3)
        assert tensor.transpose(a).shape == (3, 2)
        assert tensor.transpose(np.zeros((2, 3, 4)), (2, 0, 1)).shape == (4, 2, 3)
        with pytest.raises(ShapeMismatch):
            tensor.transpose(np.zeros((2, 3, 4)))

    def test_add_bias_broadcasts_over_batch(self):
        """Test that the bias is added to every row."""
        x = np.zeros((3, 2))
        result = tensor.add_bias(x, np.array([1.0, -1.0]))
        assert np.array_equal(result, [[1.0, -1.0]] * 3)

    def test_add_bias_along_channel_axis(self):
        """Test per-channel bias on image batches."""
        x = np.zeros((2, 3, 4, 4))
        result = tensor.add_bias(x, np.array([1.0, 2.0, 3.0]), axis=1)
        assert np.all(result[:, 1] == 2.0)

    def test_add_bias_wrong_length(self):
        """Test that a bias of the wrong length is rejected."""
        with pytest.raises(ShapeMismatch):
            tensor.add_bias(np.zeros((3, 2)), np.zeros(3))


@pytest.mark.unit
class TestConvolution:
    """Test conv2d against a loop reference and its geometry."""

    @pytest.mark.parametrize('stride', [1, 2])
    def test_valid_matches_reference(self, stride):
        """Test valid-padding convolution values."""
        rng = np.random.default_rng(0)
        x = rng.standard_normal((2, 3, 7, 6))
        kernel = rng.standard_normal((4, 3, 3, 3))

        result = tensor.conv2d(x, kernel, stride=stride, padding='valid')

        assert np.allclose(result, naive_conv2d(x, kernel, stride))

    @pytest.mark.parametrize('stride,expected', [(1, (5, 6)), (2, (3, 3))])
    def test_same_output_size(self, stride, expected):
        """Test that 'same' output is ceil(input / stride)."""
        x = np.ones((1, 1, 5, 6))
        kernel = np.ones((2, 1, 3, 3))
        assert tensor.conv2d(x, kernel, stride, 'same').shape[2:] == expected

    def test_same_matches_reference(self):
        """Test same-padding values with symmetric padding."""
        rng = np.random.default_rng(1)
        x = rng.standard_normal((1, 2, 5, 5))
        kernel = rng.standard_normal((3, 2, 3, 3))

        result = tensor.conv2d(x, kernel, 1, 'same')

        assert np.allclose(result, naive_conv2d(x, kernel, 1, (1, 1), (1, 1)))

    def test_channel_mismatch(self):
        """Test that kernel input channels must match the image."""
        with pytest.raises(ShapeMismatch):
            tensor.conv2d(np.ones((1, 2, 5, 5)), np.ones((1, 3, 3, 3)))

    def test_kernel_larger_than_input(self):
        """Test that a valid convolution needs at least one window."""
        with pytest.raises(ShapeMismatch):
            tensor.conv2d(np.ones((1, 1, 2, 2)), np.ones((1, 1, 3, 3)))

    def test_backward_shapes(self):
        """Test that gradients have the shapes of their operands."""
        x = np.ones((2, 3, 6, 6))
        kernel = np.ones((4, 3, 3, 3))
        grad_out = np.ones((2, 4, 3, 3))

        grad_x, grad_k = tensor.conv2d_backward(x, kernel, grad_out, stride=2, padding='same')

        assert grad_x.shape == x.shape
        assert grad_k.shape == kernel.shape

    def test_backward_rejects_wrong_gradient_shape(self):
        """Test that the output gradient shape is validated."""
        with pytest.raises(ShapeMismatch):
            tensor.conv2d_backward(np.ones((1, 1, 4, 4)), np.ones((1, 1, 3, 3)),
                                   np.ones((1, 1, 3, 3)))


@pytest.mark.unit
class TestPooling:
    """Test max and average pooling and their backward passes."""

    def test_max_pool_values_and_argmax(self):
        """Test pooled maxima and the recorded winner positions."""
        x = np.array([[[[1.0, 2.0, 0.0, 1.0],
                        [4.0, 3.0, 1.0, 5.0],
                        [0.0, 0.0, 2.0, 2.0],
                        [1.0, 0.0, 3.0, 0.0]]]])

        pooled, argmax = tensor.max_pool2d(x, 2, 2)

        assert np.array_equal(pooled, [[[[4.0, 5.0], [1.0, 3.0]]]])
        assert np.array_equal(argmax, [[[[2, 3], [2, 2]]]])

    def test_max_pool_backward_routes_to_winner(self):
        """Test that gradient only reaches the maximum of each window."""
        x = np.array([[[[1.0, 2.0], [4.0, 3.0]]]])
        pooled, argmax = tensor.max_pool2d(x, 2, 2)

        grad = tensor.max_pool2d_backward(np.ones_like(pooled), argmax, x.shape, 2, 2)

        assert np.array_equal(grad, [[[[0.0, 0.0], [1.0, 0.0]]]])

    def test_overlapping_max_pool_accumulates(self):
        """Test that an element winning two windows receives both gradients."""
        x = np.array([[[[0.0, 9.0, 0.0]]]]).reshape(1, 1, 1, 3)
        x = np.repeat(x, 2, axis=2)
        pooled, argmax = tensor.max_pool2d(x, 2, 1)

        grad = tensor.max_pool2d_backward(np.ones_like(pooled), argmax, x.shape, 2, 1)

        assert grad.sum() == pytest.approx(2.0)
        assert grad[0, 0, :, 1].sum() == pytest.approx(2.0)

    def test_avg_pool_and_backward(self):
        """Test window means and even gradient spread."""
        x = np.arange(16.0).reshape(1, 1, 4, 4)

        pooled = tensor.avg_pool2d(x, 2, 2)
        grad = tensor.avg_pool2d_backward(np.ones_like(pooled), x.shape, 2, 2)

        assert np.allclose(pooled, [[[[2.5, 4.5], [10.5, 12.5]]]])
        assert np.allclose(grad, 0.25)

    def test_pool_larger_than_input(self):
        """Test that the window must fit."""
        with pytest.raises(ShapeMismatch):
            tensor.max_pool2d(np.ones((1, 1, 1, 1)), 2, 2)
