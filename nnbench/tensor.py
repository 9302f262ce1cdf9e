"""
tensor.py
~~~~~~~~~

Shape-checked numeric primitives over float64 numpy arrays.

All functions validate shape compatibility before computing and raise
ShapeMismatch (carrying both shapes) instead of silently broadcasting.
The only broadcasting operation is ``add_bias``, which spreads a bias
vector across every other axis of its input.

Image tensors use the (batch, channels, height, width) layout and
convolution kernels use (out_channels, in_channels, kh, kw).
"""

import math
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from nnbench.errors import ShapeMismatch

DTYPE = np.float64

PADDING_MODES = ('valid', 'same')


def as_tensor(data, shape: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Convert array-like data into a float64 tensor.

    This is the single place where values are coerced to the working
    precision; every other primitive expects float64 input already.

    Args:
        data: Nested sequence or array of numbers
        shape: Optional shape the result must have

    Returns:
        np.ndarray: A float64 array (a copy when conversion was needed)
    """
    array = np.asarray(data, dtype=DTYPE)
    if shape is not None:
        require_shape(array, shape, 'as_tensor')
    return array


def require_shape(array: np.ndarray, shape: Sequence[Optional[int]],
                  operation: str = '') -> None:
    """
    Check an array against an expected shape.

    ``None`` entries in ``shape`` match any size along that axis.
    """
    if array.ndim != len(shape) or any(
        expected is not None and expected != actual
        for expected, actual in zip(shape, array.shape)
    ):
        raise ShapeMismatch(shape, array.shape, operation)


def _require_same_shape(a: np.ndarray, b: np.ndarray, operation: str) -> None:
    if a.shape != b.shape:
        raise ShapeMismatch(a.shape, b.shape, operation)


def add(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Element-wise sum of two equally shaped tensors."""
    _require_same_shape(a, b, 'add')
    return a + b


def subtract(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Element-wise difference of two equally shaped tensors."""
    _require_same_shape(a, b, 'subtract')
    return a - b


def multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Element-wise (Hadamard) product of two equally shaped tensors."""
    _require_same_shape(a, b, 'multiply')
    return a * b


def matmul(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Matrix product [m x k] . [k x n] -> [m x n].

    Raises:
        ShapeMismatch: If either operand is not 2-D or inner sizes differ
    """
    if a.ndim != 2:
        raise ShapeMismatch((None, None), a.shape, 'matmul')
    if b.ndim != 2 or b.shape[0] != a.shape[1]:
        raise ShapeMismatch((a.shape[1], None), b.shape, 'matmul')
    return a @ b


def transpose(a: np.ndarray, axes: Optional[Sequence[int]] = None) -> np.ndarray:
    """Transpose a matrix, or permute axes of an n-d tensor when given."""
    if axes is None:
        if a.ndim != 2:
            raise ShapeMismatch((None, None), a.shape, 'transpose')
        return a.T
    if sorted(axes) != list(range(a.ndim)):
        raise ShapeMismatch(tuple(range(a.ndim)), tuple(axes), 'transpose')
    return np.transpose(a, axes)


def add_bias(x: np.ndarray, bias: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Broadcast a bias vector across every axis of ``x`` except ``axis``.

    Args:
        x: Input tensor, e.g. (batch, features) or (batch, channels, h, w)
        bias: 1-D vector whose length equals ``x.shape[axis]``
        axis: Axis the bias runs along

    Returns:
        np.ndarray: ``x`` plus the broadcast bias
    """
    if x.ndim == 0:
        raise ShapeMismatch((None,), x.shape, 'add_bias')
    axis = axis % x.ndim
    if bias.ndim != 1 or bias.shape[0] != x.shape[axis]:
        raise ShapeMismatch((x.shape[axis],), bias.shape, 'add_bias')
    view = [1] * x.ndim
    view[axis] = bias.shape[0]
    return x + bias.reshape(view)


def is_finite(array: np.ndarray) -> bool:
    """Return True when every element is neither NaN nor infinite."""
    return bool(np.isfinite(array).all())


def frozen_copy(array: np.ndarray) -> np.ndarray:
    """Return a detached, read-only copy of ``array``."""
    copy = np.array(array, dtype=DTYPE, copy=True)
    copy.setflags(write=False)
    return copy


# ---------------------------------------------------------------------------
# Convolution
# ---------------------------------------------------------------------------

def conv_geometry(
    height: int,
    width: int,
    kernel_h: int,
    kernel_w: int,
    stride: int,
    padding: str
) -> Tuple[int, int, Tuple[int, int], Tuple[int, int]]:
    """
    Compute output size and padding for a 2-D sliding window.

    Returns:
        tuple: (out_h, out_w, (pad_top, pad_bottom), (pad_left, pad_right))
    """
    if padding not in PADDING_MODES:
        raise ValueError(f"Unknown padding mode: {padding}")
    if stride < 1:
        raise ValueError(f"Stride must be positive, got {stride}")

    if padding == 'valid':
        if height < kernel_h or width < kernel_w:
            raise ShapeMismatch(
                (f">={kernel_h}", f">={kernel_w}"), (height, width), 'conv2d'
            )
        out_h = (height - kernel_h) // stride + 1
        out_w = (width - kernel_w) // stride + 1
        return out_h, out_w, (0, 0), (0, 0)

    out_h = int(math.ceil(height / stride))
    out_w = int(math.ceil(width / stride))
    total_h = max(0, (out_h - 1) * stride + kernel_h - height)
    total_w = max(0, (out_w - 1) * stride + kernel_w - width)
    pad_h = (total_h // 2, total_h - total_h // 2)
    pad_w = (total_w // 2, total_w - total_w // 2)
    return out_h, out_w, pad_h, pad_w


def _windows(x: np.ndarray, kernel_h: int, kernel_w: int, stride: int,
             out_h: int, out_w: int) -> np.ndarray:
    # (N, C, out_h, out_w, kh, kw) view, no copy
    view = sliding_window_view(x, (kernel_h, kernel_w), axis=(2, 3))
    return view[:, :, ::stride, ::stride][:, :, :out_h, :out_w]


def _check_conv_operands(x: np.ndarray, kernel: np.ndarray) -> None:
    if x.ndim != 4:
        raise ShapeMismatch((None, None, None, None), x.shape, 'conv2d')
    if kernel.ndim != 4 or kernel.shape[1] != x.shape[1]:
        raise ShapeMismatch((None, x.shape[1], None, None), kernel.shape, 'conv2d')


def conv2d(x: np.ndarray, kernel: np.ndarray, stride: int = 1,
           padding: str = 'valid') -> np.ndarray:
    """
    2-D cross-correlation of a batch of images with a kernel bank.

    Args:
        x: Input of shape (N, C_in, H, W)
        kernel: Kernels of shape (C_out, C_in, kh, kw)
        stride: Step between neighbouring windows
        padding: 'valid' (no padding) or 'same' (output = ceil(input / stride))

    Returns:
        np.ndarray: Output of shape (N, C_out, out_h, out_w)
    """
    _check_conv_operands(x, kernel)
    _, _, height, width = x.shape
    kernel_h, kernel_w = kernel.shape[2:]
    out_h, out_w, pad_h, pad_w = conv_geometry(
        height, width, kernel_h, kernel_w, stride, padding
    )
    padded = np.pad(x, ((0, 0), (0, 0), pad_h, pad_w))
    windows = _windows(padded, kernel_h, kernel_w, stride, out_h, out_w)
    return np.einsum('nchwij,fcij->nfhw', windows, kernel, optimize=True)


def conv2d_backward(
    x: np.ndarray,
    kernel: np.ndarray,
    grad_output: np.ndarray,
    stride: int = 1,
    padding: str = 'valid'
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gradients of ``conv2d`` with respect to its input and kernel.

    Returns:
        tuple: (grad_input with x's shape, grad_kernel with kernel's shape)
    """
    _check_conv_operands(x, kernel)
    batch, _, height, width = x.shape
    kernel_h, kernel_w = kernel.shape[2:]
    out_h, out_w, pad_h, pad_w = conv_geometry(
        height, width, kernel_h, kernel_w, stride, padding
    )
    require_shape(grad_output, (batch, kernel.shape[0], out_h, out_w),
                  'conv2d_backward')

    padded = np.pad(x, ((0, 0), (0, 0), pad_h, pad_w))
    windows = _windows(padded, kernel_h, kernel_w, stride, out_h, out_w)
    grad_kernel = np.einsum('nchwij,nfhw->fcij', windows, grad_output,
                            optimize=True)

    grad_padded = np.zeros_like(padded)
    row_span = stride * (out_h - 1) + 1
    col_span = stride * (out_w - 1) + 1
    for i in range(kernel_h):
        for j in range(kernel_w):
            grad_padded[:, :, i:i + row_span:stride, j:j + col_span:stride] += \
                np.einsum('nfhw,fc->nchw', grad_output, kernel[:, :, i, j])

    grad_input = grad_padded[:, :, pad_h[0]:pad_h[0] + height,
                             pad_w[0]:pad_w[0] + width]
    return grad_input, grad_kernel


# ---------------------------------------------------------------------------
# Pooling
# ---------------------------------------------------------------------------

def pool_geometry(height: int, width: int, pool_size: int,
                  stride: int) -> Tuple[int, int]:
    """Output (height, width) of a non-padded pooling window."""
    if pool_size < 1 or stride < 1:
        raise ValueError(
            f"Pool size and stride must be positive, got {pool_size}, {stride}"
        )
    if height < pool_size or width < pool_size:
        raise ShapeMismatch((f">={pool_size}", f">={pool_size}"),
                            (height, width), 'pool2d')
    return (height - pool_size) // stride + 1, (width - pool_size) // stride + 1


def max_pool2d(x: np.ndarray, pool_size: int,
               stride: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Max pooling over (N, C, H, W) input.

    Returns:
        tuple: (pooled output, flat argmax index inside each window)
    """
    if x.ndim != 4:
        raise ShapeMismatch((None, None, None, None), x.shape, 'max_pool2d')
    batch, channels, height, width = x.shape
    out_h, out_w = pool_geometry(height, width, pool_size, stride)
    windows = _windows(x, pool_size, pool_size, stride, out_h, out_w)
    flat = windows.reshape(batch, channels, out_h, out_w, pool_size * pool_size)
    argmax = flat.argmax(axis=-1)
    pooled = np.take_along_axis(flat, argmax[..., None], axis=-1)[..., 0]
    return pooled, argmax


def max_pool2d_backward(grad_output: np.ndarray, argmax: np.ndarray,
                        input_shape: Sequence[int], pool_size: int,
                        stride: int) -> np.ndarray:
    """Route each pooled gradient back to the input element that won its window."""
    if grad_output.shape != argmax.shape:
        raise ShapeMismatch(argmax.shape, grad_output.shape, 'max_pool2d_backward')
    batch, channels, out_h, out_w = grad_output.shape
    grad_input = np.zeros(tuple(input_shape), dtype=DTYPE)

    rows = np.arange(out_h)[None, None, :, None] * stride + argmax // pool_size
    cols = np.arange(out_w)[None, None, None, :] * stride + argmax % pool_size
    batch_idx = np.broadcast_to(np.arange(batch)[:, None, None, None], rows.shape)
    chan_idx = np.broadcast_to(np.arange(channels)[None, :, None, None], rows.shape)

    # overlapping windows may select the same element, so accumulate
    np.add.at(grad_input, (batch_idx, chan_idx, rows, cols), grad_output)
    return grad_input


def avg_pool2d(x: np.ndarray, pool_size: int, stride: int) -> np.ndarray:
    """Average pooling over (N, C, H, W) input."""
    if x.ndim != 4:
        raise ShapeMismatch((None, None, None, None), x.shape, 'avg_pool2d')
    _, _, height, width = x.shape
    out_h, out_w = pool_geometry(height, width, pool_size, stride)
    windows = _windows(x, pool_size, pool_size, stride, out_h, out_w)
    return windows.mean(axis=(-2, -1))


def avg_pool2d_backward(grad_output: np.ndarray, input_shape: Sequence[int],
                        pool_size: int, stride: int) -> np.ndarray:
    """Spread each pooled gradient evenly over its window."""
    _, _, height, width = input_shape
    out_h, out_w = pool_geometry(height, width, pool_size, stride)
    require_shape(grad_output, (input_shape[0], input_shape[1], out_h, out_w),
                  'avg_pool2d_backward')
    grad_input = np.zeros(tuple(input_shape), dtype=DTYPE)
    share = grad_output / float(pool_size * pool_size)
    row_span = stride * (out_h - 1) + 1
    col_span = stride * (out_w - 1) + 1
    for i in range(pool_size):
        for j in range(pool_size):
            grad_input[:, :, i:i + row_span:stride, j:j + col_span:stride] += share
    return grad_input
