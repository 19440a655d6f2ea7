# (c) 2024 Niels Provos
#
"""
Normalization of segmentation model output.

Models disagree on what they return: PIL images, RGBA buffers, tensors with
explicit dimensions or bare numeric arrays, with values in 0..1 or 0..255.
coerce_mask_output() classifies raw output into one of the mask variants
below, and normalize_mask() turns any variant into the canonical mask: a
uint8 array of shape (height, width) holding 0 for background and 255 for
foreground, aligned to the pixel grid of the image that was segmented.

The polarity heuristic is empirical. Some models mark the kept region with
255, others the discarded one; when the sampled values are all bright the
mask is assumed to be inverted. It can misfire on images whose foreground
really covers the sampled region.
"""

import logging

import numpy as np
import torch
from PIL import Image

from . import constants as C
from .errors import FormatUnrecognized

logger = logging.getLogger(__name__)


def _numeric(data):
    data = np.asarray(data)
    if data.dtype == np.bool_:
        return data.astype(np.uint8) * 255
    return data


class CanonicalMask:
    """A 2D uint8 mask that only holds 0 and 255."""

    __slots__ = ("array",)

    def __init__(self, array):
        self.array = array


class RgbaMask:
    """A pre-rasterized RGBA buffer."""

    __slots__ = ("data", "width", "height")

    def __init__(self, data, width, height):
        self.data = np.asarray(data)
        self.width = width
        self.height = height


class TensorMask:
    """Flat tensor data with explicit dimensions ending in [h, w]."""

    __slots__ = ("data", "dims")

    def __init__(self, data, dims):
        self.data = _numeric(data).reshape(-1)
        self.dims = tuple(int(d) for d in dims)

    @property
    def is_float(self):
        return np.issubdtype(self.data.dtype, np.floating)


class ArrayMask:
    """A bare numeric array, one value or one RGBA quadruple per pixel."""

    __slots__ = ("data",)

    def __init__(self, data):
        self.data = _numeric(data).reshape(-1)


MASK_VARIANTS = (CanonicalMask, RgbaMask, TensorMask, ArrayMask)


def is_canonical(array):
    return (
        isinstance(array, np.ndarray)
        and array.ndim == 2
        and array.dtype == np.uint8
        and bool(np.all((array == 0) | (array == 255)))
    )


def _from_image(image):
    if image.mode == "RGBA":
        return RgbaMask(np.array(image), image.width, image.height)
    if image.mode not in ("L", "1", "F", "I"):
        image = image.convert("L")
    return _from_array(np.array(image))


def _from_array(array):
    array = _numeric(array)
    if is_canonical(array):
        return CanonicalMask(array)
    if array.ndim == 3 and array.shape[2] == 4:
        return RgbaMask(array, array.shape[1], array.shape[0])
    if array.ndim == 3 and array.shape[2] in (1, 3):
        return _from_array(array[:, :, 0])
    if array.ndim > 2:
        return TensorMask(array, array.shape)
    return ArrayMask(array)


def coerce_mask_output(output):
    """
    Classifies raw segmentation output as one of the mask variants.

    Accepts the variants themselves, PIL images, numpy arrays, torch tensors,
    dicts with "data" and "dims" (tensor-like), dicts with a "mask" entry and
    lists of segmentation results, of which the first is used.

    Raises:
        FormatUnrecognized: If the output has none of the known shapes.
    """
    if isinstance(output, MASK_VARIANTS):
        return output
    if isinstance(output, Image.Image):
        return _from_image(output)
    if isinstance(output, torch.Tensor):
        return _from_array(output.detach().cpu().numpy())
    if isinstance(output, np.ndarray):
        return _from_array(output)
    if isinstance(output, dict):
        if "mask" in output:
            return coerce_mask_output(output["mask"])
        if "data" in output and "dims" in output:
            data = output["data"]
            if isinstance(data, torch.Tensor):
                data = data.detach().cpu().numpy()
            return TensorMask(data, output["dims"])
        if "data" in output and "width" in output and "height" in output:
            data = np.asarray(output["data"]).reshape(-1)
            if data.size == output["width"] * output["height"] * 4:
                return RgbaMask(data, output["width"], output["height"])
            return ArrayMask(data)
    if isinstance(output, (list, tuple)) and len(output) > 0:
        first = output[0]
        if isinstance(first, (int, float, np.number)):
            return ArrayMask(np.asarray(output))
        return coerce_mask_output(first)

    raise FormatUnrecognized(
        f"Cannot interpret segmentation output of type {type(output).__name__}"
    )


def needs_invert(values):
    """
    Whether a mask looks inverted: all sampled values are bright.

    Args:
        values (np.ndarray): Raw mask values in the 0..255 range.

    Returns:
        bool: True if the sampled minimum exceeds POLARITY_INVERT_MIN.
    """
    sample = np.asarray(values).reshape(-1)[: C.POLARITY_SAMPLE_SIZE]
    if sample.size == 0:
        return False
    return bool(sample.min() > C.POLARITY_INVERT_MIN)


def fit_length(values, expected):
    """Zero-pads or truncates a flat buffer to the expected length."""
    if values.size == expected:
        return values
    logger.warning(
        f"Mask size mismatch: expected {expected} values, got {values.size}"
    )
    if values.size > expected:
        return values[:expected]
    padded = np.zeros(expected, dtype=values.dtype)
    padded[: values.size] = values
    return padded


def binarize_bytes(values, invert_polarity=False):
    values = values.astype(np.int32)
    if invert_polarity and needs_invert(values):
        values = 255 - values
    return np.where(values > C.BYTE_THRESHOLD, 255, 0).astype(np.uint8)


def binarize_floats(values):
    return np.where(values > C.FLOAT_THRESHOLD, 255, 0).astype(np.uint8)


def _is_unit_range(values):
    return (
        np.issubdtype(values.dtype, np.floating)
        and values.size > 0
        and float(np.nanmax(values)) <= 1.0
    )


def _normalize_canonical(mask, width, height):
    array = mask.array
    if array.shape == (height, width):
        return array.copy()
    return fit_length(array.reshape(-1), width * height).reshape(height, width)


def _normalize_rgba(mask, width, height):
    data = fit_length(mask.data.reshape(-1), mask.width * mask.height * 4)
    pixels = data.reshape(-1, 4)
    alpha = pixels[:, 3]
    # a uniform alpha channel carries no mask information
    if alpha.size == 0 or np.all(alpha == alpha[0]):
        values = pixels[:, 0]
    else:
        values = alpha
    values = fit_length(values, width * height)
    return binarize_bytes(values).reshape(height, width)


def _normalize_tensor(mask, width, height):
    if len(mask.dims) < 2:
        raise FormatUnrecognized(f"Tensor mask needs [h, w] dims, got {mask.dims}")
    tensor_height, tensor_width = mask.dims[-2:]
    if (tensor_width, tensor_height) != (width, height):
        logger.warning(
            f"Tensor mask is {tensor_width}x{tensor_height}, image is {width}x{height}"
        )
    values = fit_length(mask.data[: tensor_width * tensor_height], width * height)
    if mask.is_float:
        return binarize_floats(values).reshape(height, width)
    return binarize_bytes(values).reshape(height, width)


def _normalize_array(mask, width, height):
    data = mask.data
    expected = width * height

    if data.size == expected * 4:
        pixels = data.reshape(-1, 4)
        sample = pixels[: C.POLARITY_SAMPLE_SIZE]
        grayscale = bool(
            np.all(sample[:, 0] == sample[:, 1]) and np.all(sample[:, 1] == sample[:, 2])
        )
        if grayscale:
            return binarize_bytes(pixels[:, 0], invert_polarity=True).reshape(
                height, width
            )
        return binarize_bytes(pixels[:, 3]).reshape(height, width)

    values = fit_length(data, expected)
    if _is_unit_range(values):
        return binarize_floats(values).reshape(height, width)
    return binarize_bytes(values, invert_polarity=True).reshape(height, width)


_NORMALIZERS = {
    CanonicalMask: _normalize_canonical,
    RgbaMask: _normalize_rgba,
    TensorMask: _normalize_tensor,
    ArrayMask: _normalize_array,
}


def normalize_mask(mask_like, width, height):
    """
    Converts segmentation output into the canonical 8-bit mask.

    Args:
        mask_like: A mask variant or raw model output accepted by
            coerce_mask_output().
        width (int): The width of the segmented image.
        height (int): The height of the segmented image.

    Returns:
        np.ndarray: uint8 array of shape (height, width) with values 0 and 255.

    Raises:
        FormatUnrecognized: If the output matches no known mask shape.
    """
    mask = coerce_mask_output(mask_like)
    normalizer = _NORMALIZERS.get(type(mask))
    if normalizer is None:
        raise FormatUnrecognized(f"No normalizer for {type(mask).__name__}")
    return normalizer(mask, width, height)
