import unittest

import numpy as np
import torch
from PIL import Image

from .errors import FormatUnrecognized
from .mask import (
    ArrayMask,
    CanonicalMask,
    RgbaMask,
    TensorMask,
    coerce_mask_output,
    fit_length,
    needs_invert,
    normalize_mask,
)


class TestCoerceMaskOutput(unittest.TestCase):
    def test_canonical_array(self):
        mask = np.zeros((4, 5), dtype=np.uint8)
        mask[1, 1] = 255
        self.assertIsInstance(coerce_mask_output(mask), CanonicalMask)

    def test_rgba_image(self):
        image = Image.new("RGBA", (5, 4))
        result = coerce_mask_output(image)
        self.assertIsInstance(result, RgbaMask)
        self.assertEqual((result.width, result.height), (5, 4))

    def test_tensor_dict(self):
        result = coerce_mask_output({"data": [0.1] * 12, "dims": [1, 3, 4]})
        self.assertIsInstance(result, TensorMask)
        self.assertEqual(result.dims, (1, 3, 4))
        self.assertTrue(result.is_float)

    def test_torch_tensor(self):
        result = coerce_mask_output(torch.rand(1, 8, 6))
        self.assertIsInstance(result, TensorMask)
        self.assertEqual(result.dims, (1, 8, 6))

    def test_pipeline_result_list(self):
        mask = Image.new("L", (6, 8), 255)
        result = coerce_mask_output([{"label": None, "score": None, "mask": mask}])
        self.assertIsInstance(result, CanonicalMask)

    def test_flat_list(self):
        self.assertIsInstance(coerce_mask_output([0, 10, 20]), ArrayMask)

    def test_unrecognized(self):
        for output in ["mask", {}, [], None, 42]:
            with self.assertRaises(FormatUnrecognized):
                coerce_mask_output(output)

    def test_unrecognized_is_value_error(self):
        with self.assertRaises(ValueError):
            coerce_mask_output(object())


class TestNormalizeMask(unittest.TestCase):
    def test_canonical_is_unchanged(self):
        mask = np.zeros((6, 8), dtype=np.uint8)
        mask[2:4, 3:7] = 255
        result = normalize_mask(mask, 8, 6)
        np.testing.assert_array_equal(result, mask)
        self.assertIsNot(result, mask)

    def test_normalize_twice(self):
        raw = np.linspace(0, 1, 48, dtype=np.float32)
        once = normalize_mask(raw, 8, 6)
        twice = normalize_mask(once, 8, 6)
        np.testing.assert_array_equal(once, twice)
        self.assertEqual(set(np.unique(once)), {0, 255})

    def test_float_tensor(self):
        data = np.full((1, 8, 6), 0.2, dtype=np.float32)
        data[0, 2:5, 1:3] = 0.7
        result = normalize_mask(torch.from_numpy(data), 6, 8)
        self.assertEqual(result.shape, (8, 6))
        self.assertEqual(result.dtype, np.uint8)
        self.assertEqual(int(result.sum()) // 255, 6)
        self.assertEqual(result[3, 2], 255)

    def test_float_threshold_is_exclusive(self):
        result = normalize_mask({"data": [0.5, 0.51], "dims": [1, 2]}, 2, 1)
        np.testing.assert_array_equal(result, [[0, 255]])

    def test_byte_tensor(self):
        result = normalize_mask({"data": [127, 128, 0, 255], "dims": [2, 2]}, 2, 2)
        np.testing.assert_array_equal(result, [[0, 255], [0, 255]])

    def test_tensor_size_mismatch(self):
        with self.assertLogs("mask_slicer.mask", level="WARNING"):
            result = normalize_mask({"data": [1.0] * 16, "dims": [4, 4]}, 5, 5)
        self.assertEqual(result.shape, (5, 5))
        self.assertEqual(int(result.sum()) // 255, 16)

    def test_rgba_alpha(self):
        data = np.zeros((4, 5, 4), dtype=np.uint8)
        data[:, :, :3] = 255
        data[1, 2, 3] = 255
        result = normalize_mask(RgbaMask(data, 5, 4), 5, 4)
        expected = np.zeros((4, 5), dtype=np.uint8)
        expected[1, 2] = 255
        np.testing.assert_array_equal(result, expected)

    def test_rgba_uniform_alpha_uses_red(self):
        data = np.zeros((4, 5, 4), dtype=np.uint8)
        data[:, :, 3] = 255
        data[0, 0, 0] = 200
        result = normalize_mask(Image.fromarray(data), 5, 4)
        self.assertEqual(result[0, 0], 255)
        self.assertEqual(int(result.sum()) // 255, 1)

    def test_packed_grayscale(self):
        pixels = np.zeros((6, 4), dtype=np.uint8)
        pixels[:, 3] = 255
        pixels[2, :3] = 255
        result = normalize_mask(ArrayMask(pixels.reshape(-1)), 3, 2)
        np.testing.assert_array_equal(result, [[0, 0, 255], [0, 0, 0]])

    def test_packed_color_uses_alpha(self):
        pixels = np.zeros((6, 4), dtype=np.uint8)
        pixels[:, 0] = 255
        pixels[4, 3] = 200
        result = normalize_mask(ArrayMask(pixels.reshape(-1)), 3, 2)
        np.testing.assert_array_equal(result, [[0, 0, 0], [0, 255, 0]])

    def test_inverted_bytes(self):
        values = np.full(2500, 255, dtype=np.uint8)
        values[:1000] = 240
        values[2000:2100] = 10
        self.assertTrue(needs_invert(values))

        result = normalize_mask(values, 50, 50)
        self.assertEqual(int(result.sum()) // 255, 100)
        self.assertEqual(result.reshape(-1)[2050], 255)
        self.assertEqual(result.reshape(-1)[0], 0)

    def test_dark_bytes_are_not_inverted(self):
        values = np.zeros(100, dtype=np.uint8)
        values[:10] = 230
        self.assertFalse(needs_invert(values))
        result = normalize_mask(values, 10, 10)
        self.assertEqual(int(result.sum()) // 255, 10)

    def test_bool_array(self):
        data = np.zeros((3, 3), dtype=bool)
        data[1, 1] = True
        result = normalize_mask(data, 3, 3)
        self.assertEqual(result[1, 1], 255)
        self.assertEqual(int(result.sum()) // 255, 1)

    def test_short_buffer_is_padded(self):
        with self.assertLogs("mask_slicer.mask", level="WARNING"):
            result = normalize_mask(ArrayMask([0.9] * 4), 3, 2)
        np.testing.assert_array_equal(result, [[255, 255, 255], [255, 0, 0]])

    def test_long_buffer_is_truncated(self):
        with self.assertLogs("mask_slicer.mask", level="WARNING"):
            result = normalize_mask(ArrayMask([0.9] * 5 + [0.1] * 5), 2, 2)
        np.testing.assert_array_equal(result, [[255, 255], [255, 255]])

    def test_fit_length(self):
        values = np.arange(3)
        np.testing.assert_array_equal(fit_length(values, 3), values)


if __name__ == "__main__":
    unittest.main()
