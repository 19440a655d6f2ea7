import unittest

import numpy as np
from PIL import Image

from .errors import AssetNotReady, InputUnavailable
from .inpainting import InpaintMaskBuilder, composite_inpaint
from .transform import Scene, SceneNode, TransformPipeline


class TestInpaintMaskBuilder(unittest.TestCase):
    def setUp(self):
        self.scene = Scene()
        self.scene.add(SceneNode("image", width=100, height=50))
        self.builder = InpaintMaskBuilder(TransformPipeline(self.scene))
        # native raster is twice the display size
        self.source = Image.new("RGB", (200, 100), (0, 0, 0))

    def test_asset_not_ready(self):
        with self.assertRaises(AssetNotReady):
            self.builder.build([[10, 10, 50, 10]], "image", None, 10)

    def test_asset_not_ready_is_checked_first(self):
        with self.assertRaises(AssetNotReady):
            self.builder.build([[10, 10, 50, 10]], "gone", None, 10)

    def test_missing_node(self):
        with self.assertRaises(InputUnavailable):
            self.builder.build([[10, 10, 50, 10]], "gone", self.source, 10)

    def test_odd_coordinate_count(self):
        with self.assertRaises(InputUnavailable):
            self.builder.build([[10, 10, 50]], "image", self.source, 10)

    def test_zero_scale_node(self):
        self.scene.find("image").scale_y = 0.0
        with self.assertRaises(InputUnavailable):
            self.builder.build([[10, 10, 50, 10]], "image", self.source, 10)

    def test_line_width(self):
        node = self.scene.find("image")
        self.assertAlmostEqual(self.builder.line_width(10, node, (200, 100)), 20.0)
        self.scene.stage.scale_x = 2
        self.scene.stage.scale_y = 2
        self.assertAlmostEqual(self.builder.line_width(10, node, (200, 100)), 10.0)

    def test_mask_and_prompt(self):
        masks = self.builder.build([[10, 10, 50, 10]], "image", self.source, 10)

        self.assertEqual(masks.size, (200, 100))
        self.assertEqual(masks.mask.mode, "RGBA")
        self.assertAlmostEqual(masks.line_width, 20.0)
        np.testing.assert_allclose(masks.strokes[0], [[20, 20], [100, 20]])

        mask = np.array(masks.mask)
        np.testing.assert_array_equal(mask[20, 60], [255, 255, 255, 255])
        self.assertEqual(mask[80, 60, 3], 0)
        # round caps extend past the end points
        self.assertEqual(mask[20, 105, 3], 255)

        prompt = np.array(masks.prompt)
        self.assertEqual(masks.prompt.mode, "RGBA")
        self.assertTrue(120 <= prompt[20, 60, 0] <= 135)
        self.assertEqual(prompt[20, 60, 1], 0)
        np.testing.assert_array_equal(prompt[80, 60], [0, 0, 0, 255])

    def test_all_strokes_in_one_mask(self):
        strokes = [[[10, 10], [20, 10]], [[10, 40], [20, 40]]]
        masks = self.builder.build(strokes, "image", self.source, 4)
        mask = np.array(masks.mask)
        self.assertEqual(mask[20, 30, 3], 255)
        self.assertEqual(mask[80, 30, 3], 255)


class TestCompositeInpaint(unittest.TestCase):
    def setUp(self):
        self.original = Image.new("RGB", (10, 10), (255, 0, 0))
        self.edited = Image.new("RGB", (10, 10), (0, 0, 255))
        mask = np.zeros((10, 10), dtype=np.uint8)
        mask[2:4, 2:4] = 255
        self.mask = Image.fromarray(mask)

    def test_only_masked_pixels_change(self):
        result = np.array(composite_inpaint(self.original, self.edited, self.mask))
        np.testing.assert_array_equal(result[3, 3], [0, 0, 255, 255])
        np.testing.assert_array_equal(result[5, 5], [255, 0, 0, 255])

    def test_rgba_mask_uses_alpha(self):
        mask = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
        mask.paste((255, 255, 255, 255), (0, 0, 5, 10))
        result = np.array(composite_inpaint(self.original, self.edited, mask))
        np.testing.assert_array_equal(result[5, 2], [0, 0, 255, 255])
        np.testing.assert_array_equal(result[5, 7], [255, 0, 0, 255])

    def test_edited_is_resized(self):
        edited = Image.new("RGB", (20, 20), (0, 0, 255))
        with self.assertLogs("mask_slicer.inpainting", level="WARNING"):
            result = composite_inpaint(self.original, edited, self.mask)
        self.assertEqual(result.size, (10, 10))
        np.testing.assert_array_equal(np.array(result)[3, 3], [0, 0, 255, 255])


if __name__ == "__main__":
    unittest.main()
