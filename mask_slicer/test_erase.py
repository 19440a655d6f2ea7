import unittest

import numpy as np
from PIL import Image

from . import constants as C
from .erase import EraseMaskBuilder
from .layers import BlendMode, Layer, LayerKind, LayerStore
from .transform import Scene, SceneNode, TransformPipeline


class TestEraseMaskBuilder(unittest.TestCase):
    def setUp(self):
        self.scene = Scene()
        self.pipeline = TransformPipeline(self.scene)
        self.image = Layer(LayerKind.IMAGE, layer_id="image", x=50, y=20, width=100, height=80)
        self.text = Layer(LayerKind.TEXT, layer_id="text", width=40, height=10)
        self.store = LayerStore([self.image, self.text])
        self.scene.add(
            SceneNode("image", x=50, y=20, width=100, height=80, rotation=90, scale_x=2, scale_y=2)
        )
        self.scene.add(SceneNode("text", width=40, height=10))
        self.builder = EraseMaskBuilder(self.store, self.pipeline)

    def test_no_target_keeps_layers(self):
        result = self.builder.build([[0, 0], [10, 10]], 12)
        self.assertIsNone(result)
        self.assertEqual(len(self.store), 2)
        self.assertEqual(self.store.checkpoints, [])

    def test_multiple_selection_is_not_a_target(self):
        self.store.selected_ids = ["image", "text"]
        self.assertIsNone(self.builder.build([[0, 0], [10, 10]], 12))
        self.assertEqual(len(self.store), 2)

    def test_unknown_target(self):
        self.assertIsNone(self.builder.build([[0, 0]], 12, target_id="gone"))
        self.assertEqual(len(self.store), 2)

    def test_text_layer_is_not_erasable(self):
        self.assertIsNone(self.builder.build([[0, 0]], 12, target_id="text"))
        self.assertEqual(len(self.store), 2)

    def test_missing_scene_node(self):
        self.scene.remove("image")
        self.assertIsNone(self.builder.build([[0, 0]], 12, target_id="image"))
        self.assertEqual(len(self.store), 2)

    def test_erase_on_selected_layer(self):
        self.store.selected_ids = ["image"]
        mask = self.builder.build([[0, 0], [10, 10]], 12)

        self.assertIsNotNone(mask)
        self.assertEqual(len(self.store), 3)
        self.assertIs(self.store.layers[-1], mask)
        self.assertEqual(mask.kind, LayerKind.MASK_LINE)
        self.assertEqual(mask.blend_mode, BlendMode.ERASE)
        self.assertEqual(mask.parent_id, "image")
        self.assertEqual(mask.name, C.ERASE_MASK_NAME)
        self.assertEqual(mask.stroke_width, 12)
        self.assertEqual(mask.original_parent_width, 100)
        self.assertEqual(mask.original_parent_height, 80)
        np.testing.assert_allclose(mask.points, [-10, 25, -5, 20], atol=1e-9)
        self.assertEqual(self.store.checkpoints, [C.HISTORY_ERASE])
        # selection is left alone
        self.assertEqual(self.store.selected_ids, ["image"])

    def test_masks_stack_in_order(self):
        first = self.builder.build([0, 0, 1, 1], 4, target_id="image")
        second = self.builder.build([2, 2, 3, 3], 4, target_id="image")
        self.assertEqual(self.store.masks_for("image"), [first, second])

    def test_erase_on_mask_line(self):
        line = Layer(LayerKind.MASK_LINE, layer_id="line", width=10, height=10)
        self.store.append_layer(line)
        self.scene.add(SceneNode("line", width=10, height=10))
        mask = self.builder.build([1, 1], 2, target_id="line")
        self.assertEqual(mask.parent_id, "line")

    def test_zero_scale_target_is_ignored(self):
        self.scene.find("image").scale_x = 0.0
        self.assertIsNone(self.builder.build([[0, 0], [10, 10]], 12, target_id="image"))
        self.assertEqual(len(self.store), 2)
        self.assertEqual(self.store.checkpoints, [])

    def test_zero_scale_ancestor_is_ignored(self):
        self.scene.stage.scale_y = 0.0
        self.assertIsNone(self.builder.build([[0, 0], [10, 10]], 12, target_id="image"))
        self.assertEqual(len(self.store), 2)

    def test_odd_coordinate_count_is_ignored(self):
        self.assertIsNone(self.builder.build([0, 0, 10], 12, target_id="image"))
        self.assertEqual(len(self.store), 2)
        self.assertEqual(self.store.checkpoints, [])


class TestLayer(unittest.TestCase):
    def test_erase_mask_requires_parent(self):
        with self.assertRaises(ValueError):
            Layer(LayerKind.MASK_LINE, blend_mode=BlendMode.ERASE)

    def test_scaled_erase_geometry(self):
        mask = Layer(
            LayerKind.MASK_LINE,
            parent_id="image",
            points=[10, 10, 20, 40],
            stroke_width=10,
            blend_mode=BlendMode.ERASE,
            original_parent_width=100,
            original_parent_height=100,
        )
        points, width = mask.scaled_erase_geometry(200, 50)
        self.assertEqual(points, [20, 5, 40, 20])
        self.assertAlmostEqual(width, 12.5)

    def test_scaled_erase_geometry_within_tolerance(self):
        mask = Layer(
            LayerKind.MASK_LINE,
            parent_id="image",
            points=[10, 10],
            stroke_width=10,
            blend_mode=BlendMode.ERASE,
            original_parent_width=100,
            original_parent_height=100,
        )
        self.assertEqual(mask.scaled_erase_geometry(100.05, 100), ([10, 10], 10))

    def test_copy(self):
        original = Image.new("RGB", (4, 4))
        layer = Layer(LayerKind.IMAGE, layer_id="image", x=5, width=40, height=30, image=original)
        edited = Image.new("RGB", (4, 4), (255, 255, 255))

        copy = layer.copy(image=edited)
        self.assertIsNot(copy, layer)
        self.assertEqual(copy, layer)
        self.assertIs(copy.image, edited)
        self.assertIs(layer.image, original)
        self.assertIs(layer.copy().image, original)

    def test_json_round_trip(self):
        mask = Layer(
            "mask-line",
            parent_id="image",
            points=[1, 2],
            stroke_width=3,
            blend_mode="erase",
            original_parent_width=10,
            original_parent_height=20,
        )
        self.assertEqual(Layer.from_json(mask.to_json()), mask)

    def test_image_validation(self):
        with self.assertRaises(ValueError):
            Layer(LayerKind.IMAGE, image="not an image")


class TestLayerStore(unittest.TestCase):
    def test_replace_layers(self):
        store = LayerStore([Layer(LayerKind.IMAGE, layer_id="a")])
        store.replace_layers([Layer(LayerKind.IMAGE, layer_id="b")])
        self.assertIsNone(store.find("a"))
        self.assertIsNotNone(store.find("b"))

    def test_layers_is_a_copy(self):
        store = LayerStore()
        store.layers.append(Layer(LayerKind.IMAGE))
        self.assertEqual(len(store), 0)


if __name__ == "__main__":
    unittest.main()
