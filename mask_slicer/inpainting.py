# (c) 2024 Niels Provos
#

import logging

import numpy as np
from PIL import Image

from . import constants as C
from .errors import AssetNotReady, InputUnavailable
from .transform import pair_points
from .utils import draw_round_stroke, timeit

logger = logging.getLogger(__name__)


class InpaintMasks:
    __slots__ = ("mask", "prompt", "line_width", "strokes")

    def __init__(self, mask, prompt, line_width, strokes):
        """
        The rasters handed to an external image edit model.

        Args:
            mask (PIL.Image.Image): RGBA, opaque white strokes on transparent.
            prompt (PIL.Image.Image): RGBA source image with translucent red strokes.
            line_width (float): The stroke width in native pixels.
            strokes (list): The strokes as (N, 2) arrays in native pixels.
        """
        self.mask = mask
        self.prompt = prompt
        self.line_width = line_width
        self.strokes = strokes

    @property
    def size(self):
        return self.mask.size


class InpaintMaskBuilder:
    def __init__(self, pipeline):
        self.pipeline = pipeline

    def native_strokes(self, strokes, node, native_size):
        """
        Maps stage-space strokes into the native pixel grid of a node's asset.

        Raises:
            InputUnavailable: If the node is gone, cannot be inverted or a
                stroke has an odd number of coordinates.
        """
        try:
            transform = self.pipeline.stage_to_local_transform(node.node_id)
            if transform is None:
                raise InputUnavailable(f"Node {node.node_id} not found")

            ratio = np.array(
                [native_size[0] / node.width, native_size[1] / node.height],
                dtype=np.float64,
            )
            return [transform.points(pair_points(stroke)) * ratio for stroke in strokes]
        except ValueError as e:
            raise InputUnavailable(f"Cannot map strokes into {node.node_id}: {e}") from e

    def line_width(self, brush_size, node, native_size):
        # undo the canvas zoom, then account for native vs display size
        scale_x, _ = node.absolute_scale()
        return (brush_size / scale_x) * (native_size[0] / node.width)

    @timeit
    def build(self, strokes, target_id, source_image, brush_size):
        """
        Rasterizes strokes into a native-resolution mask and prompt image.

        Args:
            strokes (list): Strokes in stage space, each (x, y) pairs or a flat list.
            target_id (str): The id of the target image layer.
            source_image (PIL.Image.Image or np.ndarray): The decoded asset of the
                target layer, None if it has not been decoded yet.
            brush_size (float): The brush size as displayed on screen.

        Returns:
            InpaintMasks: The mask and prompt rasters.

        Raises:
            AssetNotReady: If the decoded asset is unavailable.
            InputUnavailable: If the target's scene node no longer exists.
        """
        if source_image is None:
            raise AssetNotReady(target_id)

        node = self.pipeline.scene.find(target_id)
        if node is None:
            raise InputUnavailable(f"Node {target_id} not found")
        if not node.width or not node.height:
            raise InputUnavailable(f"Node {target_id} has no display size")

        if not isinstance(source_image, Image.Image):
            source_image = Image.fromarray(source_image)
        native_size = source_image.size

        native = self.native_strokes(strokes, node, native_size)
        width = self.line_width(brush_size, node, native_size)

        mask = Image.new("RGBA", native_size, (0, 0, 0, 0))
        for stroke in native:
            draw_round_stroke(mask, stroke, width, C.INPAINT_MASK_COLOR)

        prompt = source_image.convert("RGBA")
        alpha = int(round(255 * C.INPAINT_PROMPT_ALPHA))
        for stroke in native:
            # every stroke is composited once, overlapping strokes stack
            coverage = Image.new("L", native_size, 0)
            draw_round_stroke(coverage, stroke, width, 255)
            overlay = Image.new("RGBA", native_size, C.INPAINT_PROMPT_COLOR + (0,))
            overlay.putalpha(coverage.point(lambda v: alpha if v else 0))
            prompt = Image.alpha_composite(prompt, overlay)

        return InpaintMasks(mask, prompt, width, native)


def composite_inpaint(original, edited, mask):
    """
    Blends an edited image into the original only where the mask is opaque.

    Args:
        original (PIL.Image.Image or np.ndarray): The clean source image.
        edited (PIL.Image.Image or np.ndarray): The image returned by the edit model.
        mask (PIL.Image.Image or np.ndarray): The inpainting mask. RGBA masks use
            their alpha channel, single channel masks their value.

    Returns:
        PIL.Image.Image: The composited RGBA image at the original's size.
    """
    if not isinstance(original, Image.Image):
        original = Image.fromarray(original)
    if not isinstance(edited, Image.Image):
        edited = Image.fromarray(edited)
    if not isinstance(mask, Image.Image):
        mask = Image.fromarray(mask)

    original = original.convert("RGBA")
    if edited.size != original.size:
        logger.warning(
            f"Edited image size {edited.size} differs from {original.size}, resizing"
        )
        edited = edited.resize(original.size, resample=Image.LANCZOS)
    edited = edited.convert("RGBA")

    if mask.mode == "RGBA":
        mask = mask.getchannel("A")
    else:
        mask = mask.convert("L")
    if mask.size != original.size:
        mask = mask.resize(original.size, resample=Image.NEAREST)

    edited.putalpha(mask)
    return Image.alpha_composite(original, edited)
