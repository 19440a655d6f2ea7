# (c) 2024 Niels Provos
#

import logging

from . import constants as C
from .layers import Layer, LayerKind, BlendMode
from .transform import flatten_points

logger = logging.getLogger(__name__)


class EraseMaskBuilder:
    ERASABLE_KINDS = (LayerKind.IMAGE, LayerKind.MASK_LINE, LayerKind.GROUP)

    def __init__(self, store, pipeline):
        self.store = store
        self.pipeline = pipeline

    def resolve_target(self, target_id=None):
        """Returns the explicit target, or the single selected layer."""
        if target_id is None:
            target_id = self.store.selected_layer_id()
        if target_id is None:
            return None
        return self.store.find(target_id)

    def build(self, points, stroke_width, target_id=None):
        """
        Turns a finished eraser stroke into an erase mask on its target layer.

        The stroke never erases globally: without a resolvable target, with a
        target that cannot be erased or when its scene node is gone, the
        stroke is dropped and the layer list is left alone. Malformed strokes
        and targets that cannot be inverted are dropped the same way.

        Args:
            points: The stroke in stage space, (x, y) pairs or a flat list.
            stroke_width (float): The brush width.
            target_id (str, optional): The layer hit by the stroke. Falls back
                to the single selected layer.

        Returns:
            Layer: The appended mask layer, or None if the stroke was dropped.
        """
        target = self.resolve_target(target_id)
        if target is None:
            logger.debug("Erase ignored: no target layer")
            return None

        if target.kind not in self.ERASABLE_KINDS:
            logger.debug(f"Erase ignored: {target.kind.value} layers are not erasable")
            return None

        try:
            local_points = self.pipeline.stage_to_local(points, target.id)
        except ValueError as e:
            # odd coordinate count or a zero-scale node
            logger.debug(f"Erase ignored: {e}")
            return None
        if local_points is None:
            logger.debug(f"Erase ignored: node for {target.id} not found")
            return None

        mask_layer = Layer(
            LayerKind.MASK_LINE,
            name=C.ERASE_MASK_NAME,
            parent_id=target.id,
            points=flatten_points(local_points),
            stroke_width=stroke_width,
            blend_mode=BlendMode.ERASE,
            original_parent_width=target.width,
            original_parent_height=target.height,
        )

        self.store.append_layer(mask_layer)
        self.store.request_checkpoint(C.HISTORY_ERASE)
        return mask_layer
