# (c) 2024 Niels Provos

import logging
import threading

from PIL import Image

from . import constants as C
from .erase import EraseMaskBuilder
from .errors import InputUnavailable
from .inpainting import InpaintMaskBuilder, composite_inpaint
from .instance import CachedSegmenter, ModelConfig, SegmentationModelCache
from .layers import Layer, LayerStore
from .transform import Scene, SceneNode, TransformPipeline
from .worker import ExtractionJob

logger = logging.getLogger(__name__)


class MaskingController:
    """
    Connects the canvas state with the masking operations.

    Interactive operations (erase, inpaint) run on the calling thread and
    fail silently. Slicing runs in the background through an ExtractionJob.
    """

    __slots__ = (
        "_lock",
        "store",
        "scene",
        "pipeline",
        "erase_builder",
        "inpaint_builder",
        "_model_config",
        "current_job",
    )

    def __init__(self, store=None, scene=None, model_config=None):
        # prevent concurrent writes
        self._lock = threading.Lock()

        self.store = store if store is not None else LayerStore()
        self.scene = scene if scene is not None else Scene()
        self.pipeline = TransformPipeline(self.scene)
        self.erase_builder = EraseMaskBuilder(self.store, self.pipeline)
        self.inpaint_builder = InpaintMaskBuilder(self.pipeline)

        self._model_config = model_config if model_config is not None else ModelConfig()
        self.current_job = None

    @property
    def model_config(self):
        return self._model_config

    @model_config.setter
    def model_config(self, value):
        if not isinstance(value, ModelConfig):
            raise ValueError("model_config must be a ModelConfig")
        if value != self._model_config:
            SegmentationModelCache.instance().invalidate()
        self._model_config = value

    def add_layer(self, layer: Layer, parent_id=None, scale_x=1.0, scale_y=1.0):
        """Appends a layer and places its node in the scene graph."""
        node = SceneNode(
            layer.id,
            x=layer.x,
            y=layer.y,
            width=layer.width,
            height=layer.height,
            rotation=layer.rotation,
            scale_x=scale_x,
            scale_y=scale_y,
        )
        self.scene.add(node, parent_id=parent_id)
        self.store.append_layer(layer)
        return node

    def remove_layer(self, layer_id):
        """Removes a layer, its erase masks and its scene node."""
        layers = [
            layer
            for layer in self.store.layers
            if layer.id != layer_id and layer.parent_id != layer_id
        ]
        self.store.replace_layers(layers)
        self.scene.remove(layer_id)

    def select(self, *layer_ids):
        self.store.selected_ids = list(layer_ids)

    def erase_stroke(self, points, width, target_id=None):
        """
        Turns a finished eraser stroke into an erase mask.

        Returns:
            Layer: The new mask layer, or None if the stroke had no target or
            could not be mapped onto it.
        """
        with self._lock:
            return self.erase_builder.build(points, width, target_id=target_id)

    def submit_inpaint(self, strokes, target_id, brush_size, edit):
        """
        Inpaints the area under the strokes of an image layer.

        Args:
            strokes (list): Brush strokes in stage space.
            target_id (str): The image layer to edit.
            brush_size (float): The brush size on screen.
            edit (callable): edit(prompt, mask) -> image, the external edit model.

        Returns:
            PIL.Image.Image: The new raster of the layer, or None if nothing
            was changed.
        """
        layer = self.store.find(target_id)
        if layer is None:
            logger.debug(f"Inpaint ignored: layer {target_id} not found")
            return None

        try:
            masks = self.inpaint_builder.build(strokes, target_id, layer.image, brush_size)
        except InputUnavailable as e:
            logger.debug(f"Inpaint ignored: {e}")
            return None

        try:
            edited = edit(masks.prompt, masks.mask)
        except Exception:
            logger.debug("Inpaint ignored: edit model failed", exc_info=True)
            return None
        if edited is None:
            logger.debug("Inpaint ignored: edit model returned nothing")
            return None

        original = layer.image
        if not isinstance(original, Image.Image):
            original = Image.fromarray(original)
        result = composite_inpaint(original, edited, masks.mask)

        with self._lock:
            edited_layer = layer.copy(image=result)
            self.store.replace_layers(
                [edited_layer if other.id == layer.id else other for other in self.store.layers]
            )
            self.store.request_checkpoint(C.HISTORY_INPAINT)
        return result

    def start_slicing(self, image, min_area_ratio=C.DEFAULT_MIN_AREA_RATIO, segment=None):
        """
        Starts extracting object slices from an image in the background.

        Only one job runs at a time; while one is running it is returned
        instead of starting another.

        Returns:
            ExtractionJob: The running job. Its channel delivers the progress.
        """
        with self._lock:
            if self.current_job is not None and self.current_job.is_alive():
                logger.info("Slicing already in progress")
                return self.current_job

            if segment is None:
                segment = CachedSegmenter(self._model_config)
            self.current_job = ExtractionJob(
                image, min_area_ratio=min_area_ratio, segment=segment
            )
            return self.current_job.start()
