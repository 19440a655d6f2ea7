# (c) 2024 Niels Provos
#

import threading
import uuid
from enum import Enum
from typing import List

import numpy as np
from PIL import Image

from . import constants as C


class LayerKind(Enum):
    IMAGE = "image"
    MASK_LINE = "mask-line"
    GROUP = "group"
    SHAPE = "shape"
    TEXT = "text"


class BlendMode(Enum):
    NORMAL = "normal"
    ERASE = "erase"


class Layer:
    __slots__ = (
        "_id",
        "_kind",
        "_blend_mode",
        "_image",
        "_original_parent_width",
        "_original_parent_height",
        "parent_id",
        "name",
        "x",
        "y",
        "width",
        "height",
        "rotation",
        "points",
        "stroke_width",
    )

    def __init__(
        self,
        kind,
        layer_id=None,
        name="",
        parent_id=None,
        x=0.0,
        y=0.0,
        width=0.0,
        height=0.0,
        rotation=0.0,
        points=None,
        stroke_width=0.0,
        blend_mode=BlendMode.NORMAL,
        original_parent_width=None,
        original_parent_height=None,
        image=None,
    ):
        if not isinstance(kind, LayerKind):
            kind = LayerKind(kind)
        if not isinstance(blend_mode, BlendMode):
            blend_mode = BlendMode(blend_mode)
        if (
            kind == LayerKind.MASK_LINE
            and blend_mode == BlendMode.ERASE
            and parent_id is None
        ):
            raise ValueError("an erase mask layer requires a parent_id")

        self._id = layer_id if layer_id is not None else str(uuid.uuid4())
        self._kind = kind
        self._blend_mode = blend_mode
        self._original_parent_width = original_parent_width
        self._original_parent_height = original_parent_height
        self.image = image

        self.parent_id = parent_id
        self.name = name
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.rotation = rotation
        self.points = list(points) if points is not None else []
        self.stroke_width = stroke_width

    @property
    def id(self):
        return self._id

    @property
    def kind(self):
        return self._kind

    @property
    def blend_mode(self):
        return self._blend_mode

    @property
    def is_erase_mask(self):
        return self._kind == LayerKind.MASK_LINE and self._blend_mode == BlendMode.ERASE

    # captured once when the mask is created
    @property
    def original_parent_width(self):
        return self._original_parent_width

    @property
    def original_parent_height(self):
        return self._original_parent_height

    @property
    def image(self):
        """The decoded raster of an image layer, None until it is loaded."""
        return self._image

    @image.setter
    def image(self, value):
        if (
            not isinstance(value, np.ndarray)
            and not isinstance(value, Image.Image)
            and value is not None
        ):
            raise ValueError("image must be a np.ndarray, Image.Image object or None")
        self._image = value

    def scaled_erase_geometry(self, parent_width, parent_height):
        """
        Rescales the stroke of an erase mask to the parent's current size.

        Args:
            parent_width (float): The current width of the parent layer.
            parent_height (float): The current height of the parent layer.

        Returns:
            tuple: (points, stroke_width) in the parent's current local space.
        """
        original_width = self._original_parent_width
        original_height = self._original_parent_height
        if not original_width or not original_height:
            return list(self.points), self.stroke_width

        scale_x = parent_width / original_width
        scale_y = parent_height / original_height
        if (
            abs(scale_x - 1) < C.ERASE_RESCALE_TOLERANCE
            and abs(scale_y - 1) < C.ERASE_RESCALE_TOLERANCE
        ):
            return list(self.points), self.stroke_width

        points = []
        for i in range(0, len(self.points) - 1, 2):
            points.append(self.points[i] * scale_x)
            points.append(self.points[i + 1] * scale_y)
        return points, self.stroke_width * (scale_x + scale_y) / 2

    def to_json(self):
        return {
            "id": self._id,
            "kind": self._kind.value,
            "name": self.name,
            "parent_id": self.parent_id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "rotation": self.rotation,
            "points": list(self.points),
            "stroke_width": self.stroke_width,
            "blend_mode": self._blend_mode.value,
            "original_parent_width": self._original_parent_width,
            "original_parent_height": self._original_parent_height,
        }

    @staticmethod
    def from_json(data):
        return Layer(
            data["kind"],
            layer_id=data.get("id"),
            name=data.get("name", ""),
            parent_id=data.get("parent_id"),
            x=data.get("x", 0.0),
            y=data.get("y", 0.0),
            width=data.get("width", 0.0),
            height=data.get("height", 0.0),
            rotation=data.get("rotation", 0.0),
            points=data.get("points"),
            stroke_width=data.get("stroke_width", 0.0),
            blend_mode=data.get("blend_mode", BlendMode.NORMAL.value),
            original_parent_width=data.get("original_parent_width"),
            original_parent_height=data.get("original_parent_height"),
        )

    def copy(self, image=None):
        """A new Layer with the same id and geometry, optionally with a new raster."""
        layer = Layer.from_json(self.to_json())
        layer.image = image if image is not None else self._image
        return layer

    def __eq__(self, other):
        if not isinstance(other, Layer):
            return False
        return self.to_json() == other.to_json()

    def __repr__(self):
        return f"Layer({self._id!r}, {self._kind.value})"


class LayerStore:
    """
    The layer list together with the selection and checkpoint requests.

    History bookkeeping happens elsewhere; this only records that a
    checkpoint was requested.
    """

    def __init__(self, layers=None):
        # prevent concurrent writes
        self._lock = threading.Lock()
        self._layers: List[Layer] = list(layers) if layers else []
        self.selected_ids = []
        self.checkpoints = []

    @property
    def layers(self):
        with self._lock:
            return list(self._layers)

    def __len__(self):
        return len(self._layers)

    def find(self, layer_id):
        with self._lock:
            for layer in self._layers:
                if layer.id == layer_id:
                    return layer
        return None

    def selected_layer_id(self):
        """Returns the selected layer id if exactly one layer is selected."""
        if len(self.selected_ids) == 1:
            return self.selected_ids[0]
        return None

    def append_layer(self, layer):
        with self._lock:
            self._layers.append(layer)

    def replace_layers(self, layers):
        with self._lock:
            self._layers = list(layers)

    def request_checkpoint(self, label):
        self.checkpoints.append(label)

    def masks_for(self, parent_id):
        """Erase masks of a layer in stacking order."""
        with self._lock:
            return [
                layer
                for layer in self._layers
                if layer.is_erase_mask and layer.parent_id == parent_id
            ]
