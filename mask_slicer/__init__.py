"""Mask Slicer - masking and object segmentation for a layered canvas.

This package provides tools for:
- Mapping stroke coordinates through the canvas scene graph
- Turning eraser strokes into non-destructive erase masks
- Rasterizing inpainting masks at the native resolution of an image
- Normalizing segmentation model output into a canonical mask
- Extracting one image slice per object found in the mask
"""

__version__ = "0.1.0"
__license__ = "AGPL-3.0-or-later"

from .controller import MaskingController
from .layers import BlendMode, Layer, LayerKind, LayerStore
from .slice import ImageSlice
from .transform import Scene, SceneNode, TransformPipeline

__all__ = [
    "MaskingController",
    "BlendMode",
    "Layer",
    "LayerKind",
    "LayerStore",
    "ImageSlice",
    "Scene",
    "SceneNode",
    "TransformPipeline",
]
