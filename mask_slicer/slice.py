# (c) 2024 Niels Provos
#

import logging
from pathlib import Path

import numpy as np
from PIL import Image

from .utils import to_image_url

logger = logging.getLogger(__name__)


class ImageSlice:
    """One extracted object: an RGBA cut-out of the segmented image."""

    __slots__ = ("_id", "_image", "_filename")

    def __init__(self, slice_id, image=None, filename=None):
        self.id = slice_id
        self.image = image
        self.filename = filename

    @property
    def id(self):
        return self._id

    @id.setter
    def id(self, value):
        if not isinstance(value, int) or value < 0:
            raise ValueError("id must be a non-negative integer")
        self._id = value

    @property
    def image(self):
        return self._image

    @image.setter
    def image(self, value):
        if (
            not isinstance(value, np.ndarray)
            and not isinstance(value, Image.Image)
            and value is not None
        ):
            raise ValueError("image must be a np.ndarray, Image.Image object or None")
        if isinstance(value, np.ndarray):
            value = Image.fromarray(value)
        if isinstance(value, Image.Image) and value.mode != "RGBA":
            value = value.convert("RGBA")
        self._image = value

    @property
    def filename(self):
        return self._filename

    @filename.setter
    def filename(self, value):
        if (
            not isinstance(value, Path)
            and not isinstance(value, str)
            and value is not None
        ):
            raise ValueError("filename must be a Path, str object or None")
        self._filename = value

    @property
    def width(self):
        return self._image.width if self._image is not None else 0

    @property
    def height(self):
        return self._image.height if self._image is not None else 0

    def __eq__(self, other):
        if not isinstance(other, ImageSlice):
            return False
        if self.id != other.id or self.filename != other.filename:
            return False
        if self.image is None or other.image is None:
            return self.image is other.image
        return np.array_equal(np.array(self.image), np.array(other.image))

    def __repr__(self):
        return f"ImageSlice(id={self._id}, size={self.width}x{self.height})"

    def to_data_url(self):
        """The slice as a PNG data URL, alpha preserved."""
        return to_image_url(self._image)

    def save_image(self, filename=None):
        if filename is not None:
            self.filename = filename
        if self.filename is None:
            raise ValueError("filename is not set")
        logger.info(f"Saving image slice: {self.filename}")
        self._image.save(str(self.filename))
        return self.filename

    def to_json(self):
        return {
            "id": self._id,
            "width": self.width,
            "height": self.height,
            "image_data_url": self.to_data_url(),
        }
