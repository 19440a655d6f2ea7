# (c) 2024 Niels Provos
#

import numba as nb
import numpy as np
from PIL import Image

from . import constants as C
from .utils import timeit


class BoundingBox:
    __slots__ = ("x", "y", "width", "height")

    def __init__(self, x, y, width, height):
        self.x = int(x)
        self.y = int(y)
        self.width = int(width)
        self.height = int(height)

    @property
    def area(self):
        return self.width * self.height

    def to_json(self):
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "area": self.area,
        }

    def __eq__(self, other):
        if not isinstance(other, BoundingBox):
            return False
        return (self.x, self.y, self.width, self.height) == (
            other.x,
            other.y,
            other.width,
            other.height,
        )

    def __repr__(self):
        return (
            f"BoundingBox(x={self.x}, y={self.y}, width={self.width}, "
            f"height={self.height}, area={self.area})"
        )


@nb.jit(nopython=True, cache=True)
def label_components(mask, foreground_min):  # pragma: no cover
    """
    Finds the bounding rectangles of all 4-connected foreground components.

    Args:
        mask (numpy.ndarray): 2D uint8 mask.
        foreground_min (int): Pixels with at least this value are foreground.

    Returns:
        numpy.ndarray: (N, 4) int64 array of (min_x, min_y, max_x, max_y) in
        raster-scan discovery order.

    Description:
        Breadth-first flood fill with an explicit queue. Every pixel enters
        the queue at most once, so a single queue of height * width entries
        is reused for all components.
    """
    height, width = mask.shape
    num_pixels = height * width
    visited = np.zeros(num_pixels, dtype=np.bool_)
    queue = np.empty(num_pixels, dtype=np.int64)
    boxes = np.empty(((num_pixels + 1) // 2 + 1, 4), dtype=np.int64)
    count = 0

    for start_y in range(height):
        for start_x in range(width):
            start = start_y * width + start_x
            if visited[start] or mask[start_y, start_x] < foreground_min:
                continue

            head = 0
            tail = 0
            queue[tail] = start
            tail += 1
            visited[start] = True
            min_x = start_x
            max_x = start_x
            min_y = start_y
            max_y = start_y

            while head < tail:
                index = queue[head]
                head += 1
                y = index // width
                x = index - y * width

                if x < min_x:
                    min_x = x
                if x > max_x:
                    max_x = x
                if y < min_y:
                    min_y = y
                if y > max_y:
                    max_y = y

                # up, down, left, right
                if y > 0:
                    neighbor = index - width
                    if not visited[neighbor] and mask[y - 1, x] >= foreground_min:
                        visited[neighbor] = True
                        queue[tail] = neighbor
                        tail += 1
                if y < height - 1:
                    neighbor = index + width
                    if not visited[neighbor] and mask[y + 1, x] >= foreground_min:
                        visited[neighbor] = True
                        queue[tail] = neighbor
                        tail += 1
                if x > 0:
                    neighbor = index - 1
                    if not visited[neighbor] and mask[y, x - 1] >= foreground_min:
                        visited[neighbor] = True
                        queue[tail] = neighbor
                        tail += 1
                if x < width - 1:
                    neighbor = index + 1
                    if not visited[neighbor] and mask[y, x + 1] >= foreground_min:
                        visited[neighbor] = True
                        queue[tail] = neighbor
                        tail += 1

            boxes[count, 0] = min_x
            boxes[count, 1] = min_y
            boxes[count, 2] = max_x
            boxes[count, 3] = max_y
            count += 1

    return boxes[:count]


@timeit
def extract_bounding_boxes(mask, min_area_ratio=C.DEFAULT_MIN_AREA_RATIO):
    """
    Finds the discrete foreground regions of a canonical mask.

    The area of a region is the area of its bounding rectangle, not its
    pixel count.

    Args:
        mask (numpy.ndarray or PIL.Image.Image): The canonical 8-bit mask.
        min_area_ratio (float, optional): Regions whose box area is below
            this fraction of the image area are dropped. Defaults to 0.001.

    Returns:
        List[BoundingBox]: Boxes sorted by descending area; equal areas keep
        top-left to bottom-right discovery order. Empty if nothing survives.
    """
    if isinstance(mask, Image.Image):
        mask = np.array(mask.convert("L"))
    mask = np.ascontiguousarray(mask, dtype=np.uint8)
    if mask.ndim != 2:
        raise ValueError(f"mask must be 2D, got shape {mask.shape}")

    height, width = mask.shape
    if height == 0 or width == 0:
        return []
    min_area = width * height * min_area_ratio

    boxes = []
    for min_x, min_y, max_x, max_y in label_components(mask, C.FOREGROUND_MIN):
        box = BoundingBox(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1)
        if box.area >= min_area:
            boxes.append(box)

    # sorted() is stable, ties stay in discovery order
    return sorted(boxes, key=lambda b: b.area, reverse=True)
