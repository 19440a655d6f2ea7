# (c) 2024 Niels Provos
#

import io
import base64
import logging
import time
from functools import wraps
from pathlib import Path

import numpy as np
import torch
from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)


def timeit(func):
    @wraps(func)
    def timeit_wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        result = func(*args, **kwargs)
        end_time = time.perf_counter()
        total_time_ms = (end_time - start_time) * 1000.0
        logger.debug(f"Function {func.__name__} took {total_time_ms:.1f} ms")
        return result

    return timeit_wrapper


def to_image_url(img_data):
    """Converts an image to a data URL."""
    if not isinstance(img_data, Image.Image):
        img_data = Image.fromarray(img_data)
    buffered = io.BytesIO()
    img_data.save(buffered, format="PNG")
    return to_data_url(buffered.getvalue())


def to_data_url(data):
    """Converts binary data to a data URL."""
    url_str = base64.b64encode(data).decode("utf-8")
    return f"data:image/png;base64,{url_str}"


def from_data_url(data_url):
    """Returns the binary payload of a base64 data URL."""
    if not data_url.startswith("data:") or "," not in data_url:
        raise ValueError("Not a base64 data URL")
    return base64.b64decode(data_url.split(",", 1)[1])


def load_image(source, mode="RGB"):
    """
    Decodes an image reference into a PIL image.

    Args:
        source: A file path, a data URL, raw encoded bytes, a PIL image or a
            numpy array.
        mode (str, optional): The mode to convert the image to. Defaults to "RGB".

    Returns:
        PIL.Image.Image: The decoded image.
    """
    if isinstance(source, Image.Image):
        image = source
    elif isinstance(source, np.ndarray):
        image = Image.fromarray(source)
    elif isinstance(source, (bytes, bytearray)):
        image = Image.open(io.BytesIO(source))
    elif isinstance(source, str) and source.startswith("data:"):
        image = Image.open(io.BytesIO(from_data_url(source)))
    elif isinstance(source, (str, Path)):
        image = Image.open(source)
    else:
        raise ValueError(f"Cannot load an image from {type(source).__name__}")

    if mode is not None and image.mode != mode:
        image = image.convert(mode)
    return image


def torch_get_device():
    """
    Returns the appropriate torch device based on the availability of CUDA or MPS.

    Returns:
        torch.device: The torch device (cuda, mps, or cpu) based on availability.
    """
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def draw_circle(image, center, radius, fill_color=(255, 128, 128), outline_color=None):
    """
    Draw a circle on a PIL Image.

    Args:
        image (PIL.Image.Image): The PIL Image object where the circle will be drawn.
        center (tuple): The center coordinates of the circle in the format (x, y).
        radius (float): The radius of the circle.
        fill_color: The color of the circle's interior.
        outline_color: The color of the circle's outline.
    """
    draw = ImageDraw.Draw(image)
    left = center[0] - radius
    top = center[1] - radius
    right = center[0] + radius
    bottom = center[1] + radius
    draw.ellipse([left, top, right, bottom], fill=fill_color, outline=outline_color)


def draw_round_stroke(image, points, width, color):
    """
    Draws a poly-line with round caps and joins.

    PIL lines have flat ends, so a disc of the line width is stamped onto
    every vertex.

    Args:
        image (PIL.Image.Image): The image to draw on.
        points (list): The (x, y) vertices of the stroke.
        width (float): The line width in pixels.
        color: The color of the stroke.
    """
    if len(points) == 0:
        return
    line_width = max(1, int(round(width)))
    if len(points) > 1:
        draw = ImageDraw.Draw(image)
        draw.line([tuple(p) for p in points], fill=color, width=line_width)
    radius = line_width / 2.0
    for point in points:
        draw_circle(image, point, radius, fill_color=color)
