#!/usr/bin/env python
# (c) 2024 Niels Provos
#
# Uses a segmentation model to cut an image into one slice per object.
# The slices can be imported back into the canvas as separate layers.
#

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from . import constants as C
from .extract import BoundingBox, extract_bounding_boxes
from .instance import CachedSegmenter, ModelConfig
from .mask import normalize_mask
from .slice import ImageSlice
from .utils import load_image, timeit

logger = logging.getLogger(__name__)


def downscale_for_inference(image, max_dimension=C.MAX_INFERENCE_DIMENSION):
    """
    Shrinks an image so that neither side exceeds max_dimension.

    Args:
        image (PIL.Image.Image or numpy.ndarray): The input image.
        max_dimension (int, optional): The largest allowed side. Defaults to 1024.

    Returns:
        tuple: (PIL.Image.Image, float) the possibly resized image and the scale
        factor that was applied. Images that already fit are returned as is
        with a scale of 1.0.
    """
    if isinstance(image, np.ndarray):
        image = Image.fromarray(image)

    width, height = image.size
    if width <= max_dimension and height <= max_dimension:
        return image, 1.0

    scale = min(max_dimension / width, max_dimension / height)
    new_width = max(1, min(max_dimension, int(round(width * scale))))
    new_height = max(1, min(max_dimension, int(round(height * scale))))

    resized = cv2.resize(
        np.array(image), (new_width, new_height), interpolation=cv2.INTER_AREA
    )
    return Image.fromarray(resized), scale


def apply_mask_alpha(image, mask):
    """
    Combines the RGB of an image with an alpha channel taken from a mask.

    Args:
        image (numpy.ndarray): (h, w, 3) or (h, w, 4) image data.
        mask (numpy.ndarray): (h, w) mask data in the 0..255 range.

    Returns:
        numpy.ndarray: (h, w, 4) uint8 RGBA, alpha 255 where the mask is on.
    """
    rgba = np.zeros((image.shape[0], image.shape[1], 4), dtype=np.uint8)
    rgba[:, :, :3] = image[:, :, :3]
    rgba[:, :, 3] = np.where(mask > 0.5 * 255, 255, 0).astype(np.uint8)
    return rgba


def create_slice_from_box(image, mask, box, slice_id, padding=C.SLICE_PADDING):
    """
    Cuts a padded rectangle around one object out of the image.

    Args:
        image (PIL.Image.Image or numpy.ndarray): The segmented image.
        mask (numpy.ndarray): The canonical mask of the same size.
        box (BoundingBox): The object's bounding box.
        slice_id (int): The id of the resulting slice.
        padding (int, optional): Pixels added on every side before clamping
            to the image bounds. Defaults to 5.

    Returns:
        ImageSlice: The RGBA cut-out; transparent where the mask is off.
    """
    if isinstance(image, Image.Image):
        image = np.array(image.convert("RGB"))

    image_height, image_width = mask.shape[:2]
    x = max(0, box.x - padding)
    y = max(0, box.y - padding)
    width = min(image_width - x, box.width + 2 * padding)
    height = min(image_height - y, box.height + 2 * padding)

    cropped_image = image[y : y + height, x : x + width]
    cropped_mask = mask[y : y + height, x : x + width]
    return ImageSlice(slice_id, image=apply_mask_alpha(cropped_image, cropped_mask))


@timeit
def generate_image_slices(image, mask, boxes, max_slices=C.MAX_SLICES):
    """Generate image slices for the largest boxes, including an alpha channel.

    Args:
        image (PIL.Image.Image or numpy.ndarray): The segmented image.
        mask (numpy.ndarray): The canonical mask of the same size.
        boxes (List[BoundingBox]): Boxes sorted by descending area.
        max_slices (int, optional): The number of boxes to use. Defaults to 20.

    Returns:
        List[ImageSlice]: Slices with ids 0..n-1 in box order. Without boxes a
        single full-frame slice with id 0 is returned.
    """
    if isinstance(image, Image.Image):
        image = np.array(image.convert("RGB"))

    if not boxes:
        logger.info("No objects found, using the whole image")
        return [ImageSlice(0, image=apply_mask_alpha(image, mask))]

    slices = []
    for i, box in enumerate(boxes[:max_slices]):
        slices.append(create_slice_from_box(image, mask, box, i))
    return slices


def grid_split(image, grid_size=C.GRID_SIZE):
    """
    Cuts the centered square of an image into a regular grid.

    Args:
        image (PIL.Image.Image or numpy.ndarray): The input image.
        grid_size (int, optional): Cells per row and column. Defaults to 3.

    Returns:
        List[ImageSlice]: Opaque slices with id row * grid_size + col. The last
        row and column absorb the remainder when the side does not divide.
    """
    if isinstance(image, np.ndarray):
        image = Image.fromarray(image)
    image = image.convert("RGBA")

    width, height = image.size
    side = min(width, height)
    left = (width - side) // 2
    top = (height - side) // 2
    cell = side // grid_size

    slices = []
    for row in range(grid_size):
        for col in range(grid_size):
            x = left + col * cell
            y = top + row * cell
            cell_width = side - col * cell if col == grid_size - 1 else cell
            cell_height = side - row * cell if row == grid_size - 1 else cell
            crop = image.crop((x, y, x + cell_width, y + cell_height))
            slices.append(ImageSlice(row * grid_size + col, image=crop))
    return slices


class SmartExtractParams:
    """Tuning knobs of the contour based extraction."""

    __slots__ = (
        "min_area_ratio",
        "morph_kernel_size",
        "min_aspect_ratio",
        "max_aspect_ratio",
        "use_detailed_contours",
        "max_size",
        "dilate_iter",
        "use_canny_edge",
        "canny_low",
        "canny_high",
    )

    def __init__(
        self,
        min_area_ratio=C.DEFAULT_MIN_AREA_RATIO,
        morph_kernel_size=C.SMART_MORPH_KERNEL_SIZE,
        min_aspect_ratio=C.SMART_MIN_ASPECT_RATIO,
        max_aspect_ratio=C.SMART_MAX_ASPECT_RATIO,
        use_detailed_contours=False,
        max_size=C.SMART_MAX_SIZE,
        dilate_iter=C.SMART_DILATE_ITER,
        use_canny_edge=False,
        canny_low=C.SMART_CANNY_LOW,
        canny_high=C.SMART_CANNY_HIGH,
    ):
        self.min_area_ratio = min_area_ratio
        self.morph_kernel_size = morph_kernel_size
        self.min_aspect_ratio = min_aspect_ratio
        self.max_aspect_ratio = max_aspect_ratio
        self.use_detailed_contours = use_detailed_contours
        self.max_size = max_size
        self.dilate_iter = dilate_iter
        self.use_canny_edge = use_canny_edge
        self.canny_low = canny_low
        self.canny_high = canny_high


def _binarize_edges(rgba, params):
    gray = cv2.cvtColor(rgba, cv2.COLOR_RGBA2GRAY)
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)
    edges = cv2.Canny(blurred, params.canny_low, params.canny_high)

    iterations = max(0, min(5, int(params.dilate_iter)))
    if iterations > 0:
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        edges = cv2.dilate(edges, kernel, iterations=iterations)

    _, binary = cv2.threshold(edges, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
    return binary


def _binarize_alpha(rgba, params):
    # the kernel needs a center pixel
    kernel_size = int(params.morph_kernel_size)
    if kernel_size % 2 == 0:
        kernel_size += 1
    kernel_size = max(3, kernel_size)
    kernel = np.ones((kernel_size, kernel_size), np.uint8)

    alpha = np.ascontiguousarray(rgba[:, :, 3])
    alpha = cv2.dilate(alpha, kernel, iterations=1)
    alpha = cv2.morphologyEx(alpha, cv2.MORPH_CLOSE, kernel)
    _, binary = cv2.threshold(alpha, 127, 255, cv2.THRESH_BINARY)
    return binary


@timeit
def find_object_rects(rgba, params=None):
    """
    Finds object rectangles in an RGBA image with a transparent background.

    The work happens on a copy no larger than params.max_size; the rectangles
    are mapped back to the full resolution.

    Args:
        rgba (numpy.ndarray): (h, w, 4) uint8 image data.
        params (SmartExtractParams, optional): The tuning knobs.

    Returns:
        List[BoundingBox]: Boxes in full resolution coordinates, ordered by
        descending contour area.
    """
    if params is None:
        params = SmartExtractParams()

    height, width = rgba.shape[:2]
    scale = 1.0
    work = rgba
    if params.max_size > 0 and max(width, height) > params.max_size:
        scale = params.max_size / max(width, height)
        new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
        work = cv2.resize(rgba, new_size, interpolation=cv2.INTER_AREA)
        logger.debug(f"Contour search at {new_size}, scale {scale:.4f}")

    if params.use_canny_edge:
        binary = _binarize_edges(work, params)
    else:
        binary = _binarize_alpha(work, params)

    method = cv2.CHAIN_APPROX_NONE if params.use_detailed_contours else cv2.CHAIN_APPROX_SIMPLE
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, method)

    min_area = work.shape[0] * work.shape[1] * params.min_area_ratio
    found = []
    for contour in contours:
        area = cv2.contourArea(contour)
        if area <= min_area:
            continue
        x, y, w, h = cv2.boundingRect(contour)
        aspect = w / h
        if aspect < params.min_aspect_ratio or aspect > params.max_aspect_ratio:
            continue

        x = max(0, min(int(round(x / scale)), width - 1))
        y = max(0, min(int(round(y / scale)), height - 1))
        w = min(int(round(w / scale)), width - x)
        h = min(int(round(h / scale)), height - y)
        if w > 0 and h > 0:
            found.append((area, BoundingBox(x, y, w, h)))

    found.sort(key=lambda item: item[0], reverse=True)
    return [box for _, box in found]


def smart_extract(image, params=None, max_slices=C.MAX_SLICES, padding=C.SLICE_PADDING):
    """
    Cuts objects out of an image whose background is already transparent.

    Args:
        image: Anything load_image() accepts. Images without an alpha channel
            are treated as fully opaque.
        params (SmartExtractParams, optional): The tuning knobs.
        max_slices (int, optional): The number of rectangles to use. Defaults to 20.
        padding (int, optional): Pixels added around every rectangle. Defaults to 5.

    Returns:
        List[ImageSlice]: Full resolution RGBA crops, largest object first. Without
        any object a single full-frame slice with id 0 is returned.
    """
    rgba = np.array(load_image(image, mode="RGBA"))
    image_height, image_width = rgba.shape[:2]

    slices = []
    for i, box in enumerate(find_object_rects(rgba, params)[:max_slices]):
        x = max(0, box.x - padding)
        y = max(0, box.y - padding)
        width = min(image_width - x, box.width + 2 * padding)
        height = min(image_height - y, box.height + 2 * padding)
        slices.append(ImageSlice(i, image=rgba[y : y + height, x : x + width].copy()))

    if not slices:
        logger.info("No contours found, using the whole image")
        slices.append(ImageSlice(0, image=rgba))
    return slices


def _segment(image, segment, report, max_dimension):
    """Shared front half of the automatic paths: returns (image, mask, native image)."""
    if segment is None:
        raise ValueError("a segment callable is required")

    report(C.STAGE_LOAD_IMAGE)
    native = load_image(image, mode="RGB")

    report(C.STAGE_DOWNSCALE)
    image, scale = downscale_for_inference(native, max_dimension=max_dimension)
    if scale != 1.0:
        logger.info(f"Downscaled image by {scale:.4f} to {image.size}")

    report(C.STAGE_LOAD_MODEL)
    prepare = getattr(segment, "prepare", None)
    if prepare is not None:
        prepare()

    report(C.STAGE_INFERENCE)
    mask_like = segment(image)

    report(C.STAGE_NORMALIZE)
    mask = normalize_mask(mask_like, image.width, image.height)
    return image, mask, native


def _reporter(progress):
    def report(stage):
        if progress is not None:
            progress(stage, C.STAGE_PROGRESS[stage])

    return report


def remove_background(
    image, segment=None, progress=None, max_dimension=C.MAX_INFERENCE_DIMENSION
):
    """
    Makes the background of an image transparent.

    Segmentation runs on the downscaled image; the mask is scaled back up so
    the result keeps the full resolution.

    Args:
        image: Anything load_image() accepts.
        segment (callable): segment(PIL.Image.Image) -> mask-like.
        progress (callable, optional): progress(stage_label, fraction).
        max_dimension (int, optional): Inference size limit. Defaults to 1024.

    Returns:
        PIL.Image.Image: RGBA at the input's size.

    Raises:
        FormatUnrecognized: If the segmentation output cannot be interpreted.
    """
    report = _reporter(progress)
    _, mask, native = _segment(image, segment, report, max_dimension)

    report(C.STAGE_COMPOSITE)
    if mask.shape[:2] != (native.height, native.width):
        mask = cv2.resize(
            mask, (native.width, native.height), interpolation=cv2.INTER_NEAREST
        )
    rgba = apply_mask_alpha(np.array(native), mask)

    report(C.STAGE_DONE)
    return Image.fromarray(rgba)


def extract_slices(
    image,
    min_area_ratio=C.DEFAULT_MIN_AREA_RATIO,
    segment=None,
    progress=None,
    max_dimension=C.MAX_INFERENCE_DIMENSION,
):
    """
    Runs the automatic slicing path from image reference to slices.

    Args:
        image: Anything load_image() accepts.
        min_area_ratio (float, optional): Smallest object box as a fraction of
            the image area. Defaults to 0.001.
        segment (callable): segment(PIL.Image.Image) -> mask-like. If it has a
            prepare() method, it is called first to load the model.
        progress (callable, optional): progress(stage_label, fraction).
        max_dimension (int, optional): Inference size limit. Defaults to 1024.

    Returns:
        List[ImageSlice]: At least one slice, at the downscaled resolution.

    Raises:
        FormatUnrecognized: If the segmentation output cannot be interpreted.
    """
    report = _reporter(progress)
    image, mask, _ = _segment(image, segment, report, max_dimension)

    report(C.STAGE_EXTRACT)
    boxes = extract_bounding_boxes(mask, min_area_ratio=min_area_ratio)

    report(C.STAGE_COMPOSITE)
    slices = generate_image_slices(image, mask, boxes)

    report(C.STAGE_DONE)
    return slices


def save_slices(slices, output_path):
    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)
    for image_slice in slices:
        output_image_path = output_path / f"slice_{image_slice.id}.png"
        print(f"Saving image slice: {output_image_path}")
        image_slice.save_image(output_image_path)


def process_image(
    image_path,
    output_path,
    min_area_ratio=C.DEFAULT_MIN_AREA_RATIO,
    mode=C.MODE_SEGMENT,
    model_id=C.DEFAULT_SEGMENTATION_MODEL,
    use_quantized=True,
    max_dimension=C.MAX_INFERENCE_DIMENSION,
    use_canny_edge=False,
    segment=None,
):
    """
    Slice the input image and save every slice as a PNG.

    Args:
        image_path (str): The path to the input image file.
        output_path (str): The directory the slices are saved to.
        min_area_ratio (float, optional): Smallest object box as a fraction of the image area.
        mode (str, optional): One of "segment", "grid", "smart" or
            "remove-background". Defaults to "segment".
        model_id (str, optional): The Hugging Face id of the segmentation model.
        use_quantized (bool, optional): Try loading the model in half precision first.
        max_dimension (int, optional): The inference size limit.
        use_canny_edge (bool, optional): Smart mode finds objects by their edges
            instead of the alpha channel.
        segment (callable, optional): Replaces the cached segmentation model.

    Returns:
        List[ImageSlice]: The saved slices.
    """
    image = load_image(image_path, mode="RGB")
    print("Image size:", image.size)

    def progress(stage, fraction):
        print(f"[{fraction * 100:3.0f}%] {stage}")

    if mode != C.MODE_GRID and segment is None:
        segment = CachedSegmenter(ModelConfig(model_id, use_quantized=use_quantized))

    if mode == C.MODE_GRID:
        slices = grid_split(image)
    elif mode == C.MODE_SEGMENT:
        slices = extract_slices(
            image,
            min_area_ratio=min_area_ratio,
            segment=segment,
            progress=progress,
            max_dimension=max_dimension,
        )
    elif mode in (C.MODE_SMART, C.MODE_REMOVE_BACKGROUND):
        cutout = remove_background(
            image, segment=segment, progress=progress, max_dimension=max_dimension
        )
        if mode == C.MODE_SMART:
            params = SmartExtractParams(
                min_area_ratio=min_area_ratio, use_canny_edge=use_canny_edge
            )
            slices = smart_extract(cutout, params=params)
        else:
            slices = [ImageSlice(0, image=cutout)]
    else:
        raise ValueError(f"Unknown mode {mode}")

    save_slices(slices, output_path)
    return slices


def main():
    # Parse command line arguments
    parser = argparse.ArgumentParser(
        description="Segment an image into one slice per object."
    )
    parser.add_argument("-i", "--image", type=str, help="Path to the input image")
    parser.add_argument(
        "-o", "--output", type=str, default=".", help="Path to the output directory"
    )
    parser.add_argument(
        "-r",
        "--min-area-ratio",
        type=float,
        default=C.DEFAULT_MIN_AREA_RATIO,
        help="Smallest object box as a fraction of the image area",
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "-g",
        "--grid",
        dest="mode",
        action="store_const",
        const=C.MODE_GRID,
        help="Cut the image into a 3x3 grid instead of segmenting it",
    )
    modes.add_argument(
        "-s",
        "--smart",
        dest="mode",
        action="store_const",
        const=C.MODE_SMART,
        help="Remove the background, then cut out objects by their contours",
    )
    modes.add_argument(
        "-b",
        "--remove-background",
        dest="mode",
        action="store_const",
        const=C.MODE_REMOVE_BACKGROUND,
        help="Only remove the background and save the full image",
    )
    parser.set_defaults(mode=C.MODE_SEGMENT)
    parser.add_argument(
        "--canny",
        action="store_true",
        help="In smart mode, find objects by their edges instead of the alpha channel",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=C.DEFAULT_SEGMENTATION_MODEL,
        help=f"Segmentation model to use. Default is {C.DEFAULT_SEGMENTATION_MODEL}.",
    )
    parser.add_argument(
        "--full-precision",
        action="store_true",
        help="Load the model in full precision right away",
    )
    parser.add_argument(
        "--max-dimension",
        type=int,
        default=C.MAX_INFERENCE_DIMENSION,
        help="Largest image side passed to the segmentation model",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    # Check if image path is provided
    if args.image:
        process_image(
            args.image,
            args.output,
            min_area_ratio=args.min_area_ratio,
            mode=args.mode,
            model_id=args.model,
            use_quantized=not args.full_precision,
            max_dimension=args.max_dimension,
            use_canny_edge=args.canny,
        )
    else:
        print("Please provide the path to the input image using --image or -i option.")


if __name__ == "__main__":
    main()
