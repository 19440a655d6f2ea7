# (c) 2024 Niels Provos
#


class MaskSlicerError(Exception):
    """Base class for errors raised by the masking pipeline."""


class InputUnavailable(MaskSlicerError):
    """The target layer or scene node of an interactive operation is gone."""


class AssetNotReady(InputUnavailable):
    """The decoded raster of the target layer has not been loaded yet."""

    def __init__(self, layer_id=None):
        self.layer_id = layer_id
        super().__init__(f"Asset not ready for layer {layer_id}")


class FormatUnrecognized(MaskSlicerError, ValueError):
    """Segmentation output does not match any known mask shape."""


class ModelLoadFailure(MaskSlicerError, RuntimeError):
    """The segmentation model could not be loaded, even after the fallback."""
