# (c) 2024 Niels Provos
#
"""
Provides foreground segmentation using pre-trained models from the Hugging Face hub.

The default model is RMBG-1.4: https://huggingface.co/briaai/RMBG-1.4
Any model that works with the transformers "image-segmentation" pipeline can
be configured instead.

Loading a model is slow, so a process-wide cache keeps the loaded model
around and makes sure it is only loaded once even when several threads ask
for it at the same time.
"""

import logging
import threading
from pathlib import Path

import numpy as np
import torch
from PIL import Image
from transformers import pipeline

from . import constants as C
from .errors import ModelLoadFailure
from .utils import timeit, torch_get_device

logger = logging.getLogger(__name__)


class ModelConfig:
    __slots__ = ("model_id", "model_dir", "use_quantized")

    def __init__(self, model_id=C.DEFAULT_SEGMENTATION_MODEL, model_dir=None, use_quantized=True):
        self.model_id = model_id
        self.model_dir = model_dir
        self.use_quantized = use_quantized

    @property
    def model_path(self):
        """Where transformers loads the model from: a local copy or the hub id."""
        if self.model_dir is None:
            return self.model_id
        return str(Path(self.model_dir) / self.model_id)

    def __eq__(self, other):
        if not isinstance(other, ModelConfig):
            return False
        return (
            self.model_id == other.model_id
            and self.model_dir == other.model_dir
            and self.use_quantized == other.use_quantized
        )

    def __hash__(self):
        return hash((self.model_id, self.model_dir, self.use_quantized))

    def __repr__(self):
        return f"ModelConfig({self.model_id!r}, quantized={self.use_quantized})"

    def to_json(self):
        return {
            "model_id": self.model_id,
            "model_dir": self.model_dir,
            "use_quantized": self.use_quantized,
        }

    @staticmethod
    def from_json(json_data):
        if json_data is None:
            return ModelConfig()
        return ModelConfig(
            model_id=json_data.get("model_id", C.DEFAULT_SEGMENTATION_MODEL),
            model_dir=json_data.get("model_dir"),
            use_quantized=json_data.get("use_quantized", True),
        )


class SegmentationModel:
    def __init__(self, config=None):
        self.config = config if config is not None else ModelConfig()
        self.pipeline = None
        self.dtype = None

    def __eq__(self, other):
        if not isinstance(other, SegmentationModel):
            return False
        return self.config == other.config

    @property
    def is_loaded(self):
        return self.pipeline is not None

    def _create_pipeline(self, dtype):
        return pipeline(
            C.SEGMENTATION_TASK,
            model=self.config.model_path,
            trust_remote_code=True,
            torch_dtype=dtype,
            device=torch_get_device(),
        )

    @timeit
    def load_model(self):
        """
        Loads the segmentation pipeline.

        Half precision is tried first when the config asks for a quantized
        model. A failure there falls back to full precision exactly once.

        Returns:
            The transformers pipeline.

        Raises:
            ModelLoadFailure: If no precision could be loaded.
        """
        if self.config.use_quantized:
            dtypes = [torch.float16, torch.float32]
        else:
            dtypes = [torch.float32]

        last_error = None
        for dtype in dtypes:
            try:
                self.pipeline = self._create_pipeline(dtype)
                self.dtype = dtype
                logger.info(f"Loaded {self.config.model_id} as {dtype}")
                return self.pipeline
            except Exception as e:
                last_error = e
                logger.warning(f"Loading {self.config.model_id} as {dtype} failed: {e}")

        raise ModelLoadFailure(
            f"Could not load segmentation model {self.config.model_id}: {last_error}"
        ) from last_error

    @timeit
    def segment(self, image):
        """
        Runs the model on an image.

        Args:
            image (PIL.Image.Image or numpy.ndarray): The image to segment.

        Returns:
            The raw pipeline output, to be interpreted by normalize_mask().
        """
        if self.pipeline is None:
            self.load_model()
        if isinstance(image, np.ndarray):
            image = Image.fromarray(image)
        return self.pipeline(image.convert("RGB"))


class SegmentationModelCache:
    """
    Lazily loaded, memoized segmentation model shared by the whole process.

    A thread that asks for the model while another thread loads it waits for
    that load to finish instead of loading a second copy.
    """

    _instance = None
    _instance_lock = threading.Lock()

    def __init__(self, model_factory=SegmentationModel):
        self._model_factory = model_factory
        self._condition = threading.Condition()
        self._loading = False
        self._model = None
        self._config = None

    @classmethod
    def instance(cls):
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    @classmethod
    def reset_instance(cls):
        with cls._instance_lock:
            cls._instance = None

    @property
    def is_loading(self):
        with self._condition:
            return self._loading

    @property
    def config(self):
        return self._config

    def get(self, config):
        """
        Returns the model for a config, loading it if needed.

        A different config than the cached one replaces the cached model.

        Raises:
            ModelLoadFailure: If loading fails. Later calls may retry.
        """
        with self._condition:
            while self._loading:
                self._condition.wait()
            if self._model is not None and self._config == config:
                return self._model
            self._loading = True
            self._model = None
            self._config = None

        loaded = None
        try:
            model = self._model_factory(config)
            model.load_model()
            loaded = model
        finally:
            with self._condition:
                if loaded is not None:
                    self._model = loaded
                    self._config = config
                self._loading = False
                self._condition.notify_all()
        return loaded

    def invalidate(self):
        with self._condition:
            while self._loading:
                self._condition.wait()
            self._model = None
            self._config = None


class CachedSegmenter:
    """The segment(image) callable backed by the shared model cache."""

    def __init__(self, config=None, cache=None):
        self.config = config if config is not None else ModelConfig()
        self.cache = cache
        self._model = None

    def prepare(self):
        cache = self.cache if self.cache is not None else SegmentationModelCache.instance()
        self._model = cache.get(self.config)
        return self._model

    def __call__(self, image):
        model = self._model if self._model is not None else self.prepare()
        return model.segment(image)
