# (c) 2024 Niels Provos
#

# mask normalization
FLOAT_THRESHOLD = 0.5
BYTE_THRESHOLD = 127
FOREGROUND_MIN = 128

# empirical: some models use 255 for the discarded region
POLARITY_SAMPLE_SIZE = 1000
POLARITY_INVERT_MIN = 200

# object extraction
DEFAULT_MIN_AREA_RATIO = 0.001
SLICE_PADDING = 5
MAX_SLICES = 20
GRID_SIZE = 3

# slicing modes of the command line tool
MODE_SEGMENT = "segment"
MODE_GRID = "grid"
MODE_SMART = "smart"
MODE_REMOVE_BACKGROUND = "remove-background"

# contour based extraction on the alpha channel
SMART_MAX_SIZE = 1200
SMART_MORPH_KERNEL_SIZE = 5
SMART_MIN_ASPECT_RATIO = 0.1
SMART_MAX_ASPECT_RATIO = 10.0
SMART_DILATE_ITER = 1
SMART_CANNY_LOW = 50
SMART_CANNY_HIGH = 150

# inference
MAX_INFERENCE_DIMENSION = 1024
DEFAULT_SEGMENTATION_MODEL = "briaai/RMBG-1.4"
SEGMENTATION_TASK = "image-segmentation"

# interactive masks
INPAINT_MASK_COLOR = (255, 255, 255, 255)
INPAINT_PROMPT_COLOR = (255, 0, 0)
INPAINT_PROMPT_ALPHA = 0.5
ERASE_MASK_NAME = "Erase Mask"
ERASE_RESCALE_TOLERANCE = 0.001

HISTORY_ERASE = "erase"
HISTORY_INPAINT = "inpaint"

# progress stages of the automatic path, in order
STAGE_LOAD_IMAGE = "Loading image"
STAGE_DOWNSCALE = "Downscaling image"
STAGE_LOAD_MODEL = "Loading model"
STAGE_INFERENCE = "Running segmentation"
STAGE_NORMALIZE = "Processing segmentation result"
STAGE_EXTRACT = "Extracting objects"
STAGE_COMPOSITE = "Generating slices"
STAGE_DONE = "Done"

STAGE_PROGRESS = {
    STAGE_LOAD_IMAGE: 0.05,
    STAGE_DOWNSCALE: 0.1,
    STAGE_LOAD_MODEL: 0.2,
    STAGE_INFERENCE: 0.5,
    STAGE_NORMALIZE: 0.7,
    STAGE_EXTRACT: 0.8,
    STAGE_COMPOSITE: 0.9,
    STAGE_DONE: 1.0,
}

PROGRESS_QUEUE_SIZE = 16
