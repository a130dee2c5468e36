"""Image processing utilities: decoding, canvas alignment, perceptual pixel diff."""
import base64
import hashlib
from io import BytesIO
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

from qc_gateway.errors import DecodeFailed
from qc_gateway.settings import settings

# Pixelmatch constants: the max YIQ delta is 35215, and unchanged pixels are
# drawn as greyscale faded towards white by this factor.
MAX_YIQ_DELTA = 35215.0
GREY_ALPHA = 0.1
DIFF_COLOR = (255, 0, 0)

# RGB -> Y, I, Q coefficients and the weight of each plane in the delta
YIQ_PLANES = (
    (0.5053, (0.29889531, 0.58662247, 0.11448223)),
    (0.299, (0.59597799, -0.27417610, -0.32180189)),
    (0.1957, (0.21147017, -0.52261711, 0.31114694)),
)


def compute_content_hash(data: bytes) -> str:
    """Compute SHA256 hash of image data (used as a relay ETag)."""
    return hashlib.sha256(data).hexdigest()


def open_image_from_bytes(data: bytes, max_pixels: Optional[int] = None) -> Image.Image:
    """
    Open and fully decode a PIL Image from bytes.

    Args:
        data: Image bytes
        max_pixels: Reject images with more pixels than this, before decoding

    Returns:
        PIL Image object, EXIF orientation applied

    Raises:
        ValueError: If image cannot be decoded or is too large
    """
    try:
        image = Image.open(BytesIO(data))
    except Exception as e:
        raise ValueError(f"Invalid image data: {str(e)}")
    width, height = image.size
    if max_pixels is not None and width * height > max_pixels:
        raise ValueError(f"Image is {width}x{height}, larger than {max_pixels} pixels")
    try:
        image.load()
    except Exception as e:
        raise ValueError(f"Invalid image data: {str(e)}")
    return ImageOps.exif_transpose(image)


def decode_rgba(data: bytes, side: str = None, max_pixels: Optional[int] = None) -> np.ndarray:
    """
    Decode image bytes into an (height, width, 4) uint8 array.

    Raises:
        DecodeFailed: Corrupt, unsupported or oversized image
    """
    if max_pixels is None:
        max_pixels = settings.MAX_DIFF_PIXELS
    try:
        image = open_image_from_bytes(data, max_pixels=max_pixels)
    except ValueError as e:
        raise DecodeFailed(str(e), side=side)
    return np.asarray(image.convert("RGBA"), dtype=np.uint8)


def align_to_canvas(a: np.ndarray, b: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Place both images at the origin of a canvas sized to the larger of each dimension.

    Images that already fill the canvas are returned as is, not copied.

    Returns:
        Tuple of (canvas_a, canvas_b, covered_a, covered_b); the covered masks
        are True where the image has real pixels.
    """
    height = max(a.shape[0], b.shape[0])
    width = max(a.shape[1], b.shape[1])
    canvases = []
    masks = []
    for img in (a, b):
        covered = np.zeros((height, width), dtype=bool)
        covered[:img.shape[0], :img.shape[1]] = True
        if img.shape[:2] == (height, width):
            canvas = img
        else:
            canvas = np.zeros((height, width, 4), dtype=img.dtype)
            canvas[:img.shape[0], :img.shape[1]] = img
        canvases.append(canvas)
        masks.append(covered)
    return canvases[0], canvases[1], masks[0], masks[1]


def _alpha(rgba: np.ndarray) -> np.ndarray:
    return rgba[..., 3].astype(np.float32) / 255.0


def _plane(rgba: np.ndarray, alpha: np.ndarray, coefficients) -> np.ndarray:
    """One YIQ plane of an RGBA image blended over white, in float32."""
    out = np.zeros(rgba.shape[:2], dtype=np.float32)
    for channel, k in enumerate(coefficients):
        blended = rgba[..., channel].astype(np.float32)
        blended -= 255.0
        blended *= alpha
        blended += 255.0
        blended *= k
        out += blended
    return out


def color_delta(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Squared YIQ distance per pixel between two RGBA arrays, blended over white."""
    alpha_a, alpha_b = _alpha(a), _alpha(b)
    delta = np.zeros(a.shape[:2], dtype=np.float32)
    for weight, coefficients in YIQ_PLANES:
        d = _plane(a, alpha_a, coefficients)
        d -= _plane(b, alpha_b, coefficients)
        d *= d
        d *= weight
        delta += d
    return delta


def diff_mask(a: np.ndarray, b: np.ndarray, threshold: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Classify every canvas pixel as differing or not.

    Args:
        a: Decoded image A
        b: Decoded image B
        threshold: Sensitivity on a 0-1 scale; 0 flags any change to any
            channel, alpha included

    Returns:
        Tuple of (mask, background, covered). mask is True for differing
        pixels; pixels outside either image always differ. background is
        image A, or B where A has no pixels; covered is True where either
        image has pixels.
    """
    canvas_a, canvas_b, covered_a, covered_b = align_to_canvas(a, b)
    changed = np.any(canvas_a != canvas_b, axis=-1)
    if threshold > 0:
        changed &= color_delta(canvas_a, canvas_b) > MAX_YIQ_DELTA * threshold * threshold
    mask = changed
    mask |= ~(covered_a & covered_b)
    background = np.where(covered_a[..., None], canvas_a, canvas_b)
    return mask, background, covered_a | covered_b


def render_visualization(mask: np.ndarray, background: np.ndarray, covered: np.ndarray) -> Image.Image:
    """Differing pixels in red over a faded greyscale of the source."""
    alpha = _alpha(background)
    y = _plane(background, alpha, YIQ_PLANES[0][1])
    alpha *= GREY_ALPHA
    y -= 255.0
    y *= alpha
    y += 255.0
    y[~covered] = 255.0
    grey = np.clip(y, 0, 255).astype(np.uint8)
    out = np.repeat(grey[..., None], 3, axis=-1)
    out[mask] = DIFF_COLOR
    return Image.fromarray(out)


def encode_png(image: Image.Image) -> bytes:
    output = BytesIO()
    image.save(output, format="PNG", optimize=True)
    return output.getvalue()


def to_data_uri(data: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def compare_images(data_a: bytes, data_b: bytes, threshold: float) -> Tuple[float, int, Image.Image]:
    """
    Perceptual pixel comparison of two encoded images.

    Returns:
        Tuple of (score, diff_pixels, visualization). Score is the percentage
        of canvas pixels classified as differing.

    Raises:
        DecodeFailed: Either image could not be decoded
    """
    a = decode_rgba(data_a, side="imageA")
    b = decode_rgba(data_b, side="imageB")
    mask, background, covered = diff_mask(a, b, threshold)
    del a, b
    diff_pixels = int(mask.sum())
    total = mask.size
    score = 100.0 * diff_pixels / total if total else 0.0
    return score, diff_pixels, render_visualization(mask, background, covered)
