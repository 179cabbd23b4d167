# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Geometry and pixel transforms for letterboxed SAM inputs.

Every coordinate handed to or read back from the models lives in one of four
frames:

1. **Original image**: pixel coordinates of the decoded input image.
2. **Model input**: the ``target_size x target_size`` letterboxed square. The
   aspect-preserving resize is pasted at the top-left corner, so the forward
   mapping is a pure scale with no offset.
3. **Embedding grid**: the encoder's spatial output (64x64 for a 1024 input).
4. **Mask grid**: the decoder's raw candidate masks, typically 256x256 but
   some exports upscale to the full model input.

``LetterboxTransform`` is computed once per encoded image and carried with the
embedding. It is the only object that knows how to map a prompt into the model
frame and how much of a mask raster is real image rather than padding.

Pixel-level primitives (decode, resize, crop, paste, PNG encode) are delegated
to Pillow; tensor normalisation uses torch.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
from PIL import Image, UnidentifiedImageError

from samseg.errors import DecodeFailure

RESAMPLE_MODES = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

INPUT_LAYOUTS = ("HWC", "CHW", "NCHW")


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Aspect-preserving resize of an image onto a square model canvas.

    Attributes:
        scale (float): ``target_size / max(orig_width, orig_height)``.
        resized_width (int): Width of the resized image inside the canvas.
        resized_height (int): Height of the resized image inside the canvas.
        target_size (int): Side length of the square model input.
    """

    scale: float
    resized_width: int
    resized_height: int
    target_size: int

    @classmethod
    def from_image_size(
        cls, orig_width: int, orig_height: int, target_size: int
    ) -> "LetterboxTransform":
        """
        Compute the letterbox for an image of the given size.

        Resized sides are rounded to the nearest pixel and clamped into
        ``[1, target_size]`` so extreme aspect ratios never produce an empty
        side.
        """
        if orig_width <= 0 or orig_height <= 0:
            raise ValueError(
                f"Image dimensions must be positive, got {orig_width}x{orig_height}"
            )
        if target_size <= 0:
            raise ValueError(f"target_size must be positive, got {target_size}")

        scale = target_size / max(orig_width, orig_height)
        resized_width = min(max(int(round(orig_width * scale)), 1), target_size)
        resized_height = min(max(int(round(orig_height * scale)), 1), target_size)
        return cls(
            scale=scale,
            resized_width=resized_width,
            resized_height=resized_height,
            target_size=target_size,
        )

    def apply_coords(self, x: float, y: float) -> Tuple[float, float]:
        """Map a point from original-image pixels into the model input frame."""
        return x * self.scale, y * self.scale

    def valid_mask_size(self, mask_width: int, mask_height: int) -> Tuple[int, int]:
        """
        Size of the non-padding region of a mask raster of the given resolution.

        The padding is removed proportionally, so the same transform works
        whether the decoder produced a quarter-resolution or full-resolution mask.

        Returns:
            Tuple[int, int]: ``(valid_width, valid_height)``, each clamped to
            ``[1, mask side]``.
        """
        valid_width = int(round(mask_width * self.resized_width / self.target_size))
        valid_height = int(round(mask_height * self.resized_height / self.target_size))
        valid_width = min(max(valid_width, 1), mask_width)
        valid_height = min(max(valid_height, 1), mask_height)
        return valid_width, valid_height

    @property
    def is_identity(self) -> bool:
        return (
            self.resized_width == self.target_size
            and self.resized_height == self.target_size
        )


def decode_image(image_bytes: bytes) -> Image.Image:
    """
    Decode raw bytes of any Pillow-supported format into an RGB image.

    16-bit grayscale images are rescaled to 8 bits before the RGB conversion.

    Raises:
        DecodeFailure: If the bytes are empty, not a readable image, or exceed
            Pillow's decompression-bomb limit.
    """
    if not image_bytes:
        raise DecodeFailure("Image bytes are empty")
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            if image.mode == "I" or image.mode.startswith("I;16"):
                return _rescale_to_8bit(image).convert("RGB")
            # convert() forces the lazy decoder to read every pixel
            return image.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise DecodeFailure(f"Cannot decode image: {exc}") from exc


def _rescale_to_8bit(image: Image.Image) -> Image.Image:
    # Pillow's "L" conversion clips 16-bit samples at 255
    samples = np.asarray(image).astype(np.int64)
    samples = np.clip(samples, 0, 65535) >> 8
    return Image.fromarray(samples.astype(np.uint8))


def as_pil_image(image: Union[np.ndarray, Image.Image]) -> Image.Image:
    """Accept either a PIL image or an HxWxC uint8 RGB array."""
    if isinstance(image, Image.Image):
        return image.convert("RGB")
    if isinstance(image, np.ndarray):
        logging.info("For numpy array image, we assume (HxWxC) format")
        if image.ndim == 2:
            return Image.fromarray(image.astype(np.uint8)).convert("RGB")
        if image.ndim != 3 or image.shape[2] not in (3, 4):
            raise ValueError(f"Expected an HxWxC image array, got shape {image.shape}")
        return Image.fromarray(image.astype(np.uint8)[..., :3])
    raise NotImplementedError("Image format not supported")


def letterbox_image(image: Image.Image, transform: LetterboxTransform) -> Image.Image:
    """
    Resize ``image`` into ``transform``'s size and paste it at the top-left of a
    black square canvas.

    The top-left anchor is part of the decoder contract: point prompts are mapped
    with a pure scale, and mask padding is always on the right and bottom.
    """
    resized = image.resize(
        (transform.resized_width, transform.resized_height),
        Image.Resampling.BICUBIC,
    )
    canvas = Image.new("RGB", (transform.target_size, transform.target_size), (0, 0, 0))
    canvas.paste(resized, (0, 0))
    return canvas


def image_to_tensor(
    canvas: Image.Image,
    pixel_mean: Optional[Sequence[float]] = None,
    pixel_std: Optional[Sequence[float]] = None,
    input_layout: str = "NCHW",
) -> torch.Tensor:
    """
    Normalise an RGB canvas into the float32 tensor layout a model expects.

    Args:
        canvas (PIL.Image): Letterboxed RGB image.
        pixel_mean (Sequence[float], optional): Per-channel mean in 0-255 units.
        pixel_std (Sequence[float], optional): Per-channel std in 0-255 units.
            When mean or std is missing the pixels are scaled to [0, 1] instead.
        input_layout (str): One of ``HWC``, ``CHW`` or ``NCHW``.

    Returns:
        torch.Tensor: Contiguous float32 tensor in the requested layout.
    """
    if input_layout not in INPUT_LAYOUTS:
        raise ValueError(f"Unknown input layout {input_layout!r}, expected one of {INPUT_LAYOUTS}")

    pixels = torch.from_numpy(np.array(canvas.convert("RGB"), dtype=np.float32))
    if pixel_mean is not None and pixel_std is not None:
        mean = torch.tensor(list(pixel_mean), dtype=torch.float32)
        std = torch.tensor(list(pixel_std), dtype=torch.float32)
        pixels = (pixels - mean) / std
    else:
        pixels = pixels / 255.0

    if input_layout == "HWC":
        return pixels.contiguous()
    pixels = pixels.permute(2, 0, 1)
    if input_layout == "NCHW":
        pixels = pixels.unsqueeze(0)
    return pixels.contiguous()


def crop_and_resize_mask(
    opacity: torch.Tensor,
    transform: LetterboxTransform,
    orig_hw: Tuple[int, int],
    resample: str = "bicubic",
) -> Image.Image:
    """
    Strip letterbox padding from a mask raster and restore the original size.

    Args:
        opacity (torch.Tensor): uint8 tensor of shape (H, W) at mask resolution.
        transform (LetterboxTransform): Transform of the embedding the mask came from.
        orig_hw (Tuple[int, int]): Original image (height, width).
        resample (str): Pillow resampling filter name.

    Returns:
        PIL.Image: Single-channel ("L") raster of the original image size.
    """
    mask_h, mask_w = opacity.shape[-2:]
    valid_w, valid_h = transform.valid_mask_size(mask_w, mask_h)

    # Crop first so the padding is removed at the mask's own resolution
    cropped = opacity[:valid_h, :valid_w].contiguous().numpy()
    raster = Image.fromarray(cropped.astype(np.uint8))

    orig_h, orig_w = orig_hw
    return raster.resize((orig_w, orig_h), RESAMPLE_MODES[resample])


def encode_png(raster: Image.Image) -> bytes:
    """Encode a raster losslessly as PNG bytes."""
    buffer = io.BytesIO()
    raster.save(buffer, format="PNG")
    return buffer.getvalue()
