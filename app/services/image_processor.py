import os
import shutil
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError

from app.services.tracker import ProcessingOptions, ProcessingType

logger = logging.getLogger(__name__)

# Per-format encoder defaults
IMAGE_CONFIGS: Dict[str, Dict[str, Any]] = {
    "JPEG": {"quality": 85, "optimize": True, "subsampling": 0},
    "PNG": {"optimize": True, "compress_level": 6},
    "WEBP": {"quality": 85, "method": 4},
}

MIN_OPTIMIZE_SIZE = 50 * 1024
REVERT_THRESHOLD = 0.9


@dataclass
class TransformResult:
    success: bool
    path: str
    processing_type: str
    original_size: Optional[int] = None
    processed_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    error: Optional[str] = None


class ImageTransformer:
    """
    Turns the combined upload into the final artifact.

    The input file is never deleted or modified; whatever happens, a copy of
    it (or an optimized version) ends up at ``output_path``.
    """

    def transform(self, input_path: Path, output_path: Path, options: Optional[ProcessingOptions] = None) -> TransformResult:
        options = options or ProcessingOptions()
        logger.info(f"Processing {input_path} with type: {options.type.value}")

        try:
            original_size = os.path.getsize(input_path)

            if options.type == ProcessingType.PRESERVE:
                return self._copy(input_path, output_path, "preserved", original_size)

            try:
                with Image.open(input_path) as image:
                    image_format = (image.format or "").upper()
                    width, height = image.size
            except UnidentifiedImageError:
                return self._copy(input_path, output_path, "unsupported-format", original_size)

            if image_format not in IMAGE_CONFIGS:
                return self._copy(input_path, output_path, "unsupported-format", original_size)

            if options.type == ProcessingType.AUTO and not self.should_optimize(original_size, image_format, width, height):
                return self._copy(input_path, output_path, "auto-preserved", original_size)

            self._encode(input_path, output_path, image_format, options)
            processed_size = os.path.getsize(output_path)

            if processed_size > original_size * REVERT_THRESHOLD:
                shutil.copyfile(input_path, output_path)
                return TransformResult(
                    success=True,
                    path=str(output_path),
                    processing_type="optimization-reverted",
                    original_size=original_size,
                    processed_size=processed_size,
                )

            return TransformResult(
                success=True,
                path=str(output_path),
                processing_type="optimized",
                original_size=original_size,
                processed_size=processed_size,
                compression_ratio=processed_size / original_size,
            )
        except Exception as e:
            logger.error(f"Error processing image {input_path}: {e}")
            try:
                shutil.copyfile(input_path, output_path)
            except OSError as copy_error:
                logger.error(f"Could not preserve original at {output_path}: {copy_error}")
            return TransformResult(
                success=False,
                path=str(output_path),
                processing_type="error-preserved",
                error=str(e),
            )

    @staticmethod
    def should_optimize(size: int, image_format: str, width: int, height: int) -> bool:
        if size < MIN_OPTIMIZE_SIZE:
            return False
        if image_format not in IMAGE_CONFIGS:
            return False
        # already compact
        if size < width * height * 0.15:
            return False
        return True

    @staticmethod
    def encoder_config(image_format: str, quality: Optional[int] = None) -> Dict[str, Any]:
        config = dict(IMAGE_CONFIGS.get(image_format, IMAGE_CONFIGS["JPEG"]))
        if quality is not None:
            config["quality"] = quality
        return config

    def _encode(self, input_path: Path, output_path: Path, image_format: str, options: ProcessingOptions) -> None:
        config = self.encoder_config(image_format, options.quality)
        with Image.open(input_path) as image:
            if options.metadata and "exif" in image.info:
                config["exif"] = image.info["exif"]
            if image_format == "JPEG" and image.mode not in ("RGB", "L", "CMYK"):
                image = image.convert("RGB")
            image.save(output_path, format=image_format, **config)

    @staticmethod
    def _copy(input_path: Path, output_path: Path, processing_type: str, original_size: int) -> TransformResult:
        shutil.copyfile(input_path, output_path)
        return TransformResult(
            success=True,
            path=str(output_path),
            processing_type=processing_type,
            original_size=original_size,
        )
