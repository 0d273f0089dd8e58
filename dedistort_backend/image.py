"""
Image model.

Images are values: every operation returns a new ``Image`` and never mutates
the planes of its input. The channel layout is an explicit tag and plane
access dispatches on it. Metadata is a map keyed by the metadata type.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Type, TypeVar

import numpy as np

from dedistort_runner.error_handling import PreconditionError
from dedistort_runner.fits_utils import fits_image_shape, read_fits_float, write_fits_float

M = TypeVar("M")


class ChannelKind(Enum):
    MONO = 1
    RGB = 3

    @property
    def plane_count(self) -> int:
        return self.value


@dataclass(frozen=True)
class SourceInfo:
    filename: str
    parent_dir: str = ""
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class Ellipse:
    """Solar disk fit, semi axes ``a >= b`` in pixels."""
    cx: float
    cy: float
    a: float
    b: float
    rotation: float = 0.0

    def eccentricity(self) -> float:
        major = max(self.a, self.b)
        minor = min(self.a, self.b)
        if major <= 0:
            return 0.0
        return float(np.sqrt(1.0 - (minor * minor) / (major * major)))


@dataclass(frozen=True)
class ConsensusReference:
    """Marks a keyframe: dedistortion runs against the consensus geometry."""
    pass


@dataclass(frozen=True)
class ReferenceWeights:
    """Global stacking weights computed while choosing a reference."""
    weights: Tuple[float, ...]


class Image:
    def __init__(
        self,
        planes: Iterable[np.ndarray],
        channel: Optional[ChannelKind] = None,
        metadata: Optional[Dict[type, Any]] = None
    ):
        planes = tuple(np.asarray(p, dtype=np.float32) for p in planes)
        if channel is None:
            channel = ChannelKind.MONO if len(planes) == 1 else ChannelKind.RGB
        if len(planes) != channel.plane_count:
            raise PreconditionError(
                f"{channel.name} image requires {channel.plane_count} planes, got {len(planes)}"
            )
        shapes = {p.shape for p in planes}
        if len(shapes) != 1 or len(planes[0].shape) != 2:
            raise PreconditionError("image planes must be 2-D and share the same shape")
        self._planes = planes
        self.channel = channel
        self._metadata: Dict[type, Any] = dict(metadata or {})

    @classmethod
    def mono(cls, data: np.ndarray, *metadata: Any) -> "Image":
        return cls([data], ChannelKind.MONO, {type(m): m for m in metadata})

    @classmethod
    def rgb(cls, r: np.ndarray, g: np.ndarray, b: np.ndarray, *metadata: Any) -> "Image":
        return cls([r, g, b], ChannelKind.RGB, {type(m): m for m in metadata})

    @property
    def height(self) -> int:
        return int(self._planes[0].shape[0])

    @property
    def width(self) -> int:
        return int(self._planes[0].shape[1])

    @property
    def shape(self) -> Tuple[int, int]:
        return self._planes[0].shape

    @property
    def is_mono(self) -> bool:
        return self.channel is ChannelKind.MONO

    @property
    def planes(self) -> Tuple[np.ndarray, ...]:
        return self._planes

    @property
    def data(self) -> np.ndarray:
        """The single plane of a mono image."""
        if not self.is_mono:
            raise PreconditionError("mono image required")
        return self._planes[0]

    @property
    def metadata(self) -> Dict[type, Any]:
        return dict(self._metadata)

    def find_metadata(self, kind: Type[M]) -> Optional[M]:
        return self._metadata.get(kind)

    def with_metadata(self, *items: Any) -> "Image":
        metadata = dict(self._metadata)
        for item in items:
            metadata[type(item)] = item
        return Image(self._planes, self.channel, metadata)

    def without_metadata(self, kind: type) -> "Image":
        metadata = dict(self._metadata)
        metadata.pop(kind, None)
        return Image(self._planes, self.channel, metadata)

    def with_data(self, data: np.ndarray) -> "Image":
        """Mono image with new data and the same metadata."""
        return Image([data], ChannelKind.MONO, self._metadata)

    def map_planes(self, func: Callable[[np.ndarray], np.ndarray]) -> "Image":
        return Image([func(p) for p in self._planes], self.channel, self._metadata)

    def copy(self) -> "Image":
        return Image([p.copy() for p in self._planes], self.channel, self._metadata)

    def materialize(self) -> "Image":
        return self

    def __repr__(self) -> str:
        source = self.find_metadata(SourceInfo)
        name = f", {source.filename}" if source else ""
        return f"Image({self.channel.name}, {self.width}x{self.height}{name})"


class FileBackedImage:
    """Frame stored in a FITS file, loaded on ``materialize()``."""

    def __init__(self, path: Path, *metadata: Any):
        self.path = Path(path)
        self._metadata = {type(m): m for m in metadata}
        self._metadata.setdefault(
            SourceInfo, SourceInfo(filename=self.path.name, parent_dir=str(self.path.parent))
        )
        self._shape: Optional[Tuple[int, int]] = None

    @property
    def shape(self) -> Tuple[int, int]:
        if self._shape is None:
            self._shape = fits_image_shape(self.path)
        return self._shape

    @property
    def width(self) -> int:
        return self.shape[1]

    @property
    def height(self) -> int:
        return self.shape[0]

    def find_metadata(self, kind: Type[M]) -> Optional[M]:
        return self._metadata.get(kind)

    def materialize(self) -> Image:
        data, _ = read_fits_float(self.path)
        if data.ndim == 3 and data.shape[0] == 3:
            return Image(list(data), ChannelKind.RGB, self._metadata)
        if data.ndim != 2:
            raise PreconditionError(f"unsupported FITS layout {data.shape} in {self.path}")
        return Image([data], ChannelKind.MONO, self._metadata)


def load_fits_image(path: Path) -> Image:
    return FileBackedImage(path).materialize()


def save_fits_image(image: Image, path: Path, header=None) -> None:
    """Write a mono image as a 2-D and an RGB image as a (3, H, W) primary HDU."""
    if image.is_mono:
        data = image.data
    else:
        data = np.stack(image.planes, axis=0)
    write_fits_float(Path(path), data, header=header)


def materialize(image) -> Image:
    return image.materialize()


def require_mono(images: Iterable[Image]) -> None:
    for image in images:
        if not image.is_mono:
            raise PreconditionError(f"mono image required, got {image.channel.name}")


def require_same_size(images: Iterable[Image]) -> Tuple[int, int]:
    sizes = {(img.width, img.height) for img in images}
    if not sizes:
        raise PreconditionError("at least one image is required")
    if len(sizes) != 1:
        raise PreconditionError(f"images must have the same dimensions, got {sorted(sizes)}")
    return next(iter(sizes))
