"""EuRoC MAV stereo capture source."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import cv2
import numpy as np

logger = logging.getLogger(__name__)

_CAMERAS = {"cam0": "Left", "cam1": "Right"}


@dataclass(frozen=True)
class StereoSample:
    """One synchronized stereo capture."""

    timestamp_ns: int
    left: np.ndarray
    right: np.ndarray


def _read_timestamps(csv_path: Path) -> list[tuple[int, str]]:
    """Parse a EuRoC ``data.csv`` into (timestamp_ns, filename) rows.

    Lines starting with '#' are comments. Rows are returned sorted by time.
    """
    rows = []
    with open(csv_path, newline="") as f:
        for row in csv.reader(f):
            if not row or row[0].lstrip().startswith("#"):
                continue
            try:
                stamp, filename = (field.strip() for field in row)
                rows.append((int(stamp), filename))
            except ValueError as e:
                raise ValueError(
                    f"Invalid line in {csv_path}: {','.join(row)!r}, "
                    "expected 'timestamp,filename'"
                ) from e
    rows.sort()
    return rows


class DatasetReader:
    """Reader for the stereo cameras of a EuRoC ``mav0`` directory.

    Layout:
        mav0/
            cam0/data.csv         timestamp,filename listing
            cam0/data/*.png       left images
            cam1/data/*.png       right images (same filenames)

    Example:
        >>> reader = DatasetReader("data/euroc/MH_01_easy/mav0", stride=2)
        >>> for sample in reader:
        ...     vo.process_frame(sample.left, sample.right, sample.timestamp_ns)
    """

    def __init__(
        self,
        dataset_path: str | Path,
        stride: int = 1,
        max_frames: int | None = None,
    ) -> None:
        """Initialize reader.

        Args:
            dataset_path: Path to the mav0 directory
            stride: Yield every ``stride``-th stereo pair
            max_frames: Stop after this many pairs. All pairs if None.

        Raises:
            FileNotFoundError: If the dataset path or required entries don't exist
            ValueError: If data.csv is empty or malformed, or stride/max_frames
                are invalid
        """
        if stride < 1:
            raise ValueError(f"stride must be >= 1, got {stride}")
        if max_frames is not None and max_frames < 0:
            raise ValueError(f"max_frames must be >= 0, got {max_frames}")

        self.dataset_path = Path(dataset_path)
        self.stride = stride
        self.max_frames = max_frames
        self._check_layout()

        csv_path = self.dataset_path / "cam0" / "data.csv"
        rows = _read_timestamps(csv_path)
        if not rows:
            raise ValueError(f"No images found in {csv_path}")

        self._entries = rows[::stride][:max_frames]
        logger.info(
            "Loaded %d stereo pairs from %s (stride %d)",
            len(self._entries),
            self.dataset_path,
            stride,
        )

    def _check_layout(self) -> None:
        if not self.dataset_path.exists():
            raise FileNotFoundError(f"Dataset path does not exist: {self.dataset_path}")

        required = [*_CAMERAS, *(f"{cam}/data" for cam in _CAMERAS)]
        for name in required:
            if not (self.dataset_path / name).is_dir():
                raise FileNotFoundError(
                    f"{name} directory not found under {self.dataset_path}"
                )

        if not (self.dataset_path / "cam0" / "data.csv").is_file():
            raise FileNotFoundError(
                f"cam0/data.csv not found under {self.dataset_path}; "
                "it lists the image timestamps and filenames"
            )

    def _read_image(self, camera: str, filename: str) -> np.ndarray:
        path = self.dataset_path / camera / "data" / filename
        side = _CAMERAS[camera]
        if not path.exists():
            raise FileNotFoundError(f"{side} camera image not found: {path}")
        image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
        if image is None:
            raise ValueError(f"Failed to decode {side.lower()} image: {path}")
        return image

    def get_sample(self, index: int) -> StereoSample:
        """Load the ``index``-th stereo pair (after stride and max_frames).

        Raises:
            FileNotFoundError: If either image file doesn't exist
            ValueError: If an image cannot be decoded
        """
        timestamp_ns, filename = self._entries[index]
        return StereoSample(
            timestamp_ns=timestamp_ns,
            left=self._read_image("cam0", filename),
            right=self._read_image("cam1", filename),
        )

    @property
    def timestamps(self) -> list[int]:
        return [stamp for stamp, _ in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StereoSample]:
        """Yield stereo pairs in chronological order, one fresh pass per call."""
        for index in range(len(self._entries)):
            yield self.get_sample(index)
