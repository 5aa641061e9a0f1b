"""Tests for DatasetReader class."""

from pathlib import Path

import cv2
import numpy as np
import pytest

from stereo_vo.dataset_reader import DatasetReader, StereoSample

TIMESTAMPS = [
    1403636579763555584,
    1403636579813555456,
    1403636579863555328,
    1403636579913555456,
]


@pytest.fixture
def mock_dataset(tmp_path: Path) -> Path:
    """Create a mock EuRoC mav0 directory with four stereo pairs.

    Left image i is filled with i * 50, right image i with i * 50 + 25.
    """
    mav0 = tmp_path / "mav0"
    cam0_data = mav0 / "cam0" / "data"
    cam1_data = mav0 / "cam1" / "data"
    cam0_data.mkdir(parents=True)
    cam1_data.mkdir(parents=True)

    for i, timestamp in enumerate(TIMESTAMPS):
        filename = f"{timestamp}.png"
        cv2.imwrite(
            str(cam0_data / filename), np.full((100, 100), i * 50, dtype=np.uint8)
        )
        cv2.imwrite(
            str(cam1_data / filename),
            np.full((100, 100), i * 50 + 25, dtype=np.uint8),
        )

    csv_content = "#timestamp [ns],filename\n"
    for timestamp in TIMESTAMPS:
        csv_content += f"{timestamp},{timestamp}.png\n"
    (mav0 / "cam0" / "data.csv").write_text(csv_content)

    return mav0


class TestDatasetReader:
    """Test suite for DatasetReader class."""

    def test_initialization(self, mock_dataset: Path):
        """Test that DatasetReader initializes correctly."""
        reader = DatasetReader(mock_dataset)

        assert reader.dataset_path == mock_dataset
        assert len(reader) == 4
        assert reader.timestamps == TIMESTAMPS

    def test_initialization_missing_dataset_path(self, tmp_path: Path):
        """Test that initialization fails with missing dataset path."""
        with pytest.raises(FileNotFoundError, match="Dataset path does not exist"):
            DatasetReader(tmp_path / "nonexistent")

    def test_initialization_missing_cam0(self, tmp_path: Path):
        """Test that initialization fails when cam0 directory is missing."""
        mav0 = tmp_path / "mav0"
        mav0.mkdir()

        with pytest.raises(FileNotFoundError, match="cam0 directory not found"):
            DatasetReader(mav0)

    def test_initialization_missing_cam1(self, tmp_path: Path):
        """Test that initialization fails when cam1 directory is missing."""
        mav0 = tmp_path / "mav0"
        (mav0 / "cam0").mkdir(parents=True)

        with pytest.raises(FileNotFoundError, match="cam1 directory not found"):
            DatasetReader(mav0)

    def test_initialization_missing_data_csv(self, tmp_path: Path):
        """Test that initialization fails when data.csv is missing."""
        mav0 = tmp_path / "mav0"
        (mav0 / "cam0" / "data").mkdir(parents=True)
        (mav0 / "cam1" / "data").mkdir(parents=True)

        with pytest.raises(FileNotFoundError, match="cam0/data.csv not found"):
            DatasetReader(mav0)

    def test_initialization_empty_csv(self, tmp_path: Path):
        """Test that initialization fails with a header-only data.csv."""
        mav0 = tmp_path / "mav0"
        (mav0 / "cam0" / "data").mkdir(parents=True)
        (mav0 / "cam1" / "data").mkdir(parents=True)
        (mav0 / "cam0" / "data.csv").write_text("#timestamp [ns],filename\n")

        with pytest.raises(ValueError, match="No images found"):
            DatasetReader(mav0)

    def test_malformed_csv_line(self, mock_dataset: Path):
        """Test that a malformed line raises a descriptive ValueError."""
        (mock_dataset / "cam0" / "data.csv").write_text("not-a-timestamp\n")

        with pytest.raises(ValueError, match="Invalid line"):
            DatasetReader(mock_dataset)

    @pytest.mark.parametrize("stride", [0, -1])
    def test_invalid_stride(self, mock_dataset: Path, stride: int):
        """Test that non-positive strides are rejected."""
        with pytest.raises(ValueError, match="stride"):
            DatasetReader(mock_dataset, stride=stride)

    def test_iteration_yields_samples(self, mock_dataset: Path):
        """Test that iteration yields synchronized StereoSamples in order."""
        reader = DatasetReader(mock_dataset)

        samples = list(reader)

        assert [s.timestamp_ns for s in samples] == TIMESTAMPS
        for i, sample in enumerate(samples):
            assert isinstance(sample, StereoSample)
            assert sample.left.shape == (100, 100)
            assert sample.left.dtype == np.uint8
            assert np.all(sample.left == i * 50)
            assert np.all(sample.right == i * 50 + 25)

    def test_multiple_iterations(self, mock_dataset: Path):
        """Test that the reader can be iterated more than once."""
        reader = DatasetReader(mock_dataset)

        assert sum(1 for _ in reader) == 4
        assert sum(1 for _ in reader) == 4

    def test_stride(self, mock_dataset: Path):
        """Test that stride keeps every n-th pair, starting with the first."""
        reader = DatasetReader(mock_dataset, stride=2)

        assert len(reader) == 2
        assert [s.timestamp_ns for s in reader] == [TIMESTAMPS[0], TIMESTAMPS[2]]

    def test_max_frames(self, mock_dataset: Path):
        """Test that max_frames truncates after striding."""
        reader = DatasetReader(mock_dataset, stride=1, max_frames=3)
        assert len(reader) == 3

        reader = DatasetReader(mock_dataset, stride=3, max_frames=5)
        assert [s.timestamp_ns for s in reader] == [TIMESTAMPS[0], TIMESTAMPS[3]]

    def test_unsorted_csv_is_ordered(self, mock_dataset: Path):
        """Test that samples come out in timestamp order."""
        lines = [f"{t},{t}.png" for t in reversed(TIMESTAMPS)]
        (mock_dataset / "cam0" / "data.csv").write_text("\n".join(lines) + "\n")

        reader = DatasetReader(mock_dataset)

        assert reader.timestamps == TIMESTAMPS

    def test_missing_left_image(self, mock_dataset: Path):
        """Test error when a left camera image is missing."""
        (mock_dataset / "cam0" / "data" / f"{TIMESTAMPS[0]}.png").unlink()
        reader = DatasetReader(mock_dataset)

        with pytest.raises(FileNotFoundError, match="Left camera image not found"):
            reader.get_sample(0)

    def test_missing_right_image(self, mock_dataset: Path):
        """Test error when a right camera image is missing."""
        (mock_dataset / "cam1" / "data" / f"{TIMESTAMPS[0]}.png").unlink()
        reader = DatasetReader(mock_dataset)

        with pytest.raises(FileNotFoundError, match="Right camera image not found"):
            next(iter(reader))

    def test_csv_parsing_with_whitespace(self, tmp_path: Path):
        """Test CSV parsing handles whitespace correctly."""
        mav0 = tmp_path / "mav0"
        cam0_data = mav0 / "cam0" / "data"
        cam1_data = mav0 / "cam1" / "data"
        cam0_data.mkdir(parents=True)
        cam1_data.mkdir(parents=True)

        timestamp = TIMESTAMPS[0]
        filename = f"{timestamp}.png"
        img = np.zeros((10, 10), dtype=np.uint8)
        cv2.imwrite(str(cam0_data / filename), img)
        cv2.imwrite(str(cam1_data / filename), img)

        csv_content = "#timestamp [ns],filename\n"
        csv_content += f"  {timestamp}  ,  {filename}  \n"
        (mav0 / "cam0" / "data.csv").write_text(csv_content)

        reader = DatasetReader(mav0)

        assert len(reader) == 1
        assert reader.get_sample(0).timestamp_ns == timestamp
