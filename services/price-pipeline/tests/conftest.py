"""Shared test fixtures for price pipeline tests."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def sample_image_bytes() -> bytes:
    """Generate a minimal valid JPEG image for testing."""
    import cv2

    # Create a 200x300 image with some menu-like text rows
    img = np.zeros((300, 200, 3), dtype=np.uint8)
    img[:] = (240, 240, 240)  # Light gray background

    cv2.rectangle(img, (20, 30), (180, 50), (30, 30, 30), -1)
    cv2.rectangle(img, (20, 70), (160, 90), (30, 30, 30), -1)
    cv2.rectangle(img, (20, 110), (140, 130), (30, 30, 30), -1)

    _, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 90])
    return buf.tobytes()


@pytest.fixture
def noisy_image_bytes() -> bytes:
    """High-entropy image whose JPEG size reacts strongly to quality."""
    import cv2

    rng = np.random.default_rng(42)
    img = rng.integers(0, 256, size=(400, 400, 3), dtype=np.uint8)
    _, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, 100])
    return buf.tobytes()


@pytest.fixture
def invalid_bytes() -> bytes:
    """Non-image bytes for testing conversion failures."""
    return b"this is not an image file at all"


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def shared_dir(tmp_path: Path) -> Path:
    return tmp_path / "shared"


@pytest.fixture
def store(data_dir: Path, shared_dir: Path):
    from queue_store import ExtractionQueueStore

    return ExtractionQueueStore(data_dir=data_dir, shared_dir=shared_dir, max_retries=3)


@pytest.fixture
def cafe_fields() -> dict:
    return {
        "cafe_id": "cafe-1",
        "cafe_name": "Kaffeebar Mitte",
        "cafe_address": "Torstraße 1, Berlin",
        "cafe_latitude": 52.529,
        "cafe_longitude": 13.401,
    }


@pytest.fixture
def espresso_response() -> dict:
    return {
        "success": True,
        "drinks": [
            {"name": "Espresso", "price": 2.7},
            {"name": "Cappuccino", "price": 3.6},
        ],
    }
