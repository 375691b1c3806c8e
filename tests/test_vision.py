"""Tests for the batch runner, from identifiers to clustered faces."""

from __future__ import annotations

from unittest.mock import Mock

import numpy as np
import pytest

from deeplook.actions import Actions, Backends
from deeplook.aligner import LANDMARK_INDICES, canonical_points
from deeplook.clustering import ClusterOptions, ClusterType, cluster
from deeplook.config import LandmarksAlignmentAlgorithm, ProcessConfiguration, QualityFilter
from deeplook.errors import DetectionError
from deeplook.interfaces import LANDMARK_POINT_COUNT, BoundingBox, FaceObservation
from deeplook.matcher import verify_outputs
from deeplook.models import ProcessAsset, ProcessOutput
from deeplook.vision import detect, flatten_faces, stack_identifiers, stack_images, stack_inputs


def frontal_observation(x: float = 20.0, y: float = 20.0) -> FaceObservation:
    """Create a 100px frontal face at (x, y)."""
    algorithm = LandmarksAlignmentAlgorithm.SPHERE_FACE5
    landmarks = np.zeros((LANDMARK_POINT_COUNT, 2))
    landmarks[list(LANDMARK_INDICES[algorithm])] = canonical_points(algorithm, 100) + [x, y]
    return FaceObservation(bbox=BoundingBox(x, y, x + 100, y + 100), landmarks=landmarks, yaw=0.0)


@pytest.fixture
def no_quality_config():
    """Create a configuration that skips the quality stage."""
    return ProcessConfiguration(minimum_quality_filter=QualityFilter.NONE)


@pytest.fixture
def person_images():
    """Create images whose pixel value encodes the person shown."""
    return {
        f"IMG_{i}": np.full((200, 200, 3), 10 if i % 2 == 0 else 200, dtype=np.uint8)
        for i in range(12)
    }


@pytest.fixture
def actions(person_images):
    """Create actions whose embedder maps chip brightness to an identity."""
    fetcher = Mock()
    fetcher.fetch.side_effect = lambda asset_id, max_dimension: person_images[asset_id]

    detector = Mock()
    detector.detect_face_landmarks.side_effect = lambda image, priors=None: [frontal_observation()]

    def embed(chip, model):
        return np.array([1.0, 0.0]) if chip.mean() < 100 else np.array([0.0, 1.0])

    embedder = Mock()
    embedder.embed.side_effect = embed

    return Actions(Backends(detector=detector, embedder=embedder, fetcher=fetcher))


def test_stack_helpers(no_quality_config):
    """Test chunking of assets, images and identifiers."""
    stack = stack_identifiers([f"id_{i}" for i in range(25)], no_quality_config)
    assert len(stack) == 3
    last = stack.pop()
    assert [item.identifier for item in last] == [f"id_{i}" for i in range(20, 25)]
    assert all(item.configuration is no_quality_config for item in last)

    images = [np.zeros((4, 4, 3), dtype=np.uint8)] * 3
    image_stack = stack_images(images, "rhs", chunk_size=2)
    assert len(image_stack) == 2
    assert all(item.identifier == "rhs" and item.asset.has_image for item in image_stack.pop())

    assert len(stack_inputs([ProcessAsset(identifier="a")], chunk_size=1)) == 1


def test_detect_and_cluster(actions, no_quality_config):
    """Test fetching, encoding and clustering a batch of photos."""
    stack = stack_identifiers([f"IMG_{i}" for i in range(12)], no_quality_config, chunk_size=5)

    result = detect(stack, actions.face_encoding, actions)

    assert result.ok
    assert result.chunk_sizes == [2, 5, 5]
    assert all(isinstance(output, ProcessOutput) for output in result)

    faces = flatten_faces(result)
    assert len(faces) == 12
    assert all(face.cropped_image.shape == (160, 160, 3) for face in faces)

    groups = cluster(faces, ClusterOptions(threshold=0.5, cluster_type=ClusterType.DBSCAN))
    assert len(groups) == 2
    for group in groups:
        parities = {int(face.local_identifier.split("_")[1]) % 2 for face in group}
        assert len(parities) == 1


def test_detect_reports_failures(actions, no_quality_config):
    """Test that a failing asset is reported while others succeed."""
    def landmarks(image, priors=None):
        if image.mean() > 100:
            return None
        return [frontal_observation()]

    actions.backends.detector.detect_face_landmarks.side_effect = landmarks
    stack = stack_identifiers([f"IMG_{i}" for i in range(4)], no_quality_config)

    result = detect(stack, actions.face_encoding, actions)

    assert sorted(output.local_identifier for output in result) == ["IMG_0", "IMG_2"]
    assert sorted(f.identifier for f in result.failures) == ["IMG_1", "IMG_3"]
    assert all(isinstance(f.error, DetectionError) for f in result.failures)


def test_detect_then_verify(person_images, actions, no_quality_config):
    """Test verifying a source photo against targets."""
    source = ProcessAsset(identifier="lhs", image=person_images["IMG_0"])
    targets = [
        ProcessAsset(identifier="rhs", image=person_images[f"IMG_{i}"]) for i in range(1, 5)
    ]
    stack = stack_inputs([source] + targets, no_quality_config)

    result = detect(stack, actions.face_encoding, actions)
    matches = verify_outputs(result, threshold=0.5)

    # IMG_2 and IMG_4 show the same person as IMG_0
    assert len(matches) == 2
    assert all(m.source_face.local_identifier == "lhs" for m in matches)
    assert all(m.distance == pytest.approx(0.0) for m in matches)
