"""Unit tests for pipeline actions with mocked collaborators."""

from __future__ import annotations

from unittest.mock import Mock

import numpy as np
import pytest

from deeplook.actions import Actions, Backends, emotion_from_scores, has_minimum_landmark_requirement
from deeplook.aligner import LANDMARK_INDICES, canonical_points
from deeplook.config import (
    FaceEncoderModel,
    LandmarksAlignmentAlgorithm,
    ProcessConfiguration,
    QualityFilter,
)
from deeplook.errors import DetectionError, FetchError, ModelUnavailableError, PreconditionError
from deeplook.interfaces import LANDMARK_POINT_COUNT, BoundingBox, DetectedObject, FaceObservation
from deeplook.models import Face, FaceEmotion, ProcessAsset, ProcessInput, ProcessOutput


def make_observation(x: float, y: float, yaw: float = 0.0, quality=None, size: float = 100.0):
    """Create an observation with a frontal landmark constellation at (x, y)."""
    algorithm = LandmarksAlignmentAlgorithm.SPHERE_FACE5
    landmarks = np.zeros((LANDMARK_POINT_COUNT, 2))
    landmarks[list(LANDMARK_INDICES[algorithm])] = (
        canonical_points(algorithm, size) + np.array([x, y])
    )
    return FaceObservation(
        bbox=BoundingBox(x, y, x + size, y + size),
        landmarks=landmarks,
        yaw=yaw,
        capture_quality=quality,
    )


@pytest.fixture
def test_frame():
    """Create a test frame (400x300 BGR)."""
    return np.random.default_rng(0).integers(0, 255, (300, 400, 3), dtype=np.uint8)


@pytest.fixture
def mock_detector():
    """Create a mock face detector."""
    return Mock()


@pytest.fixture
def mock_embedder():
    """Create a mock embedder returning a fixed vector."""
    embedder = Mock()
    embedder.embed.return_value = np.array([3.0, 4.0])
    return embedder


@pytest.fixture
def mock_fetcher(test_frame):
    """Create a mock image fetcher."""
    fetcher = Mock()
    fetcher.fetch.return_value = test_frame
    return fetcher


@pytest.fixture
def mock_quality():
    """Create a mock quality detector."""
    return Mock()


@pytest.fixture
def actions(mock_detector, mock_embedder, mock_fetcher, mock_quality):
    """Create actions bound to the mocks."""
    return Actions(
        Backends(
            detector=mock_detector,
            embedder=mock_embedder,
            fetcher=mock_fetcher,
            quality_detector=mock_quality,
            emotion_classifier=Mock(),
            image_classifier=Mock(),
            object_detector=Mock(),
            text_recognizer=Mock(),
        )
    )


@pytest.fixture
def item(test_frame):
    """Create an input with an attached image."""
    return ProcessInput(asset=ProcessAsset(identifier="IMG_1", image=test_frame))


def test_fetch_asset_keeps_attached_image(actions, mock_fetcher, item):
    """Test that assets with an image are not fetched again."""
    assert actions.fetch_asset.run(item) is item
    mock_fetcher.fetch.assert_not_called()


def test_fetch_asset_loads_image(actions, mock_fetcher, test_frame):
    """Test fetching by identifier with the configured size."""
    config = ProcessConfiguration(fetch_image_size=800)
    bare = ProcessInput(asset=ProcessAsset(identifier="IMG_2"), configuration=config)

    fetched = actions.fetch_asset.run(bare)

    mock_fetcher.fetch.assert_called_once_with("IMG_2", 800.0)
    assert fetched.asset.image is test_frame
    assert fetched.configuration is config
    assert bare.asset.image is None


def test_fetch_asset_failure(actions, mock_fetcher):
    """Test that a failed fetch raises FetchError."""
    mock_fetcher.fetch.return_value = None
    with pytest.raises(FetchError):
        actions.fetch_asset.run(ProcessInput(asset=ProcessAsset(identifier="gone")))


def test_fetch_asset_without_fetcher(mock_detector):
    """Test that identifier-only assets need a fetcher."""
    actions = Actions(Backends(detector=mock_detector))
    with pytest.raises(FetchError):
        actions.fetch_asset.run(ProcessInput(asset=ProcessAsset(identifier="IMG_3")))


def test_face_rectangles(actions, mock_detector, item):
    """Test that boxes are stored and faces reset."""
    boxes = [BoundingBox(0, 0, 50, 50), BoundingBox(100, 100, 180, 180)]
    mock_detector.detect_face_rectangles.return_value = boxes

    result = actions.face_location.run(item)

    assert result.asset.bounding_boxes == tuple(boxes)
    assert result.asset.faces == ()


def test_face_rectangles_detection_failure(actions, mock_detector, item):
    """Test that a detector returning None raises DetectionError."""
    mock_detector.detect_face_rectangles.return_value = None
    with pytest.raises(DetectionError):
        actions.face_rectangles.run(item)


def test_stages_require_image(actions):
    """Test that detection on an asset without image is a precondition error."""
    with pytest.raises(PreconditionError):
        actions.face_rectangles.run(ProcessInput(asset=ProcessAsset(identifier="x")))


def test_face_landmarks_builds_new_faces(actions, mock_detector, item):
    """Test landmark detection without prior faces, with requirement filtering."""
    good = make_observation(20, 20)
    turned = make_observation(150, 20, yaw=1.6)
    tiny = make_observation(250, 20, size=40)
    mock_detector.detect_face_landmarks.return_value = [good, turned, tiny]

    result = actions.face_landmarks.run(item)

    mock_detector.detect_face_landmarks.assert_called_once()
    assert mock_detector.detect_face_landmarks.call_args[0][1] is None
    assert [f.observation for f in result.asset.faces] == [good]
    assert result.asset.faces[0].local_identifier == "IMG_1"
    assert len(result.asset.bounding_boxes) == 3


def test_face_landmarks_updates_prior_faces(actions, mock_detector, item):
    """Test that matching counts update existing faces pairwise."""
    prior = Face(local_identifier="IMG_1", observation=make_observation(20, 20), quality=0.8)
    refined = make_observation(22, 21)
    mock_detector.detect_face_landmarks.return_value = [refined]

    result = actions.face_landmarks.run(item.with_asset(faces=(prior,)))

    assert mock_detector.detect_face_landmarks.call_args[0][1] == [prior.observation]
    face = result.asset.faces[0]
    assert face.observation is refined
    assert face.quality == 0.8


def test_landmark_requirement_boundaries():
    """Test yaw and area limits."""
    config = ProcessConfiguration(minimum_face_area=4000)
    assert has_minimum_landmark_requirement(make_observation(0, 0, yaw=1.5), config)
    assert has_minimum_landmark_requirement(make_observation(0, 0, yaw=-1.5), config)
    assert not has_minimum_landmark_requirement(make_observation(0, 0, yaw=-1.51), config)
    assert not has_minimum_landmark_requirement(make_observation(0, 0, size=63), config)
    assert has_minimum_landmark_requirement(make_observation(0, 0, size=63), config.with_changes(minimum_face_area=0))


def test_face_quality_disabled(actions, mock_quality, item):
    """Test that the NONE filter skips the quality stage."""
    config = ProcessConfiguration(minimum_quality_filter=QualityFilter.NONE)
    unfiltered = ProcessInput(asset=item.asset, configuration=config)

    assert actions.face_quality.run(unfiltered) is unfiltered
    mock_quality.detect_face_quality.assert_not_called()


def test_face_quality_filters_new_faces(actions, mock_quality, item):
    """Test that faces under the quality bar are dropped."""
    sharp = make_observation(20, 20, quality=0.6)
    blurry = make_observation(150, 20, quality=0.05)
    mock_quality.detect_face_quality.return_value = [sharp, blurry]

    result = actions.face_quality.run(item)

    assert len(result.asset.faces) == 1
    assert result.asset.faces[0].quality == 0.6
    assert result.asset.faces[0].observation is sharp


def test_face_quality_updates_prior_faces(actions, mock_quality, item):
    """Test that matching counts only update quality."""
    original = make_observation(20, 20)
    prior = Face(local_identifier="IMG_1", observation=original)
    mock_quality.detect_face_quality.return_value = [make_observation(20, 20, quality=0.3)]
    config = ProcessConfiguration(minimum_quality_filter=QualityFilter.MEDIUM)

    result = actions.face_quality.run(
        ProcessInput(asset=item.asset.with_changes(faces=(prior,)), configuration=config)
    )

    assert result.asset.faces[0].quality == 0.3
    assert result.asset.faces[0].observation is original


def test_crop_chip_faces(actions, item):
    """Test that alignable faces get a chip and others are dropped."""
    aligned = Face(local_identifier="IMG_1", observation=make_observation(20, 20))
    no_landmarks = Face(
        local_identifier="IMG_1", observation=FaceObservation(bbox=BoundingBox(0, 0, 100, 100))
    )

    result = actions.crop_chip_faces.run(item.with_asset(faces=(aligned, no_landmarks)))

    assert len(result.asset.faces) == 1
    chip = result.asset.faces[0].cropped_image
    assert chip.shape == (160, 160, 3)
    assert result.asset.faces[0].roll == pytest.approx(0.0, abs=1e-6)


def test_crop_chip_size_follows_encoder(actions, item):
    """Test that VGG models get 224 pixel chips."""
    config = ProcessConfiguration(face_encoder_model=FaceEncoderModel.VGG_RESNET_LITE)
    face = Face(local_identifier="IMG_1", observation=make_observation(20, 20))

    result = actions.crop_chip_faces.run(
        ProcessInput(asset=item.asset.with_changes(faces=(face,)), configuration=config)
    )

    assert result.asset.faces[0].cropped_image.shape == (224, 224, 3)


def test_encode_faces(actions, mock_embedder, item):
    """Test that encodings are normalized and chipless faces skipped."""
    chip = np.zeros((160, 160, 3), dtype=np.uint8)
    with_chip = Face(local_identifier="IMG_1", observation=make_observation(20, 20), cropped_image=chip)
    without_chip = Face(local_identifier="IMG_1", observation=make_observation(150, 20))

    result = actions.encode_faces.run(item.with_asset(faces=(with_chip, without_chip)))

    assert len(result.asset.faces) == 1
    np.testing.assert_allclose(result.asset.faces[0].encoding, [0.6, 0.8])
    mock_embedder.embed.assert_called_once_with(chip, FaceEncoderModel.FACENET)


def test_encode_faces_missing_model(actions, mock_embedder, item):
    """Test that a missing encoder model propagates."""
    mock_embedder.embed.side_effect = ModelUnavailableError("faceNet")
    chip = np.zeros((160, 160, 3), dtype=np.uint8)
    face = Face(local_identifier="IMG_1", observation=make_observation(20, 20), cropped_image=chip)

    with pytest.raises(ModelUnavailableError):
        actions.encode_faces.run(item.with_asset(faces=(face,)))


def test_face_encoding_end_to_end(actions, mock_detector, mock_quality, item):
    """Test quality -> landmarks -> crop -> encode."""
    mock_quality.detect_face_quality.return_value = [
        make_observation(20, 20, quality=0.9),
        make_observation(200, 100, quality=0.01),
    ]
    mock_detector.detect_face_landmarks.return_value = [make_observation(21, 20)]

    result = actions.face_encoding.run(item)

    faces = result.asset.faces
    assert len(faces) == 1
    assert faces[0].quality == 0.9
    assert faces[0].cropped_image.shape == (160, 160, 3)
    assert np.linalg.norm(faces[0].encoding) == pytest.approx(1.0)
    assert item.asset.faces == ()


def test_face_emotion(actions, mock_detector, item):
    """Test landmarks -> crop -> emotion classification."""
    mock_detector.detect_face_landmarks.return_value = [make_observation(20, 20)]
    actions.backends.emotion_classifier.classify.return_value = [0.1, 0.0, 0.0, 0.7, 0.1, 0.0, 0.1]

    result = actions.face_emotion.run(item)

    assert result.asset.faces[0].emotion is FaceEmotion.HAPPY


def test_emotion_from_scores():
    """Test argmax mapping and the empty case."""
    assert emotion_from_scores([0.9, 0.1]) is FaceEmotion.ANGRY
    assert emotion_from_scores([0, 0, 0, 0, 0, 0, 1]) is FaceEmotion.NEUTRAL
    assert emotion_from_scores([]) is FaceEmotion.NONE


def test_tag_and_locate(actions, item):
    """Test whole-image tags and object locations."""
    tags = [DetectedObject("beach", 0.9)]
    objects = [DetectedObject("dog", 0.8, BoundingBox(1, 2, 3, 4))]
    actions.backends.image_classifier.classify.return_value = tags
    actions.backends.object_detector.detect.return_value = objects

    assert actions.object_detecting.run(item).asset.tags == tuple(tags)
    assert actions.object_location.run(item).asset.tags == tuple(objects)


def test_recognize_text(actions, item):
    """Test that recognized lines are stored."""
    actions.backends.text_recognizer.recognize.return_value = ["EXIT", "Gate 4"]
    assert actions.text_recognition.run(item).asset.text == ("EXIT", "Gate 4")


def test_missing_backend(mock_detector, item):
    """Test that an unconfigured collaborator is reported as unavailable."""
    actions = Actions(Backends(detector=mock_detector))
    with pytest.raises(ModelUnavailableError):
        actions.tag_image.run(item)


def test_clean(actions, item):
    """Test that clean drops the image and keeps the results."""
    face = Face(local_identifier="IMG_1", observation=make_observation(20, 20))
    output = actions.clean.run(item.with_asset(faces=(face,), text=("hi",)))

    assert isinstance(output, ProcessOutput)
    assert output.local_identifier == "IMG_1"
    assert output.faces == (face,)
    assert output.text == ("hi",)
    assert not hasattr(output, "image")
