"""Per-asset pipeline actions.

Each action is a stage taking a ``ProcessInput`` and returning a new one.
The heavy lifting (detection, embedding, classification) is delegated to
collaborators injected through :class:`Backends`; this module decides which
faces survive each step and how results are merged back into the asset.

Usage:
    actions = Actions(Backends(detector=detector, embedder=embedder, fetcher=fetcher))
    pipeline = then(actions.fetch_asset, actions.face_encoding, actions.clean)
    output = pipeline.run(process_input)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from deeplook.aligner import extract_image_chip, get_chip_details
from deeplook.config import ProcessConfiguration, QualityFilter
from deeplook.errors import (
    AlignmentError,
    DetectionError,
    FetchError,
    ModelUnavailableError,
    PreconditionError,
)
from deeplook.interfaces import (
    Embedder,
    EmotionClassifier,
    FaceDetector,
    FaceObservation,
    FaceQualityDetector,
    ImageClassifier,
    ImageFetcher,
    ObjectDetector,
    TextRecognizer,
)
from deeplook.linalg import normalize_l2
from deeplook.logging_config import get_logger
from deeplook.models import Face, FaceEmotion, ProcessInput, ProcessOutput
from deeplook.pipeline import Chain, FunctionStage, stage, then

logger = get_logger(__name__)

# Heads turned further than this (radians) are not aligned
MAX_ABS_YAW = 1.5

# Emotions in classifier output order
EMOTION_ORDER = tuple(e for e in FaceEmotion if e is not FaceEmotion.NONE)


@dataclass
class Backends:
    """Container for the vision collaborators.

    Attributes:
        detector: Face rectangle and landmark detector
        embedder: Face chip embedder
        fetcher: Loads images for assets given by identifier only
        quality_detector: Capture-quality estimator
        emotion_classifier: Facial expression scorer
        image_classifier: Whole-image tagger
        object_detector: Object locator
        text_recognizer: Text reader
    """

    detector: FaceDetector
    embedder: Optional[Embedder] = None
    fetcher: Optional[ImageFetcher] = None
    quality_detector: Optional[FaceQualityDetector] = None
    emotion_classifier: Optional[EmotionClassifier] = None
    image_classifier: Optional[ImageClassifier] = None
    object_detector: Optional[ObjectDetector] = None
    text_recognizer: Optional[TextRecognizer] = None


def _require_image(item: ProcessInput) -> np.ndarray:
    if not item.asset.has_image:
        raise PreconditionError(f"Asset '{item.identifier}' has no image")
    return item.asset.image


def _require(backend, name: str):
    if backend is None:
        raise ModelUnavailableError(f"No {name} configured")
    return backend


def has_minimum_landmark_requirement(
    observation: FaceObservation, configuration: ProcessConfiguration
) -> bool:
    """Whether a face is frontal and large enough to align.

    Example:
        >>> obs = FaceObservation(bbox=BoundingBox(0, 0, 100, 100), yaw=0.2)
        >>> has_minimum_landmark_requirement(obs, ProcessConfiguration())
        True
    """
    yaw = observation.yaw or 0.0
    if yaw < -MAX_ABS_YAW or yaw > MAX_ABS_YAW:
        return False
    return observation.bbox.area >= configuration.minimum_face_area


def emotion_from_scores(scores: Sequence[float]) -> FaceEmotion:
    """Most likely emotion, NONE for empty or unrecognized scores."""
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return FaceEmotion.NONE
    index = int(np.argmax(values))
    if index >= len(EMOTION_ORDER):
        return FaceEmotion.NONE
    return EMOTION_ORDER[index]


class Actions:
    """Builds pipeline stages bound to a set of backends.

    Primitive stages wrap a single collaborator call; composite properties
    chain primitives into the common recipes (e.g. ``face_encoding``).

    Args:
        backends: Vision collaborators used by the stages
    """

    def __init__(self, backends: Backends):
        self.backends = backends

    # -- primitives ---------------------------------------------------------

    def _fetch_asset(self, item: ProcessInput) -> ProcessInput:
        if item.asset.has_image:
            return item
        fetcher = self.backends.fetcher
        if fetcher is None:
            raise FetchError(f"Asset '{item.identifier}' has no image and no fetcher is configured")

        image = fetcher.fetch(item.identifier, item.configuration.fetch_image_size)
        if image is None or image.size == 0:
            raise FetchError(f"Could not fetch image for asset '{item.identifier}'")
        logger.debug(f"Fetched '{item.identifier}' with shape {image.shape}")
        return item.with_asset(image=image)

    def _face_rectangles(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        boxes = self.backends.detector.detect_face_rectangles(image)
        if boxes is None:
            raise DetectionError(f"Face rectangle detection failed for '{item.identifier}'")
        return item.with_asset(bounding_boxes=tuple(boxes), faces=())

    def _face_landmarks(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        faces = item.asset.faces
        priors = [face.observation for face in faces] or None
        observations = self.backends.detector.detect_face_landmarks(image, priors)
        if observations is None:
            raise DetectionError(f"Landmark detection failed for '{item.identifier}'")

        config = item.configuration
        if len(observations) == len(faces):
            updated = [
                face.with_observation(obs)
                for face, obs in zip(faces, observations)
                if has_minimum_landmark_requirement(obs, config)
            ]
        else:
            updated = [
                Face(local_identifier=item.identifier, observation=obs)
                for obs in observations
                if has_minimum_landmark_requirement(obs, config)
            ]

        dropped = len(observations) - len(updated)
        if dropped:
            logger.debug(f"Dropped {dropped} face(s) below landmark requirements in '{item.identifier}'")
        return item.with_asset(
            bounding_boxes=tuple(obs.bbox for obs in observations),
            faces=tuple(updated),
        )

    def _face_quality(self, item: ProcessInput) -> ProcessInput:
        quality_filter = item.configuration.minimum_quality_filter
        if quality_filter is QualityFilter.NONE:
            return item

        image = _require_image(item)
        detector = _require(self.backends.quality_detector, "face quality detector")
        faces = item.asset.faces
        priors = [face.observation for face in faces] or None
        observations = detector.detect_face_quality(image, priors)
        if observations is None:
            raise DetectionError(f"Face quality detection failed for '{item.identifier}'")

        def passes(obs: FaceObservation) -> bool:
            return (obs.capture_quality or 0.0) >= quality_filter.threshold

        if len(observations) == len(faces):
            updated = [
                face.with_quality(obs.capture_quality or 0.0)
                for face, obs in zip(faces, observations)
                if passes(obs)
            ]
            boxes = item.asset.bounding_boxes
        else:
            updated = [
                Face(
                    local_identifier=item.identifier,
                    observation=obs,
                    quality=obs.capture_quality or 0.0,
                )
                for obs in observations
                if passes(obs)
            ]
            boxes = tuple(obs.bbox for obs in observations)

        dropped = len(observations) - len(updated)
        if dropped:
            logger.debug(
                f"Dropped {dropped} face(s) below {quality_filter.value} quality in '{item.identifier}'"
            )
        return item.with_asset(bounding_boxes=boxes, faces=tuple(updated))

    def _crop_chip_faces(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        config = item.configuration
        cropped = []
        for face in item.asset.faces:
            try:
                details = get_chip_details(
                    face.observation,
                    chip_size=config.face_chip_size,
                    padding=config.face_chip_padding,
                    algorithm=config.landmarks_alignment_algorithm,
                )
                chip = extract_image_chip(image, details)
            except AlignmentError as e:
                logger.warning(f"Failed to align face in '{item.identifier}': {e}")
                continue
            cropped.append(face.with_chip(chip, details.roll))
        return item.with_asset(faces=tuple(cropped))

    def _encode_faces(self, item: ProcessInput) -> ProcessInput:
        embedder = _require(self.backends.embedder, "face embedder")
        model = item.configuration.face_encoder_model
        encoded = []
        for face in item.asset.faces:
            if face.cropped_image is None:
                logger.debug(f"Skipping face without chip in '{item.identifier}'")
                continue
            embedding = embedder.embed(face.cropped_image, model)
            encoded.append(face.with_encoding(normalize_l2(embedding)))
        return item.with_asset(faces=tuple(encoded))

    def _classify_emotions(self, item: ProcessInput) -> ProcessInput:
        classifier = _require(self.backends.emotion_classifier, "emotion classifier")
        classified = []
        for face in item.asset.faces:
            if face.cropped_image is None:
                continue
            scores = classifier.classify(face.cropped_image)
            classified.append(face.with_emotion(emotion_from_scores(scores)))
        return item.with_asset(faces=tuple(classified))

    def _tag_image(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        classifier = _require(self.backends.image_classifier, "image classifier")
        return item.with_asset(tags=tuple(classifier.classify(image)))

    def _locate_objects(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        detector = _require(self.backends.object_detector, "object detector")
        return item.with_asset(tags=tuple(detector.detect(image)))

    def _recognize_text(self, item: ProcessInput) -> ProcessInput:
        image = _require_image(item)
        recognizer = _require(self.backends.text_recognizer, "text recognizer")
        return item.with_asset(text=tuple(recognizer.recognize(image)))

    @staticmethod
    def _clean(item: ProcessInput) -> ProcessOutput:
        return ProcessOutput.from_asset(item.asset)

    @property
    def fetch_asset(self) -> FunctionStage:
        """Load the asset image through the fetcher unless one is attached."""
        return stage(self._fetch_asset, "fetch_asset")

    @property
    def face_rectangles(self) -> FunctionStage:
        """Detect face bounding boxes; resets the face list."""
        return stage(self._face_rectangles, "face_rectangles")

    @property
    def face_landmarks(self) -> FunctionStage:
        """Detect landmarks, keeping frontal faces of sufficient area."""
        return stage(self._face_landmarks, "face_landmarks")

    @property
    def face_quality(self) -> FunctionStage:
        """Score capture quality and drop faces under the configured filter."""
        return stage(self._face_quality, "face_quality")

    @property
    def crop_chip_faces(self) -> FunctionStage:
        return stage(self._crop_chip_faces, "crop_chip_faces")

    @property
    def encode_faces(self) -> FunctionStage:
        return stage(self._encode_faces, "encode_faces")

    @property
    def classify_emotions(self) -> FunctionStage:
        return stage(self._classify_emotions, "classify_emotions")

    @property
    def tag_image(self) -> FunctionStage:
        return stage(self._tag_image, "tag_image")

    @property
    def locate_objects(self) -> FunctionStage:
        return stage(self._locate_objects, "locate_objects")

    @property
    def recognize_text(self) -> FunctionStage:
        return stage(self._recognize_text, "recognize_text")

    @property
    def clean(self) -> FunctionStage:
        """Drop the image buffer, turning the input into a ProcessOutput."""
        return stage(self._clean, "clean")

    # -- composites ---------------------------------------------------------

    @property
    def face_location(self) -> FunctionStage:
        return self.face_rectangles

    @property
    def object_location(self) -> FunctionStage:
        return self.locate_objects

    @property
    def object_detecting(self) -> FunctionStage:
        return self.tag_image

    @property
    def text_recognition(self) -> FunctionStage:
        return self.recognize_text

    @property
    def crop_and_align_faces(self) -> Chain:
        return then(self.face_landmarks, self.crop_chip_faces)

    @property
    def face_encoding(self) -> Chain:
        """Quality filter, landmarks, aligned chip, then encoding."""
        return then(self.face_quality, self.crop_and_align_faces, self.encode_faces)

    @property
    def face_emotion(self) -> Chain:
        return then(self.crop_and_align_faces, self.classify_emotions)

    def __repr__(self) -> str:
        configured = [name for name, value in vars(self.backends).items() if value is not None]
        return f"Actions(backends={configured})"
