"""
Face descriptor matching for the attendance verification pipeline.

This module implements the biometric decision: a live descriptor is scored
against every enrolled descriptor and accepted only if the best score clears
a deliberately strict threshold. It also owns the retry policy for obtaining
the live descriptor in the first place, so that an unlucky crop does not
surface as a rejected face.
"""

from typing import List, Optional, Sequence

import numpy as np
import structlog
from scipy.spatial import distance as spatial_distance

from .constants import MATCH_THRESHOLD
from .data_models import FaceBox, MatchResult
from .detectors import DescriptorExtractor, ExtractionStrategy
from .exceptions import CaptureExtractionFailed, FeatureExtractionError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def euclidean_distance(
    first: Optional[Sequence[float]], second: Optional[Sequence[float]]
) -> Optional[float]:
    """
    Euclidean distance between two descriptors.

    Parameters
    ----------
    first, second : Optional[Sequence[float]]
        Descriptors to compare.

    Returns
    -------
    Optional[float]
        The distance, or None if either descriptor is missing, empty, or the
        lengths differ.

    Examples
    --------
    >>> euclidean_distance([0.0, 0.0], [3.0, 4.0])
    5.0
    >>> euclidean_distance([0.0], [0.0, 1.0]) is None
    True
    """
    if first is None or second is None:
        return None

    first = np.asarray(first, dtype=np.float64).ravel()
    second = np.asarray(second, dtype=np.float64).ravel()
    if first.size == 0 or first.shape != second.shape:
        return None

    return float(spatial_distance.euclidean(first, second))


def similarity_score(
    first: Optional[Sequence[float]], second: Optional[Sequence[float]]
) -> float:
    """
    Similarity on a 0-100 scale: ``(1 - distance) * 100`` clamped.

    Distance 0 scores 100, distance 1 or more scores 0, and an undefined
    distance scores 0.
    """
    distance = euclidean_distance(first, second)
    if distance is None:
        return 0.0
    return max(0.0, min(100.0, (1.0 - distance) * 100.0))


class DescriptorMatcher:
    """
    Accept/reject decision over a set of enrolled descriptors.

    Parameters
    ----------
    threshold : float, default=MATCH_THRESHOLD
        Minimum best score to accept. The default favours rejecting a
        genuine user now and then over accepting an impostor.
    strategies : Sequence[ExtractionStrategy], optional
        Order of extraction attempts for the live descriptor.

    Examples
    --------
    >>> matcher = DescriptorMatcher()
    >>> result = matcher.match(live, [enrolled])
    >>> result.accepted
    True
    """

    def __init__(
        self,
        threshold: float = MATCH_THRESHOLD,
        strategies: Optional[Sequence[ExtractionStrategy]] = None,
    ) -> None:
        if not 0.0 <= threshold <= 100.0:
            raise ValueError(f"threshold must be between 0 and 100, got {threshold}")
        self.threshold = threshold
        self.strategies = list(strategies or ExtractionStrategy)

    def match(
        self, live_descriptor: Optional[np.ndarray], enrolled_descriptors: Sequence[np.ndarray]
    ) -> MatchResult:
        """
        Score ``live_descriptor`` against every enrolled descriptor.

        Returns
        -------
        MatchResult
            Best score, the index and distance of the best enrolled
            descriptor, and whether the best score reaches the threshold.
        """
        best_score = 0.0
        best_index = None
        best_distance = None

        for index, enrolled in enumerate(enrolled_descriptors):
            distance = euclidean_distance(live_descriptor, enrolled)
            score = similarity_score(live_descriptor, enrolled)
            if best_index is None or score > best_score:
                best_score = score
                best_index = index
                best_distance = distance

        accepted = best_index is not None and best_score >= self.threshold

        logger.info(
            "Descriptor match evaluated",
            enrolled_count=len(enrolled_descriptors),
            best_score=round(best_score, 2),
            best_index=best_index,
            threshold=self.threshold,
            accepted=accepted,
        )

        return MatchResult(
            score=best_score,
            accepted=accepted,
            threshold=self.threshold,
            best_index=best_index,
            distance=best_distance,
        )

    def extract_live_descriptor(
        self,
        extractor: DescriptorExtractor,
        frame: np.ndarray,
        face_box: Optional[FaceBox],
    ) -> np.ndarray:
        """
        Obtain the live descriptor, retrying with each strategy in turn.

        Crop strategies are skipped when no face box is being tracked.

        Raises
        ------
        CaptureExtractionFailed
            If no strategy produced a descriptor.
        """
        tried: List[str] = []

        for strategy in self.strategies:
            if face_box is None and strategy is not ExtractionStrategy.FULL_FRAME:
                continue

            tried.append(strategy.value)
            try:
                descriptor = extractor.extract(frame, face_box, strategy)
            except FeatureExtractionError as e:
                logger.warning(
                    "Extraction strategy failed", strategy=strategy.value, error=e.message
                )
                continue

            if descriptor is not None:
                logger.info(
                    "Live descriptor extracted",
                    strategy=strategy.value,
                    attempts=len(tried),
                    dimension=int(np.asarray(descriptor).size),
                )
                return np.asarray(descriptor, dtype=np.float64)

            logger.debug("No face found with strategy", strategy=strategy.value)

        raise CaptureExtractionFailed(tried)
