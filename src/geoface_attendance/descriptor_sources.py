"""
Sources of enrolled face descriptors.

Identities enrolled before descriptors were precomputed only carry photos.
``LegacyPhotoDescriptorSource`` derives their descriptors on first use and
caches them for the rest of the process, behind the same interface as the
plain precomputed source.
"""

import abc
from typing import Dict, List

import numpy as np
import structlog

from .data_models import Identity
from .detectors import DescriptorExtractor
from .exceptions import FeatureExtractionError, NotFoundError

# Initialize structured logger
logger = structlog.get_logger(__name__)


class DescriptorSource(abc.ABC):
    """Supplies the enrolled descriptors for an identity."""

    @abc.abstractmethod
    def descriptors_for(self, identity: Identity) -> List[np.ndarray]:
        """
        Return at least one enrolled descriptor.

        Raises
        ------
        NotFoundError
            If the identity has no usable enrollment data.
        """


class EnrolledDescriptorSource(DescriptorSource):
    """Uses precomputed descriptors only."""

    def descriptors_for(self, identity: Identity) -> List[np.ndarray]:
        if not identity.has_descriptors:
            raise NotFoundError(
                f"No face data registered for {identity.key}. "
                "Please complete registration first",
                identity_key=identity.key,
            )
        return list(identity.descriptors)


class LegacyPhotoDescriptorSource(DescriptorSource):
    """
    Precomputed descriptors when present, otherwise derived from photos.

    Derivation happens once per identity key; the result is cached for the
    lifetime of this source. Samples that fail extraction are skipped.

    Parameters
    ----------
    extractor : DescriptorExtractor
        Capability used to turn each photo into a descriptor.
    """

    def __init__(self, extractor: DescriptorExtractor) -> None:
        self.extractor = extractor
        self._cache: Dict[str, List[np.ndarray]] = {}

    def descriptors_for(self, identity: Identity) -> List[np.ndarray]:
        if identity.has_descriptors:
            return list(identity.descriptors)

        cached = self._cache.get(identity.key)
        if cached is not None:
            return list(cached)

        if not identity.has_photos:
            raise NotFoundError(
                f"No face data registered for {identity.key}. "
                "Please complete registration first",
                identity_key=identity.key,
            )

        descriptors = self._derive(identity)
        self._cache[identity.key] = descriptors
        return list(descriptors)

    def _derive(self, identity: Identity) -> List[np.ndarray]:
        descriptors = []
        skipped = 0

        for index, sample in enumerate(identity.photos):
            try:
                descriptor = self.extractor.extract_from_sample(sample)
            except FeatureExtractionError as e:
                logger.warning(
                    "Skipping enrolled photo",
                    identity_key=identity.key,
                    photo_index=index,
                    error=e.message,
                )
                skipped += 1
                continue

            if descriptor is None:
                logger.warning(
                    "No face in enrolled photo, skipping",
                    identity_key=identity.key,
                    photo_index=index,
                )
                skipped += 1
                continue

            descriptors.append(np.asarray(descriptor, dtype=np.float64))

        logger.info(
            "Derived descriptors from enrolled photos",
            identity_key=identity.key,
            derived=len(descriptors),
            skipped=skipped,
        )

        if not descriptors:
            raise NotFoundError(
                f"None of the {len(identity.photos)} enrolled photos of "
                f"{identity.key} contain a usable face",
                identity_key=identity.key,
            )

        return descriptors

    def cached_keys(self) -> List[str]:
        """Identity keys whose derived descriptors are cached."""
        return list(self._cache)
