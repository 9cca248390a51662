"""
Features and Matches Database Module

이미지 쌍 매칭 결과와 카메라 prior를 저장하는 키-값 저장소 인터페이스입니다.
재구성 빌더는 조회와 열거 기능만 사용하며, 저장 형식에는 관여하지 않습니다.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .camera import CameraIntrinsicsPrior
from .correspondence import FeatureCorrespondence2D2D
from .view_graph import TwoViewInfo


@dataclass
class ImagePairMatch:
    """
    이미지 쌍의 검증된 매칭

    Attributes:
        image1, image2: 이미지 이름
        twoview_info: image1 → image2 방향의 상대 기하
        correspondences: 검증된 대응점 (feature1은 image1, feature2는 image2)
    """
    image1: str
    image2: str
    twoview_info: TwoViewInfo = field(default_factory=TwoViewInfo)
    correspondences: List[FeatureCorrespondence2D2D] = field(default_factory=list)


class FeaturesAndMatchesDatabase(ABC):
    """매칭 저장소 인터페이스"""

    @abstractmethod
    def get_image_pair_match(self, image1: str, image2: str) -> Optional[ImagePairMatch]:
        """이미지 쌍의 매칭을 조회합니다. 없으면 None."""

    @abstractmethod
    def put_image_pair_match(self, match: ImagePairMatch) -> None:
        """매칭을 저장합니다."""

    @abstractmethod
    def image_names_of_matches(self) -> List[Tuple[str, str]]:
        """저장된 모든 매칭의 (image1, image2) 목록"""

    @abstractmethod
    def get_camera_intrinsics_prior(self, image_name: str) -> Optional[CameraIntrinsicsPrior]:
        """이미지의 내부 파라미터 prior를 조회합니다."""

    @abstractmethod
    def put_camera_intrinsics_prior(self, image_name: str, prior: CameraIntrinsicsPrior) -> None:
        """이미지의 내부 파라미터 prior를 저장합니다."""

    @abstractmethod
    def image_names_of_camera_intrinsics_priors(self) -> List[str]:
        """prior가 저장된 이미지 이름 목록"""

    def num_matches(self) -> int:
        return len(self.image_names_of_matches())


class InMemoryFeaturesAndMatchesDatabase(FeaturesAndMatchesDatabase):
    """딕셔너리 기반 저장소. 테스트와 합성 데이터용."""

    def __init__(self):
        self._matches: Dict[Tuple[str, str], ImagePairMatch] = {}
        self._priors: Dict[str, CameraIntrinsicsPrior] = {}

    def get_image_pair_match(self, image1: str, image2: str) -> Optional[ImagePairMatch]:
        match = self._matches.get((image1, image2))
        return copy.deepcopy(match) if match is not None else None

    def put_image_pair_match(self, match: ImagePairMatch) -> None:
        self._matches[(match.image1, match.image2)] = copy.deepcopy(match)

    def image_names_of_matches(self) -> List[Tuple[str, str]]:
        return list(self._matches)

    def get_camera_intrinsics_prior(self, image_name: str) -> Optional[CameraIntrinsicsPrior]:
        prior = self._priors.get(image_name)
        return copy.deepcopy(prior) if prior is not None else None

    def put_camera_intrinsics_prior(self, image_name: str, prior: CameraIntrinsicsPrior) -> None:
        self._priors[image_name] = copy.deepcopy(prior)

    def image_names_of_camera_intrinsics_priors(self) -> List[str]:
        return list(self._priors)
