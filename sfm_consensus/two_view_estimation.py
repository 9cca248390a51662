"""
Two-View Estimation Module

이미지 쌍의 대응점으로부터 상대 기하(TwoViewInfo)를 추정하고 매칭을 기하 검증합니다.

처리 흐름:
1. RANSAC으로 기초 행렬 F 추정 (픽셀 좌표, Sampson 거리)
2. 에센셜 행렬 E = K2^T F K1
3. 인라이어로 cheirality check를 하여 (R, t) 복원
4. 호모그래피 인라이어 수 계산 (평면성/회전 판별용)

쌍마다 독립적이므로 여러 쌍을 스레드 풀에서 동시에 처리할 수 있습니다.
각 작업은 자신만의 난수 생성기를 가집니다.
"""

import logging
import cv2
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from .camera import CameraIntrinsicsPrior, pixel_to_normalized, relative_pose_from_essential
from .correspondence import FeatureCorrespondence2D2D, stack_2d2d
from .fundamental_matrix import compute_essential_matrix, estimate_fundamental_matrix
from .homography import estimate_homography
from .matches_database import FeaturesAndMatchesDatabase, ImagePairMatch
from .rng import RandomNumberGenerator
from .sample_consensus import RansacParameters
from .view_graph import TwoViewInfo

logger = logging.getLogger(__name__)


@dataclass
class TwoViewEstimationOptions:
    """
    두 뷰 기하 추정 설정

    Attributes:
        max_sampson_error_pixels: 기초 행렬 인라이어 임계값 (픽셀)
        max_homography_error_pixels: 호모그래피 인라이어 임계값 (픽셀)
        failure_probability: RANSAC 실패 허용 확률
        min_ransac_iterations, max_ransac_iterations: RANSAC 반복 범위
        use_refinement: 기초 행렬 비선형 정제 여부
        min_num_inlier_matches: 검증 통과에 필요한 최소 인라이어 수
    """
    max_sampson_error_pixels: float = 4.0
    max_homography_error_pixels: float = 6.0
    failure_probability: float = 0.001
    min_ransac_iterations: int = 50
    max_ransac_iterations: int = 1000
    use_refinement: bool = True
    min_num_inlier_matches: int = 30

    def __post_init__(self):
        if self.min_num_inlier_matches < 0:
            raise ValueError("min_num_inlier_matches는 음수일 수 없습니다.")

    def ransac_parameters(self, error_threshold: float,
                          rng: Optional[RandomNumberGenerator]) -> RansacParameters:
        return RansacParameters(
            error_threshold=error_threshold,
            failure_probability=self.failure_probability,
            min_iterations=self.min_ransac_iterations,
            max_iterations=self.max_ransac_iterations,
            use_refinement=self.use_refinement,
            rng=rng,
        )


def estimate_two_view_info(options: TwoViewEstimationOptions,
                           prior1: CameraIntrinsicsPrior,
                           prior2: CameraIntrinsicsPrior,
                           correspondences: Sequence[FeatureCorrespondence2D2D],
                           rng: Optional[RandomNumberGenerator] = None
                           ) -> Optional[Tuple[TwoViewInfo, List[int]]]:
    """
    이미지 쌍의 상대 포즈를 추정합니다.

    Args:
        options: 추정 설정
        prior1, prior2: 두 뷰의 내부 파라미터 prior (focal length 필수)
        correspondences: 픽셀 좌표의 대응점
        rng: 난수 생성기

    Returns:
        Tuple[TwoViewInfo, inlier_indices]: 실패 시 None
    """
    if not (prior1.is_calibrated and prior2.is_calibrated):
        logger.debug("보정되지 않은 뷰 쌍은 상대 포즈를 추정할 수 없습니다.")
        return None

    if rng is None:
        rng = RandomNumberGenerator()

    F, summary = estimate_fundamental_matrix(
        options.ransac_parameters(options.max_sampson_error_pixels, rng), correspondences
    )
    if F is None or summary.num_inliers < options.min_num_inlier_matches:
        logger.debug(f"기초 행렬 추정 실패: {summary.message}")
        return None

    K1 = prior1.calibration_matrix()
    K2 = prior2.calibration_matrix()
    E = compute_essential_matrix(F, K1, K2)

    pts1, pts2 = stack_2d2d([correspondences[i] for i in summary.inliers])
    pose = relative_pose_from_essential(E, pixel_to_normalized(pts1, K1),
                                        pixel_to_normalized(pts2, K2))
    if pose is None:
        logger.debug("에센셜 행렬 분해 실패")
        return None
    R, t, _ = pose

    # x2 = R x1 + t 이므로 카메라 2의 중심은 c2 = -R^T t
    position_2 = -R.T @ t
    norm = np.linalg.norm(position_2)
    if norm < 1e-12:
        return None
    rotation_2, _ = cv2.Rodrigues(R)

    H, h_summary = estimate_homography(
        options.ransac_parameters(options.max_homography_error_pixels, rng), correspondences
    )

    info = TwoViewInfo(
        focal_length_1=float(prior1.focal_length),
        focal_length_2=float(prior2.focal_length),
        rotation_2=rotation_2.ravel(),
        position_2=position_2 / norm,
        num_verified_matches=summary.num_inliers,
        num_homography_inliers=h_summary.num_inliers if H is not None else 0,
    )
    return info, list(summary.inliers)


class GeometricVerifier:
    """
    여러 이미지 쌍을 병렬로 기하 검증합니다.

    Attributes:
        options: 두 뷰 추정 설정
        num_threads: 워커 스레드 수
        rng: 작업별 생성기를 spawn할 부모 생성기
    """

    def __init__(self, options: Optional[TwoViewEstimationOptions] = None,
                 num_threads: int = 1,
                 rng: Optional[RandomNumberGenerator] = None):
        if num_threads <= 0:
            raise ValueError(f"num_threads는 양수여야 합니다: {num_threads}")
        self.options = options if options is not None else TwoViewEstimationOptions()
        self.num_threads = num_threads
        self.rng = rng if rng is not None else RandomNumberGenerator()

    def _verify_one(self, match: ImagePairMatch,
                    prior1: CameraIntrinsicsPrior,
                    prior2: CameraIntrinsicsPrior,
                    rng: RandomNumberGenerator) -> Optional[ImagePairMatch]:
        result = estimate_two_view_info(self.options, prior1, prior2, match.correspondences, rng)
        if result is None:
            logger.debug(f"{match.image1}-{match.image2}: 기하 검증 실패")
            return None

        info, inliers = result
        return ImagePairMatch(
            image1=match.image1,
            image2=match.image2,
            twoview_info=info,
            correspondences=[match.correspondences[i] for i in inliers],
        )

    def verify(self, candidates: Sequence[ImagePairMatch],
               priors: Mapping[str, CameraIntrinsicsPrior]) -> List[ImagePairMatch]:
        """
        후보 매칭을 검증합니다.

        Args:
            candidates: 기하 검증 전의 매칭 (twoview_info는 무시)
            priors: 이미지 이름 → 내부 파라미터 prior

        Returns:
            List[ImagePairMatch]: 검증을 통과한 매칭 (입력 순서 유지)
        """
        rngs = self.rng.spawn(len(candidates))
        empty = CameraIntrinsicsPrior()
        priors1 = [priors.get(match.image1, empty) for match in candidates]
        priors2 = [priors.get(match.image2, empty) for match in candidates]

        with ThreadPoolExecutor(max_workers=self.num_threads) as executor:
            results = list(executor.map(self._verify_one, candidates, priors1, priors2, rngs))

        verified = [match for match in results if match is not None]
        logger.info(f"{len(candidates)}개 이미지 쌍 중 {len(verified)}개가 기하 검증을 통과했습니다.")
        return verified

    def verify_and_store(self, candidates: Sequence[ImagePairMatch],
                         database: FeaturesAndMatchesDatabase) -> int:
        """검증된 매칭을 저장소에 기록하고 그 수를 반환합니다."""
        priors = {}
        for name in database.image_names_of_camera_intrinsics_priors():
            priors[name] = database.get_camera_intrinsics_prior(name)

        verified = self.verify(candidates, priors)
        for match in verified:
            database.put_image_pair_match(match)
        return len(verified)
