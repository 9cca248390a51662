"""
Homography Estimation Module

평면 장면 또는 순수 회전에서 두 이미지 사이의 호모그래피 x2 ~ H x1 을 추정합니다.
최소 샘플은 4개이며, 세 점이 한 직선 위에 있으면 퇴화 샘플로 처리합니다.
"""

import itertools
import logging
import cv2
import numpy as np
from typing import List, Optional, Sequence, Tuple

from .correspondence import FeatureCorrespondence2D2D, stack_2d2d
from .sample_consensus import (
    ModelEstimator,
    RansacParameters,
    RansacSummary,
    SampleConsensusEstimator,
)

logger = logging.getLogger(__name__)

# 세 점이 만드는 삼각형 넓이(x2)가 이 값보다 작으면 공선으로 봅니다.
COLLINEAR_TOLERANCE = 1e-8


def has_collinear_triple(points: np.ndarray, tolerance: float = COLLINEAR_TOLERANCE) -> bool:
    for i, j, k in itertools.combinations(range(len(points)), 3):
        a = points[j] - points[i]
        b = points[k] - points[i]
        if abs(a[0] * b[1] - a[1] * b[0]) < tolerance:
            return True
    return False


def transfer_errors(H: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """정방향 전이 에러 ||x2 - H x1||"""
    pts1_h = np.hstack([pts1, np.ones((len(pts1), 1))])
    mapped = pts1_h @ H.T
    w = mapped[:, 2]
    errors = np.full(len(pts1), np.inf)
    valid = np.abs(w) > 1e-12
    projected = mapped[valid, :2] / w[valid, None]
    errors[valid] = np.linalg.norm(projected - pts2[valid], axis=1)
    return errors


class HomographyEstimator(ModelEstimator):
    """4점 호모그래피 추정기"""

    sample_size = 4

    def estimate_model(self, data: Sequence[FeatureCorrespondence2D2D]) -> List[np.ndarray]:
        pts1, pts2 = stack_2d2d(data)
        if has_collinear_triple(pts1) or has_collinear_triple(pts2):
            return []

        try:
            H = cv2.getPerspectiveTransform(pts1.astype(np.float32), pts2.astype(np.float32))
        except cv2.error:
            return []

        H = np.asarray(H, dtype=np.float64)
        if not np.all(np.isfinite(H)) or abs(H[2, 2]) < 1e-12:
            return []
        return [H / H[2, 2]]

    def error(self, datum: FeatureCorrespondence2D2D, model: np.ndarray) -> float:
        return float(self.errors([datum], model)[0])

    def errors(self, data: Sequence[FeatureCorrespondence2D2D], model: np.ndarray) -> np.ndarray:
        pts1, pts2 = stack_2d2d(data)
        return transfer_errors(model, pts1, pts2)

    def refine_model(self, data: Sequence[FeatureCorrespondence2D2D],
                     model: np.ndarray) -> Optional[np.ndarray]:
        """
        인라이어 전체로 DLT + Levenberg-Marquardt 정제를 수행합니다.
        (method=0 이면 OpenCV가 RANSAC 없이 최소제곱 후 LM 정제)
        """
        if len(data) < self.sample_size:
            return None
        pts1, pts2 = stack_2d2d(data)
        try:
            H, _ = cv2.findHomography(pts1, pts2, 0)
        except cv2.error:
            return None
        if H is None or H.shape != (3, 3) or abs(H[2, 2]) < 1e-12:
            return None
        return H / H[2, 2]


def estimate_homography(params: RansacParameters,
                        correspondences: Sequence[FeatureCorrespondence2D2D]
                        ) -> Tuple[Optional[np.ndarray], RansacSummary]:
    """
    2D-2D 대응점으로부터 호모그래피를 RANSAC으로 추정합니다.

    Returns:
        Tuple[H, RansacSummary]: 실패 시 H는 None
    """
    ransac = SampleConsensusEstimator(HomographyEstimator(), params)
    return ransac.estimate(correspondences)
