"""
Fundamental Matrix Module

두 이미지 사이의 기하학적 관계를 정의하는 기초 행렬(Fundamental Matrix)을 계산합니다.

두 이미지 사이의 기하학적 관계는 x'^T F x = 0 와 같은 기초 행렬 식에 의해 정의됩니다.
여기서 x와 x'는 각각 첫 번째와 두 번째 이미지의 대응점입니다.
"""

import logging
import cv2
import numpy as np
from typing import List, Optional, Sequence, Tuple
from scipy.optimize import least_squares

from .correspondence import FeatureCorrespondence2D2D, stack_2d2d
from .sample_consensus import (
    ModelEstimator,
    RansacParameters,
    RansacSummary,
    SampleConsensusEstimator,
)

logger = logging.getLogger(__name__)


def _algebraic_and_gradient(F: np.ndarray, pts1: np.ndarray,
                            pts2: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    pts1_h = np.hstack([pts1, np.ones((len(pts1), 1))])
    pts2_h = np.hstack([pts2, np.ones((len(pts2), 1))])
    Fx1 = pts1_h @ F.T      # 각 행이 F x
    Ftx2 = pts2_h @ F       # 각 행이 F^T x'
    algebraic = np.sum(pts2_h * Fx1, axis=1)
    gradient_sq = Fx1[:, 0] ** 2 + Fx1[:, 1] ** 2 + Ftx2[:, 0] ** 2 + Ftx2[:, 1] ** 2
    return algebraic, gradient_sq


def sampson_distances(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """
    Sampson 거리 (기하 에러의 1차 근사, 픽셀 단위)를 계산합니다.

        d = |x'^T F x| / sqrt((Fx)_1^2 + (Fx)_2^2 + (F^T x')_1^2 + (F^T x')_2^2)
    """
    algebraic, gradient_sq = _algebraic_and_gradient(F, pts1, pts2)
    distances = np.full(len(pts1), np.inf)
    valid = gradient_sq > 1e-24
    distances[valid] = np.abs(algebraic[valid]) / np.sqrt(gradient_sq[valid])
    return distances


def enforce_rank2(F: np.ndarray) -> np.ndarray:
    """가장 작은 특이값을 0으로 만들고 Frobenius norm을 1로 정규화합니다."""
    U, S, Vt = np.linalg.svd(F)
    S[2] = 0.0
    F = U @ np.diag(S) @ Vt
    return F / np.linalg.norm(F)


class FundamentalMatrixEstimator(ModelEstimator):
    """
    기초 행렬 추정기

    8-point 알고리즘으로 최소 샘플에서 후보를 계산하고, Sampson 거리로 평가합니다.

    에피폴라 제약식:
        두 이미지 사이의 기하학적 관계는 x'^T F x = 0 와 같은
        기초 행렬(Fundamental Matrix) 식에 의해 정의됩니다.
    """

    sample_size = 8

    def estimate_model(self, data: Sequence[FeatureCorrespondence2D2D]) -> List[np.ndarray]:
        pts1, pts2 = stack_2d2d(data)
        try:
            F, _ = cv2.findFundamentalMat(pts1, pts2, cv2.FM_8POINT)
        except cv2.error:
            return []

        if F is None or F.shape != (3, 3) or not np.all(np.isfinite(F)):
            return []
        if np.linalg.norm(F) < 1e-12:
            return []
        return [F / np.linalg.norm(F)]

    def error(self, datum: FeatureCorrespondence2D2D, model: np.ndarray) -> float:
        return float(self.errors([datum], model)[0])

    def errors(self, data: Sequence[FeatureCorrespondence2D2D], model: np.ndarray) -> np.ndarray:
        pts1, pts2 = stack_2d2d(data)
        return sampson_distances(model, pts1, pts2)

    def refine_model(self, data: Sequence[FeatureCorrespondence2D2D],
                     model: np.ndarray) -> Optional[np.ndarray]:
        """
        인라이어의 Sampson 에러를 최소화하도록 F를 비선형 최적화한 뒤 rank 2를 강제합니다.
        """
        if len(data) < self.sample_size:
            return None
        pts1, pts2 = stack_2d2d(data)

        def residuals(f: np.ndarray) -> np.ndarray:
            algebraic, gradient_sq = _algebraic_and_gradient(f.reshape(3, 3), pts1, pts2)
            return algebraic / np.sqrt(gradient_sq + 1e-24)

        result = least_squares(residuals, model.ravel(), method="trf", max_nfev=100)
        if not np.all(np.isfinite(result.x)):
            return None
        try:
            return enforce_rank2(result.x.reshape(3, 3))
        except np.linalg.LinAlgError:
            return None


def estimate_fundamental_matrix(params: RansacParameters,
                                correspondences: Sequence[FeatureCorrespondence2D2D]
                                ) -> Tuple[Optional[np.ndarray], RansacSummary]:
    """
    대응점으로부터 기초 행렬을 RANSAC으로 계산합니다.

    Args:
        params: RANSAC 설정 (error_threshold는 픽셀 단위 Sampson 거리)
        correspondences: 픽셀 좌표의 대응점

    Returns:
        Tuple[F, RansacSummary]: 실패 시 F는 None
    """
    ransac = SampleConsensusEstimator(FundamentalMatrixEstimator(), params)
    return ransac.estimate(correspondences)


def compute_essential_matrix(F: np.ndarray, K1: np.ndarray,
                             K2: Optional[np.ndarray] = None) -> np.ndarray:
    """
    기초 행렬로부터 에센셜 행렬을 계산합니다.

    E = K'^T F K

    Args:
        F: 기초 행렬 (3x3)
        K1: 첫 번째 카메라 내부 파라미터 행렬 (3x3)
        K2: 두 번째 카메라 내부 파라미터 행렬 (없으면 K1과 같다고 가정)

    Returns:
        np.ndarray: 에센셜 행렬 (3x3)
    """
    if K2 is None:
        K2 = K1
    E = K2.T @ F @ K1
    return E


def verify_epipolar_constraint(pts1: np.ndarray,
                               pts2: np.ndarray,
                               F: np.ndarray) -> Tuple[float, np.ndarray]:
    """
    에피폴라 제약식 x'^T F x = 0 을 검증합니다.

    Args:
        pts1, pts2: 대응점
        F: 기초 행렬

    Returns:
        Tuple[float, np.ndarray]: 평균 Sampson 에러와 각 점의 에러
    """
    errors = sampson_distances(F, np.asarray(pts1, dtype=np.float64),
                               np.asarray(pts2, dtype=np.float64))
    return float(np.mean(errors)), errors
