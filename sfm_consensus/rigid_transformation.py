"""
Rigid Transformation (2D-3D) Estimation Module

알려진 3D 점과 그 정규화 이미지 좌표로부터 카메라의 강체 변환(R, t)을 추정합니다.

    x ~ R X + t

최소 샘플은 3개 (P3P)이며, 한 샘플에서 최대 4개의 후보 해가 나옵니다.

대응점마다 카메라가 다른 비중심 카메라 리그는 NonCentralRigidTransformation2D3DEstimator로
픽셀 재투영 에러 기준으로 추정합니다.
"""

import logging
import cv2
import numpy as np
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
from scipy.optimize import least_squares

from .correspondence import (
    CameraAndFeatureCorrespondence2D3D,
    FeatureCorrespondence2D3D,
    stack_2d3d,
    stack_camera_2d3d,
)
from .sample_consensus import (
    ModelEstimator,
    RansacParameters,
    RansacSummary,
    SampleConsensusEstimator,
)

logger = logging.getLogger(__name__)


@dataclass
class RigidTransformation:
    """강체 변환 X_cam = R X + t"""
    rotation: np.ndarray        # 3x3 회전 행렬
    translation: np.ndarray     # (3,) 평행이동 벡터

    def apply(self, points_3d: np.ndarray) -> np.ndarray:
        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        return points_3d @ self.rotation.T + self.translation


def _reprojection_errors(rotation: np.ndarray, translation: np.ndarray,
                         features: np.ndarray, world_points: np.ndarray) -> np.ndarray:
    points_cam = world_points @ rotation.T + translation
    depth = points_cam[:, 2]
    errors = np.full(len(features), np.inf)
    in_front = depth > 0
    projected = points_cam[in_front, :2] / depth[in_front, None]
    errors[in_front] = np.linalg.norm(projected - features[in_front], axis=1)
    return errors


class RigidTransformation2D3DEstimator(ModelEstimator):
    """
    P3P 기반 강체 변환 추정기

    잔차는 정규화 이미지 좌표에서의 재투영 거리입니다.
    카메라 뒤에 있는 점은 무한대 잔차를 가집니다.
    """

    sample_size = 3

    def estimate_model(self, data: Sequence[FeatureCorrespondence2D3D]) -> List[RigidTransformation]:
        features, world_points = stack_2d3d(data)

        try:
            num_solutions, rvecs, tvecs = cv2.solveP3P(
                np.ascontiguousarray(world_points),
                np.ascontiguousarray(features),
                np.eye(3),
                np.zeros((4, 1)),
                flags=cv2.SOLVEPNP_P3P
            )
        except cv2.error:
            # 공선점 등 퇴화 샘플
            return []

        models = []
        for rvec, tvec in zip(rvecs[:num_solutions], tvecs[:num_solutions]):
            R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
            t = np.asarray(tvec, dtype=np.float64).ravel()
            if np.all(np.isfinite(R)) and np.all(np.isfinite(t)):
                models.append(RigidTransformation(rotation=R, translation=t))
        return models

    def error(self, datum: FeatureCorrespondence2D3D, model: RigidTransformation) -> float:
        return float(self.errors([datum], model)[0])

    def errors(self, data: Sequence[FeatureCorrespondence2D3D],
               model: RigidTransformation) -> np.ndarray:
        features, world_points = stack_2d3d(data)
        return _reprojection_errors(model.rotation, model.translation, features, world_points)

    def refine_model(self, data: Sequence[FeatureCorrespondence2D3D],
                     model: RigidTransformation) -> Optional[RigidTransformation]:
        """
        인라이어의 재투영 에러를 최소화하도록 (rvec, t)를 비선형 최적화합니다.
        """
        features, world_points = stack_2d3d(data)
        rvec, _ = cv2.Rodrigues(model.rotation)
        x0 = np.hstack([rvec.ravel(), model.translation])

        def residuals(params: np.ndarray) -> np.ndarray:
            R, _ = cv2.Rodrigues(params[:3].reshape(3, 1))
            points_cam = world_points @ R.T + params[3:6]
            # 깊이가 0에 가까우면 잔차가 발산하므로 하한을 둡니다.
            depth = np.maximum(points_cam[:, 2], 1e-9)
            projected = points_cam[:, :2] / depth[:, None]
            return (projected - features).ravel()

        result = least_squares(residuals, x0, method="trf", max_nfev=50)
        if not np.all(np.isfinite(result.x)):
            return None

        R, _ = cv2.Rodrigues(result.x[:3].reshape(3, 1))
        return RigidTransformation(rotation=R, translation=result.x[3:6].copy())


def estimate_rigid_transformation_2d_3d(
        params: RansacParameters,
        correspondences: Sequence[FeatureCorrespondence2D3D]
) -> Tuple[Optional[RigidTransformation], RansacSummary]:
    """
    2D-3D 대응점으로부터 강체 변환을 RANSAC으로 추정합니다.

    Args:
        params: RANSAC 설정 (error_threshold는 정규화 좌표 단위)
        correspondences: 정규화 이미지 좌표와 3D 점의 대응

    Returns:
        Tuple[RigidTransformation, RansacSummary]: 실패 시 변환은 None
    """
    ransac = SampleConsensusEstimator(RigidTransformation2D3DEstimator(), params)
    return ransac.estimate(correspondences)


def _skew(vectors: np.ndarray) -> np.ndarray:
    """Nx3 벡터들의 외적 행렬 [v]_x (Nx3x3)"""
    skew = np.zeros((len(vectors), 3, 3))
    skew[:, 0, 1], skew[:, 0, 2] = -vectors[:, 2], vectors[:, 1]
    skew[:, 1, 0], skew[:, 1, 2] = vectors[:, 2], -vectors[:, 0]
    skew[:, 2, 0], skew[:, 2, 1] = -vectors[:, 1], vectors[:, 0]
    return skew


def _non_central_projections(rotation: np.ndarray, translation: np.ndarray,
                             camera_rotations: np.ndarray, camera_positions: np.ndarray,
                             Ks: np.ndarray, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """리그 변환 후 각 카메라로 투영한 (깊이, 픽셀 좌표)"""
    points_rig = points @ rotation.T + translation
    points_cam = np.einsum('nij,nj->ni', camera_rotations, points_rig - camera_positions)
    pixels_h = np.einsum('nij,nj->ni', Ks, points_cam)
    depth = points_cam[:, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        pixels = pixels_h[:, :2] / pixels_h[:, 2:3]
    return depth, pixels


class NonCentralRigidTransformation2D3DEstimator(ModelEstimator):
    """
    비중심 카메라(카메라 리그)의 강체 변환 추정기

    각 대응점은 리그 좌표계에 놓인 자신의 카메라를 가지며,
    월드 점 X는 X_rig = R X + t 로 리그 좌표계에 옮겨진 뒤 그 카메라로 투영됩니다.

    최소 해는 광선 제약식 d × (R X + t - o) = 0 의 선형 해(6점)를
    SO(3)로 사영한 뒤 t를 다시 푸는 방식입니다.
    모든 카메라 중심이 같으면(중심 카메라) 스케일이 정해지지 않으므로 퇴화 샘플이 됩니다.
    잔차는 픽셀 단위 재투영 거리이며, 카메라 뒤의 점은 무한대입니다.
    """

    sample_size = 6

    def estimate_model(self, data: Sequence[CameraAndFeatureCorrespondence2D3D]
                       ) -> List[RigidTransformation]:
        camera_rotations, camera_positions, Ks, observations, points = stack_camera_2d3d(data)

        # 리그 좌표계의 광선 방향 d = R_cam^T K^-1 [u, v, 1]
        pixels_h = np.hstack([observations, np.ones((len(observations), 1))])
        rays_cam = np.einsum('nij,nj->ni', np.linalg.inv(Ks), pixels_h)
        directions = np.einsum('nji,nj->ni', camera_rotations, rays_cam)
        directions /= np.linalg.norm(directions, axis=1, keepdims=True)
        skew = _skew(directions)

        # [d]_x (R X + t) = [d]_x o,  미지수 p = [vec(R) (행 우선), t]
        n = len(points)
        design = np.zeros((n, 3, 12))
        for row in range(3):
            design[:, :, 3 * row:3 * row + 3] = skew[:, :, row:row + 1] * points[:, None, :]
        design[:, :, 9:12] = skew
        rhs = np.einsum('nij,nj->ni', skew, camera_positions)

        design = design.reshape(-1, 12)
        singular_values = np.linalg.svd(design, compute_uv=False)
        if singular_values[-1] < 1e-9 * singular_values[0]:
            return []
        solution = np.linalg.lstsq(design, rhs.ravel(), rcond=None)[0]

        U, _, Vt = np.linalg.svd(solution[:9].reshape(3, 3))
        R = U @ np.diag([1.0, 1.0, np.linalg.det(U @ Vt)]) @ Vt

        # R을 고정하고 t만 다시 풀기: [d]_x t = [d]_x (o - R X)
        rhs_t = np.einsum('nij,nj->ni', skew, camera_positions - points @ R.T)
        t, _, rank_t, _ = np.linalg.lstsq(skew.reshape(-1, 3), rhs_t.ravel(), rcond=None)
        if rank_t < 3 or not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
            return []
        return [RigidTransformation(rotation=R, translation=t)]

    def error(self, datum: CameraAndFeatureCorrespondence2D3D, model: RigidTransformation) -> float:
        return float(self.errors([datum], model)[0])

    def errors(self, data: Sequence[CameraAndFeatureCorrespondence2D3D],
               model: RigidTransformation) -> np.ndarray:
        camera_rotations, camera_positions, Ks, observations, points = stack_camera_2d3d(data)
        depth, pixels = _non_central_projections(model.rotation, model.translation,
                                                 camera_rotations, camera_positions, Ks, points)
        errors = np.full(len(observations), np.inf)
        in_front = depth > 0
        errors[in_front] = np.linalg.norm(pixels[in_front] - observations[in_front], axis=1)
        return errors

    def refine_model(self, data: Sequence[CameraAndFeatureCorrespondence2D3D],
                     model: RigidTransformation) -> Optional[RigidTransformation]:
        """인라이어의 픽셀 재투영 에러를 최소화하도록 (rvec, t)를 비선형 최적화합니다."""
        camera_rotations, camera_positions, Ks, observations, points = stack_camera_2d3d(data)
        rvec, _ = cv2.Rodrigues(model.rotation)
        x0 = np.hstack([rvec.ravel(), model.translation])

        def residuals(params: np.ndarray) -> np.ndarray:
            R, _ = cv2.Rodrigues(params[:3].reshape(3, 1))
            points_rig = points @ R.T + params[3:6]
            points_cam = np.einsum('nij,nj->ni', camera_rotations, points_rig - camera_positions)
            pixels_h = np.einsum('nij,nj->ni', Ks, points_cam)
            depth = np.maximum(pixels_h[:, 2], 1e-9)
            return (pixels_h[:, :2] / depth[:, None] - observations).ravel()

        result = least_squares(residuals, x0, method="trf", max_nfev=100)
        if not np.all(np.isfinite(result.x)):
            return None

        R, _ = cv2.Rodrigues(result.x[:3].reshape(3, 1))
        return RigidTransformation(rotation=R, translation=result.x[3:6].copy())


def estimate_non_central_rigid_transformation_2d_3d(
        params: RansacParameters,
        correspondences: Sequence[CameraAndFeatureCorrespondence2D3D]
) -> Tuple[Optional[RigidTransformation], RansacSummary]:
    """
    카메라 리그의 2D-3D 대응점으로부터 강체 변환을 RANSAC으로 추정합니다.

    Args:
        params: RANSAC 설정 (error_threshold는 픽셀 단위)
        correspondences: 카메라, 픽셀 관측, 월드 3D 점의 대응

    Returns:
        Tuple[RigidTransformation, RansacSummary]: 실패 시 변환은 None
    """
    ransac = SampleConsensusEstimator(NonCentralRigidTransformation2D3DEstimator(), params)
    return ransac.estimate(correspondences)
