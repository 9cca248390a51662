"""
Bundle Adjustment Module (Simplified)

번들 조정은 모든 카메라 파라미터와 3D 점을 동시에 최적화하여
재투영 에러를 최소화합니다.

이 구현은 scipy.optimize를 사용한 간단한 버전이며,
재구성 추정기가 사용하는 번들 조정 인터페이스(optimize)를 구현합니다.
실제 대규모 프로젝트에서는 Ceres Solver나 g2o를 권장합니다.
"""

import logging
import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from typing import Iterable, List, Tuple
from dataclasses import dataclass

from .reconstruction import Reconstruction

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentOptions:
    """
    번들 조정 설정

    Attributes:
        max_num_iterations: 최대 함수 평가 횟수
        function_tolerance: 수렴 판정 ftol
        loss: scipy least_squares 손실 함수 ("linear", "huber", "cauchy" 등)
        robust_loss_width: 강건 손실의 스케일 (픽셀)
    """
    max_num_iterations: int = 100
    function_tolerance: float = 1e-6
    loss: str = "huber"
    robust_loss_width: float = 2.0


@dataclass
class BundleAdjustmentSummary:
    """번들 조정 결과"""
    success: bool
    initial_cost: float = 0.0  # 최적화 전 RMS 재투영 에러
    final_cost: float = 0.0    # 최적화 후 RMS 재투영 에러
    num_views: int = 0
    num_tracks: int = 0


class BundleAdjuster:
    """
    번들 조정 클래스

    비선형 최소제곱법을 사용하여 카메라 포즈와 3D 점을 동시에 최적화합니다.
    내부 파라미터(K)는 고정합니다.

    최소화 대상:
        sum_i sum_j || x_ij - π(C_i, X_j) ||^2

    여기서:
        - x_ij: j번째 점의 i번째 카메라에서의 2D 관측
        - π: 투영 함수
        - C_i: i번째 카메라 파라미터 (rvec, tvec)
        - X_j: j번째 3D 점
    """

    def __init__(self, options: BundleAdjustmentOptions = None):
        self.options = options if options is not None else BundleAdjustmentOptions()

    @staticmethod
    def compute_residuals(params: np.ndarray,
                          n_cameras: int,
                          n_points: int,
                          intrinsics: np.ndarray,
                          camera_indices: np.ndarray,
                          point_indices: np.ndarray,
                          points_2d: np.ndarray) -> np.ndarray:
        """
        잔차(residuals)를 계산합니다.

        Args:
            params: 모든 파라미터 벡터 (카메라 + 3D 점)
            n_cameras: 카메라 수
            n_points: 3D 점 수
            intrinsics: 카메라별 (fx, fy, cx, cy)
            camera_indices: 각 관측에 대한 카메라 인덱스
            point_indices: 각 관측에 대한 점 인덱스
            points_2d: 2D 관측값

        Returns:
            np.ndarray: 잔차 벡터
        """
        camera_params = params[:n_cameras * 6].reshape((n_cameras, 6))
        points_3d = params[n_cameras * 6:].reshape((n_points, 3))

        rotations = np.array([cv2.Rodrigues(camera_params[i, :3].reshape(3, 1))[0]
                              for i in range(n_cameras)])

        # 변환 및 투영
        R = rotations[camera_indices]
        points_cam = np.einsum("nij,nj->ni", R, points_3d[point_indices])
        points_cam += camera_params[camera_indices, 3:6]
        depth = points_cam[:, 2]
        depth = np.where(np.abs(depth) < 1e-9, 1e-9, depth)

        K = intrinsics[camera_indices]
        u = K[:, 0] * points_cam[:, 0] / depth + K[:, 2]
        v = K[:, 1] * points_cam[:, 1] / depth + K[:, 3]

        return np.column_stack([u - points_2d[:, 0], v - points_2d[:, 1]]).ravel()

    @staticmethod
    def bundle_adjustment_sparsity(n_cameras: int, n_points: int,
                                   camera_indices: np.ndarray,
                                   point_indices: np.ndarray) -> lil_matrix:
        """
        자코비안 행렬의 희소 구조를 계산합니다.

        번들 조정의 자코비안은 매우 희소하므로,
        이를 활용하여 계산 효율을 높입니다.
        """
        m = len(camera_indices) * 2  # 관측 수 * 2 (x, y)
        n = n_cameras * 6 + n_points * 3  # 파라미터 수

        A = lil_matrix((m, n), dtype=int)
        rows = np.arange(len(camera_indices))

        # 카메라 파라미터에 대한 미분
        for s in range(6):
            A[2 * rows, camera_indices * 6 + s] = 1
            A[2 * rows + 1, camera_indices * 6 + s] = 1

        # 3D 점에 대한 미분
        for s in range(3):
            A[2 * rows, n_cameras * 6 + point_indices * 3 + s] = 1
            A[2 * rows + 1, n_cameras * 6 + point_indices * 3 + s] = 1

        return A

    def _collect(self, reconstruction: Reconstruction, view_ids: Iterable[int],
                 track_ids: Iterable[int]) -> Tuple[List[int], List[int], list]:
        view_ids = [v for v in view_ids if reconstruction.view(v) is not None]
        view_index = {view_id: i for i, view_id in enumerate(view_ids)}
        observations = []
        used_tracks = []
        for track_id in track_ids:
            track = reconstruction.track(track_id)
            if track is None:
                continue
            track_obs = [(view_index[v], feature) for v, feature in track.observations.items()
                         if v in view_index]
            if len(track_obs) < 2:
                continue
            point_index = len(used_tracks)
            used_tracks.append(track_id)
            observations.extend((cam, point_index, feature) for cam, feature in track_obs)
        return view_ids, used_tracks, observations

    def optimize(self, reconstruction: Reconstruction,
                 view_ids: Iterable[int],
                 track_ids: Iterable[int]) -> BundleAdjustmentSummary:
        """
        번들 조정을 수행하고 결과를 재구성에 반영합니다.

        Args:
            reconstruction: 최적화할 재구성
            view_ids: 최적화할 (추정된) 뷰
            track_ids: 최적화할 (추정된) 트랙

        Returns:
            BundleAdjustmentSummary: 최적화 결과
        """
        view_ids, track_ids, observations = self._collect(reconstruction, view_ids, track_ids)
        if len(view_ids) < 2 or not observations:
            return BundleAdjustmentSummary(success=False)

        n_cameras = len(view_ids)
        n_points = len(track_ids)

        camera_params = np.zeros((n_cameras, 6))
        intrinsics = np.zeros((n_cameras, 4))
        for i, view_id in enumerate(view_ids):
            camera = reconstruction.view(view_id).camera
            camera_params[i, :3] = camera.orientation
            camera_params[i, 3:6] = camera.translation
            intrinsics[i] = [camera.K[0, 0], camera.K[1, 1], camera.K[0, 2], camera.K[1, 2]]

        points_3d = np.array([reconstruction.track(t).point for t in track_ids], dtype=np.float64)
        camera_indices = np.array([o[0] for o in observations], dtype=int)
        point_indices = np.array([o[1] for o in observations], dtype=int)
        points_2d = np.array([o[2] for o in observations], dtype=np.float64)

        # 초기 파라미터 벡터 구성
        x0 = np.hstack([camera_params.ravel(), points_3d.ravel()])
        args = (n_cameras, n_points, intrinsics, camera_indices, point_indices, points_2d)

        initial_residuals = self.compute_residuals(x0, *args)
        initial_error = float(np.sqrt(np.mean(initial_residuals ** 2)))

        # 희소 자코비안 구조
        A = self.bundle_adjustment_sparsity(n_cameras, n_points, camera_indices, point_indices)

        # 최적화 수행
        result = least_squares(
            self.compute_residuals,
            x0,
            jac_sparsity=A,
            verbose=0,
            x_scale='jac',
            ftol=self.options.function_tolerance,
            method='trf',
            loss=self.options.loss,
            f_scale=self.options.robust_loss_width,
            max_nfev=self.options.max_num_iterations,
            args=args
        )

        final_error = float(np.sqrt(np.mean(result.fun ** 2)))
        if not np.all(np.isfinite(result.x)) or final_error > initial_error:
            logger.warning(f"번들 조정이 개선되지 않아 결과를 버립니다 "
                           f"({initial_error:.4f} → {final_error:.4f})")
            return BundleAdjustmentSummary(
                success=False, initial_cost=initial_error, final_cost=initial_error,
                num_views=n_cameras, num_tracks=n_points
            )

        # 결과 반영
        optimized_cameras = result.x[:n_cameras * 6].reshape((n_cameras, 6))
        optimized_points = result.x[n_cameras * 6:].reshape((n_points, 3))
        for i, view_id in enumerate(view_ids):
            camera = reconstruction.view(view_id).camera
            camera.orientation = optimized_cameras[i, :3].copy()
            R = camera.rotation_matrix
            camera.position = -R.T @ optimized_cameras[i, 3:6]
        for j, track_id in enumerate(track_ids):
            reconstruction.track(track_id).point = optimized_points[j].copy()

        logger.debug(f"번들 조정: 카메라 {n_cameras}개, 점 {n_points}개, "
                     f"재투영 에러 {initial_error:.4f} → {final_error:.4f} 픽셀")

        return BundleAdjustmentSummary(
            success=bool(result.success),
            initial_cost=initial_error,
            final_cost=final_error,
            num_views=n_cameras,
            num_tracks=n_points
        )
