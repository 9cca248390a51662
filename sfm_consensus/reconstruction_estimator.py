"""
Reconstruction Estimator Module

뷰 그래프와 트랙이 준비된 재구성에서 카메라 포즈와 3D 점을 추정합니다.

증분식(incremental) 재구성 흐름:
1. 뷰 그래프의 가장 큰 연결 요소 선택
2. 검증된 매칭이 가장 많은 엣지로 초기 두 카메라 설정
3. 추정된 카메라 두 개 이상에서 관측된 트랙 삼각측량
4. 2D-3D 대응으로 나머지 카메라를 하나씩 등록 (P3P + RANSAC)
5. (선택) 번들 조정 후 재투영 에러가 큰 트랙 제외
"""

import logging
import time
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set

from .bundle_adjustment import BundleAdjuster, BundleAdjustmentOptions
from .camera import Camera
from .correspondence import FeatureCorrespondence2D3D
from .reconstruction import Reconstruction
from .rigid_transformation import estimate_rigid_transformation_2d_3d
from .rng import RandomNumberGenerator
from .sample_consensus import RansacParameters
from .triangulation import Triangulator, compute_reprojection_errors
from .view_graph import ViewGraph

logger = logging.getLogger(__name__)


class ReconstructionEstimatorType(Enum):
    """재구성 추정 방식"""
    INCREMENTAL = "incremental"


@dataclass
class ReconstructionEstimatorOptions:
    """
    재구성 추정 설정

    Attributes:
        reconstruction_estimator_type: 추정 방식
        min_num_two_view_inliers: 초기 쌍으로 쓸 수 있는 엣지의 최소 검증 매칭 수
        max_reprojection_error_pixels: 삼각측량/트랙 필터링 재투영 에러 임계값
        min_triangulation_angle_degrees: 최소 삼각측량 각도
        absolute_pose_reprojection_error_threshold: 카메라 등록 RANSAC 임계값 (픽셀)
        min_num_absolute_pose_inliers: 카메라 등록에 필요한 최소 인라이어 수
        ransac_failure_probability: 카메라 등록 RANSAC 실패 허용 확률
        bundle_adjustment: 번들 조정 수행 여부
        rng: 난수 생성기 (None이면 새로 생성)
    """
    reconstruction_estimator_type: ReconstructionEstimatorType = ReconstructionEstimatorType.INCREMENTAL
    min_num_two_view_inliers: int = 30
    max_reprojection_error_pixels: float = 4.0
    min_triangulation_angle_degrees: float = 1.0
    absolute_pose_reprojection_error_threshold: float = 4.0
    min_num_absolute_pose_inliers: int = 12
    ransac_failure_probability: float = 0.001
    ransac_min_iterations: int = 50
    ransac_max_iterations: int = 1000
    bundle_adjustment: bool = True
    bundle_adjustment_options: BundleAdjustmentOptions = field(default_factory=BundleAdjustmentOptions)
    rng: Optional[RandomNumberGenerator] = None

    def __post_init__(self):
        if self.max_reprojection_error_pixels <= 0:
            raise ValueError("max_reprojection_error_pixels는 양수여야 합니다.")
        if self.absolute_pose_reprojection_error_threshold <= 0:
            raise ValueError("absolute_pose_reprojection_error_threshold는 양수여야 합니다.")
        if self.min_num_absolute_pose_inliers < 3:
            raise ValueError("min_num_absolute_pose_inliers는 3 이상이어야 합니다.")


@dataclass
class ReconstructionEstimatorSummary:
    """재구성 추정 결과"""
    success: bool = False
    estimated_views: List[int] = field(default_factory=list)
    estimated_tracks: List[int] = field(default_factory=list)
    pose_estimation_time: float = 0.0
    triangulation_time: float = 0.0
    bundle_adjustment_time: float = 0.0
    total_time: float = 0.0
    message: str = ""


class ReconstructionEstimator(ABC):
    """
    재구성 추정기 인터페이스

    estimate()는 추정에 성공한 뷰와 트랙의 is_estimated를 True로 설정하고,
    그 id 목록을 요약에 담아 반환합니다.
    """

    @abstractmethod
    def estimate(self, view_graph: ViewGraph,
                 reconstruction: Reconstruction) -> ReconstructionEstimatorSummary:
        """뷰 그래프와 트랙으로부터 카메라와 3D 점을 추정합니다."""


class IncrementalReconstructionEstimator(ReconstructionEstimator):
    """
    증분식 재구성 추정기

    Example:
        >>> estimator = IncrementalReconstructionEstimator(ReconstructionEstimatorOptions())
        >>> summary = estimator.estimate(view_graph, reconstruction)
        >>> print(f"추정된 카메라: {len(summary.estimated_views)}개")
    """

    def __init__(self, options: Optional[ReconstructionEstimatorOptions] = None):
        self.options = options if options is not None else ReconstructionEstimatorOptions()
        self.rng = self.options.rng if self.options.rng is not None else RandomNumberGenerator()
        self.triangulator = Triangulator(
            max_reprojection_error=self.options.max_reprojection_error_pixels,
            min_triangulation_angle=self.options.min_triangulation_angle_degrees
        )
        self.bundle_adjuster = BundleAdjuster(self.options.bundle_adjustment_options)

    def estimate(self, view_graph: ViewGraph,
                 reconstruction: Reconstruction) -> ReconstructionEstimatorSummary:
        """
        가장 큰 연결 요소를 증분식으로 재구성합니다.

        Args:
            view_graph: 검증된 상대 기하
            reconstruction: 뷰와 트랙 (포즈/점은 이 안에서 갱신됨)

        Returns:
            ReconstructionEstimatorSummary: 추정 결과
        """
        summary = ReconstructionEstimatorSummary()
        start = time.perf_counter()

        component = self._calibrated_component(view_graph, reconstruction)
        if len(component) < 2:
            summary.message = "보정된 뷰가 두 개 이상인 연결 요소가 없습니다."
            summary.total_time = time.perf_counter() - start
            return summary

        # 1. 초기 쌍
        if not self._initialize(view_graph, reconstruction, component):
            summary.message = "초기 뷰 쌍을 찾을 수 없습니다."
            summary.total_time = time.perf_counter() - start
            return summary

        estimated = {v for v in component if reconstruction.view(v).is_estimated}

        t0 = time.perf_counter()
        num_triangulated = self._triangulate_tracks(reconstruction, self._tracks_of(reconstruction, estimated))
        summary.triangulation_time += time.perf_counter() - t0
        logger.debug(f"초기 쌍 {sorted(estimated)}: 트랙 {num_triangulated}개 삼각측량")

        if num_triangulated == 0:
            self._reset(reconstruction, estimated)
            summary.message = "초기 쌍에서 삼각측량된 트랙이 없습니다."
            summary.total_time = time.perf_counter() - start
            return summary

        # 2. 나머지 카메라 등록
        failed: Set[int] = set()
        while True:
            next_view = self._next_view(reconstruction, component - estimated - failed)
            if next_view is None:
                break

            t0 = time.perf_counter()
            registered = self._localize_view(reconstruction, next_view)
            summary.pose_estimation_time += time.perf_counter() - t0
            if not registered:
                failed.add(next_view)
                continue

            estimated.add(next_view)
            # 새 카메라로 트랙이 늘었으니 이전 실패 뷰도 다시 시도
            failed.clear()

            t0 = time.perf_counter()
            self._triangulate_tracks(reconstruction, reconstruction.view(next_view).track_ids)
            summary.triangulation_time += time.perf_counter() - t0

        # 3. 번들 조정
        estimated_tracks = [t for t in self._tracks_of(reconstruction, estimated)
                            if reconstruction.track(t).is_estimated]
        if self.options.bundle_adjustment:
            t0 = time.perf_counter()
            ba_summary = self.bundle_adjuster.optimize(reconstruction, sorted(estimated), estimated_tracks)
            summary.bundle_adjustment_time += time.perf_counter() - t0
            logger.debug(f"번들 조정 성공 여부: {ba_summary.success}")

        num_filtered = self._filter_tracks(reconstruction, estimated_tracks)
        if num_filtered > 0:
            logger.debug(f"재투영 에러가 큰 트랙 {num_filtered}개 제외")

        summary.estimated_views = sorted(estimated)
        summary.estimated_tracks = sorted(t for t in estimated_tracks
                                          if reconstruction.track(t).is_estimated)
        summary.success = len(summary.estimated_views) >= 2
        summary.total_time = time.perf_counter() - start
        summary.message = (f"카메라 {len(summary.estimated_views)}/{len(component)}개, "
                           f"3D 점 {len(summary.estimated_tracks)}개 추정")
        return summary

    @staticmethod
    def _calibrated_component(view_graph: ViewGraph, reconstruction: Reconstruction) -> Set[int]:
        component = set()
        for view_id in view_graph.largest_connected_component():
            view = reconstruction.view(view_id)
            if view is not None and view.camera_intrinsics_prior.is_calibrated:
                component.add(view_id)
        return component

    @staticmethod
    def _tracks_of(reconstruction: Reconstruction, view_ids: Iterable[int]) -> List[int]:
        track_ids = set()
        for view_id in view_ids:
            track_ids |= reconstruction.view(view_id).track_ids
        return sorted(track_ids)

    def _initialize(self, view_graph: ViewGraph, reconstruction: Reconstruction,
                    component: Set[int]) -> bool:
        candidates = [
            (pair, info) for pair, info in view_graph.edges().items()
            if pair[0] in component and pair[1] in component
            and info.num_verified_matches >= self.options.min_num_two_view_inliers
        ]
        if not candidates:
            return False

        # 매칭 수가 같으면 id가 작은 쪽
        (view_id_1, view_id_2), info = max(
            candidates, key=lambda item: (item[1].num_verified_matches, -item[0][0], -item[0][1])
        )
        view1 = reconstruction.view(view_id_1)
        view2 = reconstruction.view(view_id_2)

        view1.camera = Camera.from_prior(view1.camera_intrinsics_prior)
        view1.is_estimated = True

        # 첫 카메라가 원점/단위 회전이므로 상대 포즈가 그대로 절대 포즈가 됩니다.
        view2.camera = Camera(
            orientation=np.asarray(info.rotation_2, dtype=np.float64).copy(),
            position=np.asarray(info.position_2, dtype=np.float64).copy(),
            K=view2.camera_intrinsics_prior.calibration_matrix()
        )
        view2.is_estimated = True
        logger.info(f"초기 뷰 쌍: {view1.name}, {view2.name} "
                    f"(검증된 매칭 {info.num_verified_matches}개)")
        return True

    @staticmethod
    def _reset(reconstruction: Reconstruction, view_ids: Iterable[int]) -> None:
        for view_id in view_ids:
            reconstruction.view(view_id).is_estimated = False

    def _triangulate_tracks(self, reconstruction: Reconstruction, track_ids: Iterable[int]) -> int:
        num_triangulated = 0
        for track_id in sorted(track_ids):
            track = reconstruction.track(track_id)
            if track is None or track.is_estimated:
                continue

            view_ids = [v for v in sorted(track.observations) if reconstruction.view(v).is_estimated]
            if len(view_ids) < 2:
                continue

            result = self.triangulator.triangulate(
                [reconstruction.view(v).camera for v in view_ids],
                [track.observations[v] for v in view_ids]
            )
            if result is None:
                continue

            track.point = result.point_3d
            track.is_estimated = True
            num_triangulated += 1
        return num_triangulated

    @staticmethod
    def _next_view(reconstruction: Reconstruction, candidates: Set[int]) -> Optional[int]:
        """추정된 3D 점을 가장 많이 관측하는 뷰"""
        best_view, best_count = None, 0
        for view_id in sorted(candidates):
            count = sum(1 for t in reconstruction.view(view_id).track_ids
                        if reconstruction.track(t).is_estimated)
            if count > best_count:
                best_view, best_count = view_id, count
        return best_view

    def _localize_view(self, reconstruction: Reconstruction, view_id: int) -> bool:
        view = reconstruction.view(view_id)
        K = view.camera_intrinsics_prior.calibration_matrix()
        camera = Camera(K=K)

        correspondences = []
        for track_id in sorted(view.track_ids):
            track = reconstruction.track(track_id)
            if track.is_estimated:
                correspondences.append(FeatureCorrespondence2D3D(
                    feature=camera.pixel_to_normalized(track.observations[view_id]),
                    world_point=track.point.copy()
                ))

        if len(correspondences) < self.options.min_num_absolute_pose_inliers:
            logger.debug(f"{view.name}: 2D-3D 대응 부족 ({len(correspondences)}개)")
            return False

        params = RansacParameters(
            error_threshold=self.options.absolute_pose_reprojection_error_threshold / K[0, 0],
            failure_probability=self.options.ransac_failure_probability,
            min_iterations=self.options.ransac_min_iterations,
            max_iterations=self.options.ransac_max_iterations,
            use_refinement=True,
            rng=self.rng,
        )
        transformation, ransac_summary = estimate_rigid_transformation_2d_3d(params, correspondences)
        if transformation is None or ransac_summary.num_inliers < self.options.min_num_absolute_pose_inliers:
            logger.debug(f"{view.name}: 카메라 등록 실패 ({ransac_summary.message})")
            return False

        # t = -R c  →  c = -R^T t
        camera.set_orientation_from_rotation_matrix(transformation.rotation)
        camera.position = -transformation.rotation.T @ transformation.translation
        view.camera = camera
        view.is_estimated = True
        logger.debug(f"{view.name}: 카메라 등록 (인라이어 {ransac_summary.num_inliers}/"
                     f"{len(correspondences)})")
        return True

    def _filter_tracks(self, reconstruction: Reconstruction, track_ids: Iterable[int]) -> int:
        num_filtered = 0
        for track_id in track_ids:
            track = reconstruction.track(track_id)
            if not track.is_estimated:
                continue
            view_ids = [v for v in sorted(track.observations) if reconstruction.view(v).is_estimated]
            cameras = [reconstruction.view(v).camera for v in view_ids]
            errors = compute_reprojection_errors(cameras, [track.observations[v] for v in view_ids],
                                                 track.point)
            depths = [camera.project_point(track.point)[0] for camera in cameras]
            if np.max(errors) > self.options.max_reprojection_error_pixels or min(depths) <= 0:
                track.is_estimated = False
                num_filtered += 1
        return num_filtered


def create_reconstruction_estimator(options: ReconstructionEstimatorOptions) -> ReconstructionEstimator:
    """설정에 맞는 재구성 추정기를 생성합니다."""
    if options.reconstruction_estimator_type == ReconstructionEstimatorType.INCREMENTAL:
        return IncrementalReconstructionEstimator(options)
    raise ValueError(f"지원하지 않는 재구성 추정 방식: {options.reconstruction_estimator_type}")
