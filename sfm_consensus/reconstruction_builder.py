"""
Reconstruction Builder

이미지, 카메라 prior, 검증된 매칭을 모아 하나 이상의 재구성을 만드는 메인 모듈입니다.

빌더 흐름:
1. 이미지/매칭 수집 (INGESTING)
2. 저장소의 매칭을 뷰 그래프와 트랙 빌더에 반영 (MATCHED)
3. 트랙 생성, 보정되지 않은 뷰 제거
4. 재구성 추정 → 추정된 부분을 결과로 복사하고 작업 장면에서 제거 (BUILDING)
5. 남은 뷰가 충분한 동안 4를 반복 (DONE)
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .camera import CameraIntrinsicsPrior
from .matches_database import (
    FeaturesAndMatchesDatabase,
    ImagePairMatch,
    InMemoryFeaturesAndMatchesDatabase,
)
from .reconstruction import Reconstruction, Scene
from .reconstruction_estimator import (
    ReconstructionEstimator,
    ReconstructionEstimatorOptions,
    create_reconstruction_estimator,
)
from .rng import RandomNumberGenerator
from .track_builder import TrackBuilder
from .two_view_estimation import GeometricVerifier, TwoViewEstimationOptions
from .view_graph import DuplicateEdgePolicy, ViewGraph

logger = logging.getLogger(__name__)

# (이미지 경로 목록, 저장소) → None. 저장소에 매칭과 prior를 기록합니다.
FeatureMatcher = Callable[[List[str], FeaturesAndMatchesDatabase], None]
EstimatorFactory = Callable[[ReconstructionEstimatorOptions], ReconstructionEstimator]


class BuilderState(Enum):
    """빌더 상태"""
    INGESTING = "ingesting"
    MATCHED = "matched"
    BUILDING = "building"
    DONE = "done"


@dataclass
class ReconstructionBuilderOptions:
    """
    재구성 빌더 설정

    Attributes:
        num_threads: 기하 검증 워커 스레드 수
        min_track_length, max_track_length: 트랙 길이 범위 (뷰 수)
        only_calibrated_views: focal length prior가 없는 뷰 제외
        reconstruct_largest_connected_component: 가장 큰 연결 요소 하나만 재구성
        min_num_inlier_matches: 뷰 그래프에 추가할 매칭의 최소 대응 수
        duplicate_edge_policy: 같은 뷰 쌍의 엣지가 다시 들어올 때의 처리
        seed: 난수 시드 (rng가 없을 때 사용)
        rng: 난수 생성기
        two_view_options: 기하 검증 설정
        reconstruction_estimator_options: 재구성 추정 설정
    """
    num_threads: int = 1
    min_track_length: int = 2
    max_track_length: int = 50
    only_calibrated_views: bool = False
    reconstruct_largest_connected_component: bool = False
    min_num_inlier_matches: int = 30
    duplicate_edge_policy: DuplicateEdgePolicy = DuplicateEdgePolicy.OVERWRITE
    seed: Optional[int] = None
    rng: Optional[RandomNumberGenerator] = None
    two_view_options: TwoViewEstimationOptions = field(default_factory=TwoViewEstimationOptions)
    reconstruction_estimator_options: ReconstructionEstimatorOptions = field(
        default_factory=ReconstructionEstimatorOptions
    )

    def __post_init__(self):
        if self.num_threads <= 0:
            raise ValueError(f"num_threads는 양수여야 합니다: {self.num_threads}")
        if self.min_num_inlier_matches < 0:
            raise ValueError("min_num_inlier_matches는 음수일 수 없습니다.")


class ReconstructionBuilder:
    """
    재구성 빌더

    Example:
        >>> builder = ReconstructionBuilder(ReconstructionBuilderOptions())
        >>> builder.add_image("img0.jpg", CameraIntrinsicsPrior(focal_length=800))
        >>> builder.add_image("img1.jpg", CameraIntrinsicsPrior(focal_length=800))
        >>> builder.add_two_view_match("img0.jpg", "img1.jpg", match)
        >>> success, reconstructions = builder.build_reconstruction()
    """

    def __init__(self,
                 options: Optional[ReconstructionBuilderOptions] = None,
                 database: Optional[FeaturesAndMatchesDatabase] = None,
                 matcher: Optional[FeatureMatcher] = None,
                 estimator_factory: Optional[EstimatorFactory] = None):
        """
        재구성 빌더 초기화

        Args:
            options: 빌더 설정
            database: 매칭 저장소 (None이면 메모리 저장소)
            matcher: extract_and_match_features()에서 호출할 외부 매칭기
            estimator_factory: 라운드마다 재구성 추정기를 만드는 함수
        """
        self.options = options if options is not None else ReconstructionBuilderOptions()
        self.database = database if database is not None else InMemoryFeaturesAndMatchesDatabase()
        self.matcher = matcher
        self.estimator_factory = estimator_factory or create_reconstruction_estimator

        self.rng = self.options.rng if self.options.rng is not None \
            else RandomNumberGenerator(self.options.seed)

        self.scene = Scene(Reconstruction(), ViewGraph(self.options.duplicate_edge_policy))
        self.track_builder = TrackBuilder(self.options.min_track_length,
                                          self.options.max_track_length)
        self.image_paths: List[str] = []
        self.state = BuilderState.INGESTING

    @property
    def reconstruction(self) -> Reconstruction:
        return self.scene.reconstruction

    @property
    def view_graph(self) -> ViewGraph:
        return self.scene.view_graph

    def _require_ingesting(self, operation: str) -> None:
        if self.state != BuilderState.INGESTING:
            raise RuntimeError(f"{operation}: 현재 상태({self.state.value})에서는 입력을 추가할 수 없습니다.")

    def add_image(self, image_path: str,
                  prior: Optional[CameraIntrinsicsPrior] = None) -> bool:
        """
        이미지를 추가합니다. 뷰 이름은 파일 이름입니다.

        Args:
            image_path: 이미지 경로
            prior: 내부 파라미터 prior (저장소에도 기록)

        Returns:
            bool: 같은 이름의 이미지가 이미 있으면 False
        """
        self._require_ingesting("add_image")

        name = Path(image_path).name
        if self.reconstruction.add_view(name, prior) is None:
            return False

        self.image_paths.append(str(image_path))
        if prior is not None:
            self.database.put_camera_intrinsics_prior(name, prior)
        return True

    def add_two_view_match(self, image1: str, image2: str, match: ImagePairMatch) -> bool:
        """
        검증된 이미지 쌍 매칭을 뷰 그래프와 트랙 빌더에 추가합니다.

        Returns:
            bool: 엣지가 추가되었는지 여부
        """
        self._require_ingesting("add_two_view_match")
        return self._add_two_view_match(image1, image2, match)

    def _add_two_view_match(self, image1: str, image2: str, match: ImagePairMatch) -> bool:
        view_id_1 = self.reconstruction.view_id_from_name(image1)
        view_id_2 = self.reconstruction.view_id_from_name(image2)
        if view_id_1 is None or view_id_2 is None:
            raise ValueError(f"추가되지 않은 이미지의 매칭입니다: {image1}, {image2}")

        if self.options.only_calibrated_views:
            calibrated_1 = self.reconstruction.view(view_id_1).camera_intrinsics_prior.is_calibrated
            calibrated_2 = self.reconstruction.view(view_id_2).camera_intrinsics_prior.is_calibrated
            if not (calibrated_1 and calibrated_2):
                logger.debug(f"보정되지 않은 뷰가 포함된 매칭을 건너뜁니다: {image1}, {image2}")
                return False

        if len(match.correspondences) < self.options.min_num_inlier_matches:
            logger.debug(f"{image1}-{image2}: 매칭 부족 ({len(match.correspondences)}개)")
            return False

        if not self.view_graph.add_edge(view_id_1, view_id_2, match.twoview_info):
            return False

        for correspondence in match.correspondences:
            self.track_builder.add_feature_correspondence(
                view_id_1, correspondence.feature1,
                view_id_2, correspondence.feature2
            )
        return True

    def add_candidate_matches(self, candidates: Sequence[ImagePairMatch]) -> int:
        """
        기하 검증 전의 매칭을 병렬로 검증하여 저장소에 기록합니다.

        Returns:
            int: 검증을 통과한 매칭 수
        """
        self._require_ingesting("add_candidate_matches")
        two_view_options = dataclasses.replace(
            self.options.two_view_options,
            min_num_inlier_matches=self.options.min_num_inlier_matches
        )
        verifier = GeometricVerifier(two_view_options,
                                     num_threads=self.options.num_threads,
                                     rng=self.rng.spawn(1)[0])
        return verifier.verify_and_store(candidates, self.database)

    def extract_and_match_features(self) -> None:
        """
        저장소의 매칭과 prior를 재구성에 반영하고 입력을 닫습니다. 한 번만 호출할 수 있습니다.

        matcher가 있으면 먼저 matcher(image_paths, database)를 호출합니다.
        """
        self._require_ingesting("extract_and_match_features")
        if self.view_graph.num_views != 0:
            raise RuntimeError("extract_and_match_features는 직접 추가한 매칭과 함께 사용할 수 없습니다.")

        if self.matcher is not None:
            self.matcher(list(self.image_paths), self.database)

        num_images = self.reconstruction.num_views
        logger.info(f"매칭된 이미지 쌍: {self.database.num_matches()} / "
                    f"{num_images * (num_images - 1) // 2}")

        # 저장소의 prior를 뷰에 반영
        for name in self.database.image_names_of_camera_intrinsics_priors():
            view_id = self.reconstruction.view_id_from_name(name)
            if view_id is not None:
                self.reconstruction.view(view_id).camera_intrinsics_prior = \
                    self.database.get_camera_intrinsics_prior(name)

        for image1, image2 in self.database.image_names_of_matches():
            match = self.database.get_image_pair_match(image1, image2)
            self._add_two_view_match(image1, image2, match)

        self.state = BuilderState.MATCHED

    def remove_uncalibrated_views(self) -> int:
        """focal length prior가 없는 뷰를 재구성과 뷰 그래프에서 제거합니다."""
        num_removed = self.scene.remove_uncalibrated_views()
        if num_removed > 0:
            logger.info(f"보정되지 않은 뷰 {num_removed}개를 제거했습니다.")
        return num_removed

    def _create_estimator(self) -> ReconstructionEstimator:
        estimator_options = self.options.reconstruction_estimator_options
        if estimator_options.rng is None:
            estimator_options = dataclasses.replace(estimator_options, rng=self.rng.spawn(1)[0])
        return self.estimator_factory(estimator_options)

    def build_reconstruction(self) -> Tuple[bool, List[Reconstruction]]:
        """
        재구성을 반복 추정합니다.

        Returns:
            Tuple[success, reconstructions]: 재구성이 하나 이상 만들어졌으면 성공.
                재구성은 만들어진 순서대로 (큰 연결 요소부터) 반환됩니다.
        """
        if self.state in (BuilderState.BUILDING, BuilderState.DONE):
            raise RuntimeError(f"이미 재구성을 수행했습니다 (상태: {self.state.value}).")
        if self.view_graph.num_views < 2:
            raise RuntimeError("뷰 그래프를 만들려면 최소 2개의 이미지가 필요합니다.")

        self.state = BuilderState.BUILDING
        reconstructions: List[Reconstruction] = []

        if self.reconstruction.num_tracks == 0:
            self.track_builder.build_tracks(self.reconstruction)

        if self.options.only_calibrated_views:
            self.remove_uncalibrated_views()

        while self.scene.num_views > 1:
            logger.info(f"남은 뷰 {self.scene.num_views}개, 트랙 {self.reconstruction.num_tracks}개로 "
                        f"재구성을 시작합니다.")

            estimator = self._create_estimator()
            summary = estimator.estimate(self.view_graph, self.reconstruction)
            if not summary.success:
                logger.info(f"재구성 추정 실패: {summary.message}")
                self.state = BuilderState.DONE
                return len(reconstructions) > 0, reconstructions

            # 남은 장면에서 뷰를 하나도 가져가지 않는 결과는 실패로 처리 (무한 반복 방지)
            if not any(self.reconstruction.view(v) is not None for v in summary.estimated_views):
                logger.warning("재구성 추정이 성공을 보고했지만 추정된 뷰가 없어 종료합니다.")
                self.state = BuilderState.DONE
                return len(reconstructions) > 0, reconstructions

            logger.info(f"재구성 {len(reconstructions) + 1}: 카메라 {len(summary.estimated_views)}개, "
                        f"3D 점 {len(summary.estimated_tracks)}개 "
                        f"(포즈 {summary.pose_estimation_time:.3f}s, "
                        f"삼각측량 {summary.triangulation_time:.3f}s, "
                        f"번들 조정 {summary.bundle_adjustment_time:.3f}s, "
                        f"전체 {summary.total_time:.3f}s) {summary.message}")

            reconstructions.append(self.scene.extract_subreconstruction(
                summary.estimated_views, summary.estimated_tracks
            ))
            self.scene.remove_views_and_tracks(summary.estimated_views, summary.estimated_tracks)

            if self.options.reconstruct_largest_connected_component:
                break

            if self.scene.num_views < 3:
                logger.info(f"남은 뷰가 {self.scene.num_views}개뿐이므로 재구성을 종료합니다.")
                break

        self.state = BuilderState.DONE
        return len(reconstructions) > 0, reconstructions
