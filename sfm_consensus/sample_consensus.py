"""
Sample Consensus (RANSAC) Module

노이즈와 아웃라이어가 섞인 대응점으로부터 기하 모델을 강건하게 추정합니다.

알고리즘 흐름:
1. 최소 샘플(minimal sample)을 중복 없이 무작위 추출
2. 샘플로부터 후보 모델(0~K개) 계산
3. 모든 대응점의 잔차를 계산하여 인라이어 수로 후보를 평가
4. 지금까지의 최고 인라이어 비율로 필요한 반복 횟수를 다시 계산
5. (선택) 인라이어만으로 비선형 최소제곱 정제

필요 반복 횟수:
    N = log(p_fail) / log(1 - w^s)
여기서 w는 인라이어 비율, s는 최소 샘플 크기입니다.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .rng import RandomNumberGenerator

logger = logging.getLogger(__name__)


class RansacStatus(Enum):
    """추정 결과 상태"""
    SUCCESS = "success"
    INSUFFICIENT_DATA = "insufficient_data"
    INSUFFICIENT_SUPPORT = "insufficient_support"


@dataclass
class RansacParameters:
    """
    RANSAC 설정

    Attributes:
        error_threshold: 인라이어 판정 임계값 (잔차 < 임계값)
        failure_probability: 올바른 모델을 찾지 못할 허용 확률 (0~1)
        min_inlier_ratio: 반복 횟수 초기값 계산에 쓰는 최악의 인라이어 비율 가정
        min_iterations: 최소 반복 횟수
        max_iterations: 최대 반복 횟수
        use_refinement: True면 인라이어로 모델을 비선형 정제
        max_refinement_rounds: 정제-재평가 반복의 상한
        rng: 난수 생성기 핸들 (None이면 새로 생성)
    """
    error_threshold: float = 1.0
    failure_probability: float = 0.01
    min_inlier_ratio: float = 0.0
    min_iterations: int = 100
    max_iterations: int = 10000
    use_refinement: bool = False
    max_refinement_rounds: int = 2
    rng: Optional[RandomNumberGenerator] = None

    def __post_init__(self):
        if not 0.0 < self.failure_probability < 1.0:
            raise ValueError(
                f"failure_probability는 (0, 1) 범위여야 합니다: {self.failure_probability}"
            )
        if self.error_threshold <= 0:
            raise ValueError(f"error_threshold는 양수여야 합니다: {self.error_threshold}")
        if not 0.0 <= self.min_inlier_ratio <= 1.0:
            raise ValueError(f"min_inlier_ratio는 [0, 1] 범위여야 합니다: {self.min_inlier_ratio}")
        if self.min_iterations <= 0 or self.max_iterations <= 0:
            raise ValueError("반복 횟수는 양수여야 합니다.")
        if self.min_iterations > self.max_iterations:
            raise ValueError(
                f"min_iterations({self.min_iterations}) > max_iterations({self.max_iterations})"
            )
        if self.max_refinement_rounds < 0:
            raise ValueError("max_refinement_rounds는 음수일 수 없습니다.")


@dataclass
class RansacSummary:
    """
    RANSAC 추정 결과 요약

    Attributes:
        success: 추정 성공 여부
        status: 결과 상태 코드
        inliers: 인라이어 인덱스 (정렬, 중복 없음)
        num_iterations: 실제 수행한 반복 횟수
        confidence: 달성한 신뢰도 1 - (1 - w^s)^N
        num_input_data_points: 입력 대응점 수
        message: 로그용 진단 메시지
    """
    success: bool
    status: RansacStatus
    inliers: List[int] = field(default_factory=list)
    num_iterations: int = 0
    confidence: float = 0.0
    num_input_data_points: int = 0
    message: str = ""

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)

    @property
    def inlier_ratio(self) -> float:
        if self.num_input_data_points == 0:
            return 0.0
        return self.num_inliers / self.num_input_data_points


class RandomSampler:
    """
    최소 샘플 추출기

    [0, N) 인덱스에서 min_num_samples개를 중복 없이 뽑습니다.
    """

    def __init__(self, rng: RandomNumberGenerator, min_num_samples: int):
        if min_num_samples <= 0:
            raise ValueError(f"min_num_samples는 양수여야 합니다: {min_num_samples}")
        self.rng = rng
        self.min_num_samples = min_num_samples

    def sample(self, num_datapoints: int) -> np.ndarray:
        return self.rng.sample_without_replacement(num_datapoints, self.min_num_samples)


class ModelEstimator(ABC):
    """
    추정 문제별 모델 추정기 인터페이스

    RANSAC 엔진은 이 세 가지 기능만 사용합니다:
        - sample_size: 최소 샘플 크기
        - estimate_model: 최소 샘플로부터 후보 모델 목록 (퇴화 샘플이면 빈 목록)
        - error: 대응점 하나의 잔차

    정제를 지원하는 추정기는 refine_model을 구현합니다.
    """

    sample_size: int = 0

    @abstractmethod
    def estimate_model(self, data: Sequence[Any]) -> List[Any]:
        """최소 샘플로부터 후보 모델 목록을 반환합니다."""

    @abstractmethod
    def error(self, datum: Any, model: Any) -> float:
        """대응점 하나의 잔차를 반환합니다."""

    def errors(self, data: Sequence[Any], model: Any) -> np.ndarray:
        return np.array([self.error(datum, model) for datum in data], dtype=np.float64)

    def refine_model(self, data: Sequence[Any], model: Any) -> Optional[Any]:
        """인라이어로 모델을 다시 맞춥니다. 지원하지 않으면 None."""
        return None


def compute_max_iterations(sample_size: int,
                           inlier_ratio: float,
                           failure_probability: float,
                           min_iterations: int,
                           max_iterations: int) -> int:
    """
    인라이어 비율로부터 필요한 반복 횟수를 계산합니다.

    Args:
        sample_size: 최소 샘플 크기 s
        inlier_ratio: 인라이어 비율 w
        failure_probability: 실패 허용 확률
        min_iterations, max_iterations: 결과를 제한할 범위

    Returns:
        int: [min_iterations, max_iterations] 범위의 반복 횟수
    """
    if inlier_ratio <= 0.0:
        return max_iterations
    if inlier_ratio >= 1.0:
        return min_iterations

    prob_all_inliers = inlier_ratio ** sample_size
    # w^s가 너무 작으면 log(1 - w^s)가 0이 됩니다.
    if prob_all_inliers <= np.finfo(np.float64).eps:
        return max_iterations

    num_iterations = math.ceil(math.log(failure_probability) / math.log1p(-prob_all_inliers))
    return int(min(max(num_iterations, min_iterations), max_iterations))


def compute_confidence(sample_size: int, inlier_ratio: float, num_iterations: int) -> float:
    """N번 반복 후 한 번이라도 인라이어만 뽑았을 확률"""
    if num_iterations <= 0 or inlier_ratio <= 0.0:
        return 0.0
    prob_all_inliers = min(inlier_ratio ** sample_size, 1.0)
    return 1.0 - (1.0 - prob_all_inliers) ** num_iterations


class SampleConsensusEstimator:
    """
    RANSAC 추정기

    추정 문제(ModelEstimator)에 독립적인 샘플-평가-적응 루프를 구현합니다.
    데이터에 따른 실패는 예외 대신 RansacSummary로 반환합니다.

    Example:
        >>> params = RansacParameters(error_threshold=2.0, rng=RandomNumberGenerator(42))
        >>> ransac = SampleConsensusEstimator(HomographyEstimator(), params)
        >>> H, summary = ransac.estimate(correspondences)
        >>> print(f"인라이어: {summary.num_inliers}개")
    """

    def __init__(self, estimator: ModelEstimator, params: RansacParameters):
        if estimator.sample_size <= 0:
            raise ValueError(f"잘못된 최소 샘플 크기: {estimator.sample_size}")
        self.estimator = estimator
        self.params = params
        self.rng = params.rng if params.rng is not None else RandomNumberGenerator()
        self.sampler = RandomSampler(self.rng, estimator.sample_size)

    def _score(self, data: Sequence[Any], model: Any) -> Tuple[np.ndarray, float]:
        """인라이어 인덱스와 인라이어 잔차 합을 계산합니다."""
        residuals = self.estimator.errors(data, model)
        inlier_mask = residuals < self.params.error_threshold
        inliers = np.flatnonzero(inlier_mask)
        cost = float(np.sum(residuals[inlier_mask]))
        return inliers, cost

    def estimate(self, data: Sequence[Any]) -> Tuple[Optional[Any], RansacSummary]:
        """
        대응점으로부터 모델을 추정합니다.

        Args:
            data: 대응점 목록 (인덱스 [0, N))

        Returns:
            Tuple[model, RansacSummary]: 실패 시 model은 None
        """
        num_data = len(data)
        sample_size = self.estimator.sample_size
        params = self.params

        if num_data < sample_size:
            message = (f"대응점이 부족합니다: {num_data}개 "
                       f"(최소 샘플 크기 {sample_size}개 필요)")
            logger.debug(message)
            return None, RansacSummary(
                success=False,
                status=RansacStatus.INSUFFICIENT_DATA,
                num_input_data_points=num_data,
                message=message,
            )

        start_time = time.time()
        max_iterations = compute_max_iterations(
            sample_size, params.min_inlier_ratio, params.failure_probability,
            params.min_iterations, params.max_iterations
        )

        best_model = None
        best_inliers = np.empty(0, dtype=int)
        best_cost = float("inf")
        num_iterations = 0

        while num_iterations < max_iterations:
            num_iterations += 1
            sample_indices = self.sampler.sample(num_data)
            sample = [data[i] for i in sample_indices]

            # 퇴화 샘플은 후보가 없으므로 반복 한 번만 소모
            try:
                candidates = [(model, *self._score(data, model))
                              for model in self.estimator.estimate_model(sample)]
            except Exception as e:
                # 추정기 예외는 퇴화 샘플로 취급
                logger.debug(f"샘플 {sample_indices.tolist()} 추정 중 예외: {e!r}")
                candidates = []

            for model, inliers, cost in candidates:
                if (len(inliers) > len(best_inliers) or
                        (len(inliers) == len(best_inliers) and cost < best_cost)):
                    best_model = model
                    best_inliers = inliers
                    best_cost = cost

            best_ratio = len(best_inliers) / num_data
            max_iterations = compute_max_iterations(
                sample_size, best_ratio, params.failure_probability,
                params.min_iterations, params.max_iterations
            )

        if best_model is None or len(best_inliers) < sample_size:
            message = (f"{num_iterations}번 반복 후에도 충분한 지지를 얻지 못했습니다 "
                       f"(최대 인라이어 {len(best_inliers)}개, 필요 {sample_size}개)")
            logger.debug(message)
            return None, RansacSummary(
                success=False,
                status=RansacStatus.INSUFFICIENT_SUPPORT,
                inliers=best_inliers.tolist(),
                num_iterations=num_iterations,
                num_input_data_points=num_data,
                message=message,
            )

        if params.use_refinement:
            best_model, best_inliers = self._refine(data, best_model, best_inliers)

        inlier_ratio = len(best_inliers) / num_data
        confidence = compute_confidence(sample_size, inlier_ratio, num_iterations)
        elapsed = time.time() - start_time
        message = (f"인라이어 {len(best_inliers)}/{num_data} ({inlier_ratio:.2%}), "
                   f"반복 {num_iterations}회, 신뢰도 {confidence:.4f}, {elapsed * 1000:.1f}ms")
        logger.debug(message)

        return best_model, RansacSummary(
            success=True,
            status=RansacStatus.SUCCESS,
            inliers=sorted(int(i) for i in best_inliers),
            num_iterations=num_iterations,
            confidence=confidence,
            num_input_data_points=num_data,
            message=message,
        )

    def _refine(self, data: Sequence[Any], model: Any,
                inliers: np.ndarray) -> Tuple[Any, np.ndarray]:
        """
        인라이어로 모델을 정제하고 인라이어를 다시 평가합니다.

        진동을 막기 위해 max_refinement_rounds 회까지만 반복합니다.
        """
        for _ in range(self.params.max_refinement_rounds):
            try:
                refined = self.estimator.refine_model([data[i] for i in inliers], model)
                if refined is None:
                    break
                new_inliers, _ = self._score(data, refined)
            except Exception as e:
                logger.debug(f"모델 정제 중 예외: {e!r}")
                break

            if len(new_inliers) < self.estimator.sample_size:
                break

            model = refined
            if np.array_equal(new_inliers, inliers):
                break
            inliers = new_inliers

        return model, inliers
