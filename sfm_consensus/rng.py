"""
Random Number Generator Module

샘플링과 테스트 데이터 생성에 사용하는 난수 생성기입니다.

전역 난수 상태(np.random.seed)를 사용하지 않고, 시드가 고정된 핸들을
명시적으로 전달합니다. 같은 시드와 같은 입력이면 항상 같은 샘플 순서가 나옵니다.
"""

import numpy as np
from typing import List, Optional


class RandomNumberGenerator:
    """
    시드 기반 난수 생성기

    numpy.random.Generator를 감싸며, RANSAC 샘플러와 합성 데이터 생성에서
    공통으로 사용합니다.

    Attributes:
        seed: 생성 시 사용한 시드 (None이면 OS 엔트로피)
        generator: 내부 numpy Generator
    """

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._seed_sequence = np.random.SeedSequence(seed)
        self.generator = np.random.default_rng(self._seed_sequence)

    def rand_double(self, lower: float = 0.0, upper: float = 1.0) -> float:
        """[lower, upper) 구간의 실수"""
        return float(self.generator.uniform(lower, upper))

    def rand_int(self, lower: int, upper: int) -> int:
        """[lower, upper] 구간의 정수 (양 끝 포함)"""
        return int(self.generator.integers(lower, upper, endpoint=True))

    def rand_gaussian(self, mean: float = 0.0, std_dev: float = 1.0) -> float:
        return float(self.generator.normal(mean, std_dev))

    def rand_vector2d(self, lower: float = -1.0, upper: float = 1.0) -> np.ndarray:
        return self.generator.uniform(lower, upper, size=2)

    def rand_vector3d(self, lower: float = -1.0, upper: float = 1.0) -> np.ndarray:
        return self.generator.uniform(lower, upper, size=3)

    def sample_without_replacement(self, num_items: int, num_samples: int) -> np.ndarray:
        """
        [0, num_items) 에서 서로 다른 인덱스 num_samples개를 뽑습니다.

        Args:
            num_items: 전체 데이터 수
            num_samples: 뽑을 인덱스 수

        Returns:
            np.ndarray: 중복 없는 인덱스 배열
        """
        if num_samples > num_items:
            raise ValueError(
                f"샘플 수({num_samples})가 데이터 수({num_items})보다 많습니다."
            )
        return self.generator.choice(num_items, size=num_samples, replace=False)

    def spawn(self, num_children: int) -> List["RandomNumberGenerator"]:
        """
        워커 풀에서 사용할 독립적인 자식 생성기를 만듭니다.

        같은 부모 시드에서 spawn한 자식들은 실행 순서와 무관하게 항상 같은 스트림을 가집니다.
        """
        children = []
        for child_sequence in self._seed_sequence.spawn(num_children):
            child = RandomNumberGenerator.__new__(RandomNumberGenerator)
            child.seed = self.seed
            child._seed_sequence = child_sequence
            child.generator = np.random.default_rng(child_sequence)
            children.append(child)
        return children
