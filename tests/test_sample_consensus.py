"""
RANSAC 엔진 테스트 모듈

2D 직선 추정기로 샘플-평가-적응 루프의 동작을 테스트합니다.
"""

import sys
import numpy as np
from pathlib import Path
import unittest

# 프로젝트 루트를 path에 추가
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sfm_consensus.sample_consensus import ModelEstimator


class LineEstimator(ModelEstimator):
    """ax + by + c = 0 (a^2 + b^2 = 1) 직선 추정기"""

    sample_size = 2

    def estimate_model(self, data):
        p, q = np.asarray(data[0]), np.asarray(data[1])
        direction = q - p
        norm = np.linalg.norm(direction)
        if norm < 1e-12:
            return []
        a, b = -direction[1] / norm, direction[0] / norm
        return [np.array([a, b, -(a * p[0] + b * p[1])])]

    def error(self, datum, model):
        return float(abs(model[0] * datum[0] + model[1] * datum[1] + model[2]))

    def refine_model(self, data, model):
        points = np.asarray(data, dtype=np.float64)
        centroid = points.mean(axis=0)
        _, _, Vt = np.linalg.svd(points - centroid)
        a, b = Vt[-1]
        return np.array([a, b, -(a * centroid[0] + b * centroid[1])])


class DegenerateEstimator(LineEstimator):
    """항상 퇴화 샘플로 판정하는 추정기"""

    def estimate_model(self, data):
        return []


class FlakyEstimator(LineEstimator):
    """일부 샘플에서 예외를 던지는 추정기"""

    def estimate_model(self, data):
        if data[0][0] < 0:
            raise np.linalg.LinAlgError("singular sample")
        return super().estimate_model(data)

    def refine_model(self, data, model):
        raise ValueError("refinement failed")


def make_line_data(num_points, inlier_ratio, seed):
    """y = 2x + 1 위의 인라이어와 균일 분포 아웃라이어"""
    rng = np.random.default_rng(seed)
    num_inliers = int(round(num_points * inlier_ratio))
    x = rng.uniform(-5, 5, num_inliers)
    inliers = np.column_stack([x, 2 * x + 1])
    outliers = np.column_stack([rng.uniform(-10, 10, num_points - num_inliers),
                                rng.uniform(-30, 30, num_points - num_inliers)])
    points = np.vstack([inliers, outliers])
    order = rng.permutation(num_points)
    return [points[i] for i in order]


class TestRandomNumberGenerator(unittest.TestCase):
    """난수 생성기 테스트"""

    def test_same_seed_same_samples(self):
        """같은 시드 → 같은 샘플 순서"""
        from sfm_consensus.rng import RandomNumberGenerator
        from sfm_consensus.sample_consensus import RandomSampler

        sampler1 = RandomSampler(RandomNumberGenerator(3), 4)
        sampler2 = RandomSampler(RandomNumberGenerator(3), 4)

        for _ in range(20):
            np.testing.assert_array_equal(sampler1.sample(100), sampler2.sample(100))

    def test_sample_without_replacement(self):
        """중복 없는 샘플"""
        from sfm_consensus.rng import RandomNumberGenerator

        rng = RandomNumberGenerator(11)
        for _ in range(50):
            sample = rng.sample_without_replacement(10, 5)
            self.assertEqual(len(set(sample.tolist())), 5)
            self.assertTrue(np.all((sample >= 0) & (sample < 10)))

        with self.assertRaises(ValueError):
            rng.sample_without_replacement(3, 4)

    def test_rand_int_inclusive(self):
        from sfm_consensus.rng import RandomNumberGenerator

        rng = RandomNumberGenerator(5)
        values = {rng.rand_int(0, 2) for _ in range(200)}
        self.assertEqual(values, {0, 1, 2})

    def test_spawn_is_reproducible(self):
        """spawn한 자식 생성기는 부모 시드에 따라 결정됨"""
        from sfm_consensus.rng import RandomNumberGenerator

        children1 = RandomNumberGenerator(9).spawn(3)
        children2 = RandomNumberGenerator(9).spawn(3)

        for c1, c2 in zip(children1, children2):
            self.assertEqual(c1.rand_double(), c2.rand_double())
        self.assertNotEqual(children1[0].rand_double(), children1[1].rand_double())


class TestIterationBound(unittest.TestCase):
    """적응형 반복 횟수 테스트"""

    def test_extreme_ratios(self):
        from sfm_consensus.sample_consensus import compute_max_iterations

        self.assertEqual(compute_max_iterations(3, 0.0, 0.01, 10, 1000), 1000)
        self.assertEqual(compute_max_iterations(3, 1.0, 0.01, 10, 1000), 10)

    def test_known_value(self):
        """w=0.5, s=2, p=0.01 → ceil(log(0.01) / log(0.75)) = 17"""
        from sfm_consensus.sample_consensus import compute_max_iterations

        self.assertEqual(compute_max_iterations(2, 0.5, 0.01, 1, 1000), 17)
        self.assertEqual(compute_max_iterations(2, 0.5, 0.01, 50, 1000), 50)
        self.assertEqual(compute_max_iterations(2, 0.5, 0.01, 1, 10), 10)

    def test_confidence(self):
        from sfm_consensus.sample_consensus import compute_confidence

        self.assertEqual(compute_confidence(2, 0.0, 100), 0.0)
        self.assertAlmostEqual(compute_confidence(2, 1.0, 1), 1.0)
        self.assertGreater(compute_confidence(2, 0.5, 17), 0.99)


class TestRansacParameters(unittest.TestCase):
    """RANSAC 설정 검증 테스트"""

    def test_invalid_parameters(self):
        from sfm_consensus.sample_consensus import RansacParameters

        with self.assertRaises(ValueError):
            RansacParameters(error_threshold=-1.0)
        with self.assertRaises(ValueError):
            RansacParameters(failure_probability=0.0)
        with self.assertRaises(ValueError):
            RansacParameters(min_inlier_ratio=1.5)
        with self.assertRaises(ValueError):
            RansacParameters(min_iterations=100, max_iterations=10)


class TestSampleConsensusEstimator(unittest.TestCase):
    """RANSAC 추정 테스트"""

    def _params(self, seed, **kwargs):
        from sfm_consensus.rng import RandomNumberGenerator
        from sfm_consensus.sample_consensus import RansacParameters

        kwargs.setdefault("error_threshold", 0.1)
        kwargs.setdefault("failure_probability", 0.001)
        return RansacParameters(rng=RandomNumberGenerator(seed), **kwargs)

    def test_inlier_count_matches_ratio(self):
        """인라이어 수가 p·N 근처"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator, RansacStatus

        data = make_line_data(200, 0.7, seed=1)
        for seed in range(5):
            model, summary = SampleConsensusEstimator(LineEstimator(), self._params(seed)).estimate(data)

            self.assertTrue(summary.success)
            self.assertEqual(summary.status, RansacStatus.SUCCESS)
            self.assertIsNotNone(model)
            self.assertGreaterEqual(summary.num_inliers, 140)
            self.assertLessEqual(summary.num_inliers, 145)
            self.assertGreater(summary.confidence, 0.99)
            self.assertEqual(summary.num_input_data_points, 200)

    def test_model_accuracy(self):
        """추정된 직선이 y = 2x + 1"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator

        data = make_line_data(100, 0.8, seed=2)
        model, _ = SampleConsensusEstimator(
            LineEstimator(), self._params(0, use_refinement=True)
        ).estimate(data)

        a, b, c = model
        self.assertAlmostEqual(-a / b, 2.0, places=6)
        self.assertAlmostEqual(-c / b, 1.0, places=6)

    def test_determinism(self):
        """같은 시드 + 같은 입력 → 같은 결과"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator

        data = make_line_data(100, 0.5, seed=3)
        _, summary1 = SampleConsensusEstimator(LineEstimator(), self._params(42)).estimate(data)
        _, summary2 = SampleConsensusEstimator(LineEstimator(), self._params(42)).estimate(data)

        self.assertEqual(summary1.inliers, summary2.inliers)
        self.assertEqual(summary1.num_iterations, summary2.num_iterations)

    def test_inliers_sorted_unique(self):
        from sfm_consensus.sample_consensus import SampleConsensusEstimator

        data = make_line_data(100, 0.6, seed=4)
        _, summary = SampleConsensusEstimator(LineEstimator(), self._params(1)).estimate(data)

        self.assertEqual(summary.inliers, sorted(set(summary.inliers)))
        self.assertTrue(all(0 <= i < 100 for i in summary.inliers))

    def test_below_minimal_sample_size(self):
        """최소 샘플 크기보다 적은 입력은 즉시 실패"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator, RansacStatus

        model, summary = SampleConsensusEstimator(
            LineEstimator(), self._params(0)
        ).estimate([np.array([0.0, 1.0])])

        self.assertIsNone(model)
        self.assertFalse(summary.success)
        self.assertEqual(summary.status, RansacStatus.INSUFFICIENT_DATA)
        self.assertEqual(summary.num_iterations, 0)
        self.assertTrue(summary.message)

    def test_degenerate_samples_consume_iterations(self):
        """퇴화 샘플만 나오면 최대 반복 후 실패"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator, RansacStatus

        data = make_line_data(50, 0.8, seed=5)
        model, summary = SampleConsensusEstimator(
            DegenerateEstimator(), self._params(0, min_iterations=10, max_iterations=20)
        ).estimate(data)

        self.assertIsNone(model)
        self.assertEqual(summary.status, RansacStatus.INSUFFICIENT_SUPPORT)
        self.assertEqual(summary.num_iterations, 20)

    def test_estimator_exceptions_are_degenerate(self):
        """추정기/정제 예외는 estimate 밖으로 나가지 않음"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator, RansacStatus

        data = make_line_data(100, 1.0, seed=7)
        model, summary = SampleConsensusEstimator(
            FlakyEstimator(), self._params(0, min_iterations=20, use_refinement=True)
        ).estimate(data)

        self.assertTrue(summary.success)
        self.assertIsNotNone(model)
        self.assertEqual(summary.num_inliers, 100)

        class AlwaysRaising(LineEstimator):
            def estimate_model(self, data):
                raise RuntimeError("solver failure")

        model, summary = SampleConsensusEstimator(
            AlwaysRaising(), self._params(0, min_iterations=5, max_iterations=15)
        ).estimate(data)

        self.assertIsNone(model)
        self.assertEqual(summary.status, RansacStatus.INSUFFICIENT_SUPPORT)
        self.assertEqual(summary.num_iterations, 15)

    def test_adaptive_termination(self):
        """인라이어만 있으면 최소 반복 횟수에서 종료"""
        from sfm_consensus.sample_consensus import SampleConsensusEstimator

        data = make_line_data(50, 1.0, seed=6)
        _, summary = SampleConsensusEstimator(
            LineEstimator(), self._params(0, min_iterations=5, max_iterations=1000)
        ).estimate(data)

        self.assertEqual(summary.num_inliers, 50)
        self.assertEqual(summary.num_iterations, 5)


if __name__ == "__main__":
    unittest.main(verbosity=2)
