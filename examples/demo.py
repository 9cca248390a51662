"""
Reconstruction Builder Demo Script

재구성 빌더 데모 스크립트입니다.
실제 이미지 없이 합성 장면으로 RANSAC 추정부터 재구성까지 시연합니다.
"""

import sys
import logging
import cv2
import numpy as np
from pathlib import Path

# 프로젝트 루트를 path에 추가
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sfm_consensus.camera import CameraIntrinsicsPrior
from sfm_consensus.correspondence import correspondences_from_points
from sfm_consensus.matches_database import ImagePairMatch
from sfm_consensus.rng import RandomNumberGenerator

K = np.array([
    [500, 0, 320],
    [0, 500, 240],
    [0, 0, 1]
], dtype=np.float64)


def create_synthetic_scene(num_cameras, offset, rng):
    """
    합성 테스트 데이터를 생성합니다.

    카메라는 x축을 따라 늘어서 있고, 3D 점은 카메라 앞에 있습니다.

    Returns:
        List[np.ndarray]: 카메라별 Nx2 픽셀 좌표
    """
    n_points = 150
    points_3d = np.column_stack([rng.uniform(-2, 2, n_points),
                                 rng.uniform(-2, 2, n_points),
                                 rng.uniform(6, 10, n_points)])
    points_3d[:, 0] += offset

    pixels = []
    for i in range(num_cameras):
        R = cv2.Rodrigues(np.array([0.0, 0.03 * i, 0.0]))[0]
        c = np.array([offset + 0.6 * i, 0.0, 0.0])
        projected = (points_3d - c) @ R.T @ K.T
        pixels.append(projected[:, :2] / projected[:, 2:3])
    return pixels


def demo_fundamental_matrix():
    """기초 행렬 RANSAC 데모"""
    from sfm_consensus.fundamental_matrix import estimate_fundamental_matrix, verify_epipolar_constraint
    from sfm_consensus.sample_consensus import RansacParameters

    print("\n" + "="*50)
    print("데모 1: 기초 행렬 RANSAC")
    print("="*50 + "\n")

    rng = np.random.default_rng(42)
    pixels = create_synthetic_scene(2, 0.0, rng)
    pts1, pts2 = pixels[0], pixels[1].copy()

    # 20% 아웃라이어
    pts2[:30] = np.column_stack([rng.uniform(0, 640, 30), rng.uniform(0, 480, 30)])

    params = RansacParameters(error_threshold=1.0, use_refinement=True,
                              rng=RandomNumberGenerator(42))
    F, summary = estimate_fundamental_matrix(params, correspondences_from_points(pts1, pts2))

    if F is not None:
        print("기초 행렬 F:")
        print(F)
        print(f"\n{summary.message}")

        mean_error, _ = verify_epipolar_constraint(pts1[30:], pts2[30:], F)
        print(f"인라이어 평균 Sampson 에러: {mean_error:.6f}")
    else:
        print(f"기초 행렬 계산 실패: {summary.message}")


def demo_reconstruction_builder():
    """두 개의 분리된 장면을 재구성하는 데모"""
    from sfm_consensus.reconstruction_builder import ReconstructionBuilder, ReconstructionBuilderOptions

    print("\n" + "="*50)
    print("데모 2: 재구성 빌더")
    print("="*50 + "\n")

    rng = np.random.default_rng(7)
    prior = CameraIntrinsicsPrior(focal_length=500.0, principal_point=(320.0, 240.0))
    builder = ReconstructionBuilder(ReconstructionBuilderOptions(num_threads=4, seed=7))

    candidates = []
    for scene_index, (num_cameras, offset) in enumerate([(4, 0.0), (3, 100.0)]):
        pixels = create_synthetic_scene(num_cameras, offset, rng)
        names = [f"scene{scene_index}_{i}.jpg" for i in range(num_cameras)]
        for name in names:
            builder.add_image(name, prior)
        for i in range(num_cameras):
            for j in range(i + 1, num_cameras):
                candidates.append(ImagePairMatch(
                    names[i], names[j],
                    correspondences=correspondences_from_points(pixels[i], pixels[j])
                ))

    num_verified = builder.add_candidate_matches(candidates)
    print(f"기하 검증 통과: {num_verified}/{len(candidates)} 쌍")

    builder.extract_and_match_features()
    success, reconstructions = builder.build_reconstruction()

    print(f"\n=== 결과 (성공: {success}) ===")
    for i, reconstruction in enumerate(reconstructions):
        names = [reconstruction.view(v).name for v in reconstruction.view_ids()]
        print(f"  재구성 {i + 1}: 카메라 {reconstruction.num_views}개, "
              f"3D 점 {reconstruction.num_tracks}개")
        print(f"    뷰: {', '.join(names)}")


def main():
    """모든 데모 실행"""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("="*60)
    print("Sample Consensus / Reconstruction Builder 데모")
    print("="*60)

    demo_fundamental_matrix()
    demo_reconstruction_builder()

    print("\n" + "="*60)
    print("모든 데모 완료!")
    print("="*60)


if __name__ == "__main__":
    main()
