"""
Correspondence Types

RANSAC 입력으로 쓰이는 대응점 타입입니다. 인덱스 [0, N) 로 참조되며 변경되지 않습니다.
"""

import numpy as np
from typing import Sequence, Tuple
from dataclasses import dataclass

from .camera import Camera


@dataclass(frozen=True)
class FeatureCorrespondence2D2D:
    """두 이미지 사이의 2D-2D 대응점"""
    feature1: np.ndarray
    feature2: np.ndarray


@dataclass(frozen=True)
class FeatureCorrespondence2D3D:
    """이미지 점과 월드 3D 점 사이의 2D-3D 대응점"""
    feature: np.ndarray
    world_point: np.ndarray


@dataclass(frozen=True)
class CameraAndFeatureCorrespondence2D3D:
    """
    자신의 카메라를 가진 2D-3D 대응점 (비중심 카메라 리그)

    Attributes:
        camera: 리그 좌표계 기준으로 포즈가 정해진 카메라
        observation: 픽셀 좌표 관측
        point3d: 월드 3D 점
    """
    camera: Camera
    observation: np.ndarray
    point3d: np.ndarray


def stack_2d2d(data: Sequence[FeatureCorrespondence2D2D]) -> Tuple[np.ndarray, np.ndarray]:
    """대응점 목록을 (Nx2, Nx2) 배열로 변환합니다."""
    pts1 = np.array([d.feature1 for d in data], dtype=np.float64).reshape(-1, 2)
    pts2 = np.array([d.feature2 for d in data], dtype=np.float64).reshape(-1, 2)
    return pts1, pts2


def stack_2d3d(data: Sequence[FeatureCorrespondence2D3D]) -> Tuple[np.ndarray, np.ndarray]:
    """대응점 목록을 (Nx2, Nx3) 배열로 변환합니다."""
    features = np.array([d.feature for d in data], dtype=np.float64).reshape(-1, 2)
    world_points = np.array([d.world_point for d in data], dtype=np.float64).reshape(-1, 3)
    return features, world_points


def correspondences_from_points(pts1: np.ndarray,
                                pts2: np.ndarray) -> list:
    """Nx2 배열 두 개로부터 2D-2D 대응점 목록을 만듭니다."""
    return [FeatureCorrespondence2D2D(np.asarray(p1, dtype=np.float64),
                                      np.asarray(p2, dtype=np.float64))
            for p1, p2 in zip(pts1, pts2)]


def stack_camera_2d3d(data: Sequence[CameraAndFeatureCorrespondence2D3D]
                      ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    카메라별 대응점을 배열로 변환합니다.

    Returns:
        Tuple[rotations, positions, Ks, observations, points]:
            (Nx3x3, Nx3, Nx3x3, Nx2, Nx3)
    """
    rotations = np.array([d.camera.rotation_matrix for d in data], dtype=np.float64).reshape(-1, 3, 3)
    positions = np.array([d.camera.position for d in data], dtype=np.float64).reshape(-1, 3)
    Ks = np.array([d.camera.K for d in data], dtype=np.float64).reshape(-1, 3, 3)
    observations = np.array([d.observation for d in data], dtype=np.float64).reshape(-1, 2)
    points = np.array([d.point3d for d in data], dtype=np.float64).reshape(-1, 3)
    return rotations, positions, Ks, observations, points
