"""
Triangulation Module

여러 뷰의 관측과 카메라 행렬로부터 트랙의 3D 점을 복원합니다.

삼각측량(Triangulation)은 여러 시점에서 관찰된 2D 점을 역투영하여
교차점을 계산하는 방식으로 3D 좌표를 추정합니다.
"""

import numpy as np
from typing import List, Optional, Sequence
from dataclasses import dataclass

from .camera import Camera


@dataclass
class TriangulationResult:
    """삼각측량 결과"""
    point_3d: np.ndarray        # (3,) 3D 점
    reprojection_error: float   # 평균 재투영 에러 (픽셀)
    triangulation_angle: float  # 최대 광선 사이 각도 (도)


def triangulate_multiple_views(projections: Sequence[np.ndarray],
                               points_2d: Sequence[np.ndarray]) -> np.ndarray:
    """
    여러 뷰에서 관찰된 점을 DLT로 삼각측량합니다.

    Ax = 0 형태의 선형 시스템을 SVD로 풀어 3D 점을 계산합니다.

    Args:
        projections: 3x4 투영 행렬 목록
        points_2d: 각 뷰에서의 2D 관측

    Returns:
        np.ndarray: 3D 점 (x, y, z)
    """
    num_views = len(projections)

    if num_views < 2:
        raise ValueError("최소 2개의 뷰가 필요합니다.")

    # A 행렬 구성 (2*num_views x 4)
    A = np.zeros((2 * num_views, 4))

    for i, (P, pt) in enumerate(zip(projections, points_2d)):
        x, y = pt[0], pt[1]
        A[2*i]     = x * P[2] - P[0]
        A[2*i + 1] = y * P[2] - P[1]

    # SVD 풀이
    _, _, Vt = np.linalg.svd(A)
    X = Vt[-1]  # 가장 작은 특이값에 해당하는 벡터

    if abs(X[3]) < 1e-12:
        raise np.linalg.LinAlgError("무한원점으로 삼각측량되었습니다.")

    # 동차 좌표 → 3D 좌표
    return X[:3] / X[3]


def max_triangulation_angle(cameras: Sequence[Camera], point_3d: np.ndarray) -> float:
    """카메라 중심에서 3D 점으로 향하는 광선들 사이의 최대 각도 (도)"""
    rays = []
    for camera in cameras:
        ray = point_3d - camera.position
        norm = np.linalg.norm(ray)
        if norm > 0:
            rays.append(ray / norm)

    max_angle = 0.0
    for i in range(len(rays)):
        for j in range(i + 1, len(rays)):
            cos_angle = np.clip(np.dot(rays[i], rays[j]), -1.0, 1.0)
            max_angle = max(max_angle, float(np.degrees(np.arccos(cos_angle))))
    return max_angle


class Triangulator:
    """
    삼각측량 클래스

    DLT(Direct Linear Transform) 방식으로 트랙의 3D 점을 계산하고,
    다음 조건을 모두 만족할 때만 결과를 반환합니다.
        - 모든 카메라 앞에 있음 (양의 깊이)
        - 평균 재투영 에러가 임계값 이하
        - 광선 사이 각도가 최소값 이상
    """

    def __init__(self, max_reprojection_error: float = 4.0,
                 min_triangulation_angle: float = 1.0):
        """
        삼각측량기 초기화

        Args:
            max_reprojection_error: 허용하는 평균 재투영 에러 (픽셀)
            min_triangulation_angle: 최소 삼각측량 각도 (도)
        """
        self.max_reprojection_error = max_reprojection_error
        self.min_triangulation_angle = min_triangulation_angle

    def triangulate(self, cameras: Sequence[Camera],
                    points_2d: Sequence[np.ndarray]) -> Optional[TriangulationResult]:
        """
        여러 카메라의 관측으로부터 3D 점을 복원합니다.

        Args:
            cameras: 추정된 카메라 목록
            points_2d: 각 카메라에서의 픽셀 관측

        Returns:
            TriangulationResult: 조건을 만족하지 못하면 None
        """
        if len(cameras) < 2:
            return None

        projections = [camera.projection_matrix() for camera in cameras]
        try:
            point_3d = triangulate_multiple_views(projections, points_2d)
        except np.linalg.LinAlgError:
            return None

        errors = []
        for camera, observed in zip(cameras, points_2d):
            depth, projected = camera.project_point(point_3d)
            if depth <= 0:
                return None
            errors.append(np.linalg.norm(projected - observed))

        reprojection_error = float(np.mean(errors))
        if reprojection_error > self.max_reprojection_error:
            return None

        angle = max_triangulation_angle(cameras, point_3d)
        if angle < self.min_triangulation_angle:
            return None

        return TriangulationResult(
            point_3d=point_3d,
            reprojection_error=reprojection_error,
            triangulation_angle=angle
        )


def compute_reprojection_errors(cameras: List[Camera], points_2d: List[np.ndarray],
                                point_3d: np.ndarray) -> np.ndarray:
    """
    재투영 에러를 계산합니다.

    재투영 에러 = 원래 2D 점과 3D 점을 다시 투영한 점 사이의 거리
    """
    errors = []
    for camera, observed in zip(cameras, points_2d):
        _, projected = camera.project_point(point_3d)
        errors.append(np.linalg.norm(projected - observed))
    return np.array(errors)
