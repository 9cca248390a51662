"""
Camera Module

카메라 내부 파라미터 사전 정보(prior)와 추정된 카메라 포즈를 표현합니다.

좌표계 규약:
    x_cam = R (X - c)
    P = K [R | -R c]
여기서 R은 월드→카메라 회전, c는 월드 좌표계에서의 카메라 중심입니다.
"""

import cv2
import numpy as np
from typing import Optional, Tuple
from dataclasses import dataclass, field


@dataclass
class CameraIntrinsicsPrior:
    """
    카메라 내부 파라미터 사전 정보

    EXIF 등에서 얻은 값이며, focal_length가 없으면 보정되지 않은(uncalibrated) 뷰로 취급합니다.
    """
    focal_length: Optional[float] = None
    principal_point: Optional[Tuple[float, float]] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None

    @property
    def is_calibrated(self) -> bool:
        return self.focal_length is not None

    def calibration_matrix(self) -> np.ndarray:
        """
        3x3 카메라 행렬 K를 생성합니다.

        주점이 없으면 이미지 중심, 이미지 크기도 없으면 원점을 사용합니다.
        """
        if self.focal_length is None:
            raise ValueError("focal_length가 없는 prior로는 K를 만들 수 없습니다.")

        if self.principal_point is not None:
            cx, cy = self.principal_point
        elif self.image_width is not None and self.image_height is not None:
            cx, cy = self.image_width / 2.0, self.image_height / 2.0
        else:
            cx, cy = 0.0, 0.0

        f = float(self.focal_length)
        return np.array([
            [f, 0, cx],
            [0, f, cy],
            [0, 0, 1]
        ], dtype=np.float64)


@dataclass
class Camera:
    """
    추정된 카메라

    Attributes:
        orientation: 월드→카메라 회전의 angle-axis (3,)
        position: 월드 좌표계의 카메라 중심 (3,)
        K: 3x3 카메라 내부 파라미터 행렬
    """
    orientation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    K: np.ndarray = field(default_factory=lambda: np.eye(3))

    @classmethod
    def from_prior(cls, prior: CameraIntrinsicsPrior) -> "Camera":
        return cls(K=prior.calibration_matrix())

    @property
    def rotation_matrix(self) -> np.ndarray:
        R, _ = cv2.Rodrigues(np.asarray(self.orientation, dtype=np.float64).reshape(3, 1))
        return R

    def set_orientation_from_rotation_matrix(self, R: np.ndarray) -> None:
        rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
        self.orientation = rvec.ravel()

    @property
    def translation(self) -> np.ndarray:
        """t = -R c"""
        return -self.rotation_matrix @ np.asarray(self.position, dtype=np.float64)

    def projection_matrix(self) -> np.ndarray:
        """
        3x4 투영 행렬을 생성합니다.

        P = K [R | t]

        Returns:
            np.ndarray: 3x4 투영 행렬
        """
        Rt = np.hstack([self.rotation_matrix, self.translation.reshape(3, 1)])
        return self.K @ Rt

    def project_point(self, point_3d: np.ndarray) -> Tuple[float, np.ndarray]:
        """
        3D 점을 이미지로 투영합니다.

        Returns:
            Tuple[depth, pixel]: 카메라 좌표계 깊이와 2D 픽셀 좌표
        """
        point_cam = self.rotation_matrix @ (np.asarray(point_3d, dtype=np.float64) - self.position)
        depth = float(point_cam[2])
        pixel_h = self.K @ point_cam
        return depth, pixel_h[:2] / pixel_h[2]

    def pixel_to_normalized(self, pixels: np.ndarray) -> np.ndarray:
        """픽셀 좌표 (Nx2) 를 정규화 이미지 좌표로 변환합니다."""
        return pixel_to_normalized(pixels, self.K)


def pixel_to_normalized(pixels: np.ndarray, K: np.ndarray) -> np.ndarray:
    """
    x_n = K^-1 x

    Args:
        pixels: Nx2 또는 (2,) 픽셀 좌표
        K: 3x3 카메라 행렬

    Returns:
        np.ndarray: 입력과 같은 모양의 정규화 좌표
    """
    pixels = np.asarray(pixels, dtype=np.float64)
    single = pixels.ndim == 1
    pts = pixels.reshape(-1, 2)
    pts_h = np.hstack([pts, np.ones((len(pts), 1))])
    normalized = (np.linalg.inv(K) @ pts_h.T).T
    normalized = normalized[:, :2] / normalized[:, 2:3]
    return normalized[0] if single else normalized


def relative_pose_from_essential(E: np.ndarray,
                                 pts1_normalized: np.ndarray,
                                 pts2_normalized: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray, int]]:
    """
    에센셜 행렬을 R, t로 분해합니다.

    에센셜 행렬은 4가지 가능한 (R, t) 조합으로 분해되지만,
    cheirality check를 통해 올바른 조합을 선택합니다.
    x2 = R x1 + t 관계를 만족합니다.

    Args:
        E: 3x3 에센셜 행렬
        pts1_normalized, pts2_normalized: 정규화 좌표의 대응점 (Nx2)

    Returns:
        Tuple[R, t, num_in_front]: 실패 시 None
    """
    if E is None or E.shape != (3, 3) or len(pts1_normalized) == 0:
        return None

    try:
        # recoverPose는 내부적으로 cheirality check를 수행
        num_in_front, R, t, _ = cv2.recoverPose(
            E,
            np.ascontiguousarray(pts1_normalized, dtype=np.float64),
            np.ascontiguousarray(pts2_normalized, dtype=np.float64),
            np.eye(3)
        )
    except cv2.error:
        return None

    if num_in_front <= 0:
        return None
    return R, t.ravel(), int(num_in_front)
