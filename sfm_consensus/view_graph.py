"""
View Graph Module

뷰를 노드로, 두 뷰 사이의 상대 기하(TwoViewInfo)를 엣지로 가지는 그래프입니다.

엣지는 항상 (작은 view id → 큰 view id) 방향의 변환으로 저장됩니다.
반대 순서로 추가하면 기하 정보를 뒤집어서(swap_cameras) 저장합니다.
"""

import copy
import logging
import cv2
import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components as csgraph_connected_components
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

ViewIdPair = Tuple[int, int]


@dataclass
class TwoViewInfo:
    """
    두 뷰 사이의 상대 기하

    Attributes:
        focal_length_1, focal_length_2: 각 뷰의 초점 거리
        rotation_2: 뷰 1 기준 뷰 2의 상대 회전 (angle-axis, R2 R1^T)
        position_2: 뷰 1 좌표계에서 뷰 2 카메라 중심 (단위 벡터)
        num_verified_matches: 기하 검증을 통과한 매칭 수
        num_homography_inliers: 호모그래피 인라이어 수
        visibility_score: 매칭의 이미지 내 분포 점수
    """
    focal_length_1: float = 0.0
    focal_length_2: float = 0.0
    rotation_2: np.ndarray = field(default_factory=lambda: np.zeros(3))
    position_2: np.ndarray = field(default_factory=lambda: np.zeros(3))
    num_verified_matches: int = 0
    num_homography_inliers: int = 0
    visibility_score: int = 0


def swap_cameras(info: TwoViewInfo) -> TwoViewInfo:
    """
    뷰 1과 뷰 2의 역할을 바꾼 TwoViewInfo를 반환합니다.

    R' = R^T,  c' = -R c  (단위 벡터로 정규화)
    """
    R, _ = cv2.Rodrigues(np.asarray(info.rotation_2, dtype=np.float64).reshape(3, 1))
    new_position = -R @ np.asarray(info.position_2, dtype=np.float64)
    norm = np.linalg.norm(new_position)
    if norm > 0:
        new_position = new_position / norm

    swapped = copy.deepcopy(info)
    swapped.focal_length_1, swapped.focal_length_2 = info.focal_length_2, info.focal_length_1
    swapped.rotation_2 = -np.asarray(info.rotation_2, dtype=np.float64)
    swapped.position_2 = new_position
    return swapped


class DuplicateEdgePolicy(Enum):
    """같은 뷰 쌍에 엣지를 다시 추가할 때의 처리 방식"""
    OVERWRITE = "overwrite"     # 새 엣지로 덮어쓰기
    REJECT = "reject"           # 기존 엣지 유지, 추가 거부
    MERGE = "merge"             # 검증된 매칭이 더 많은 쪽의 기하 유지


class ViewGraph:
    """
    뷰 그래프

    쓰기 작업은 호출자가 직렬화해야 합니다. 읽기 전용 조회는 동시에 해도 안전합니다.

    Attributes:
        duplicate_policy: 중복 엣지 처리 방식
    """

    def __init__(self, duplicate_policy: DuplicateEdgePolicy = DuplicateEdgePolicy.OVERWRITE):
        self.duplicate_policy = duplicate_policy
        self._edges: Dict[ViewIdPair, TwoViewInfo] = {}
        self._neighbors: Dict[int, Set[int]] = {}

    @staticmethod
    def _key(view_id_1: int, view_id_2: int) -> ViewIdPair:
        return (view_id_1, view_id_2) if view_id_1 < view_id_2 else (view_id_2, view_id_1)

    def add_edge(self, view_id_1: int, view_id_2: int, info: TwoViewInfo) -> bool:
        """
        엣지를 추가합니다.

        info는 view_id_1 → view_id_2 방향의 기하로 해석하며,
        view_id_1 > view_id_2 이면 뒤집어서 저장합니다.

        Returns:
            bool: 엣지가 저장되었는지 여부 (REJECT 정책으로 거부되면 False)
        """
        if view_id_1 == view_id_2:
            raise ValueError(f"자기 자신으로의 엣지는 추가할 수 없습니다: {view_id_1}")

        if view_id_1 > view_id_2:
            info = swap_cameras(info)
        key = self._key(view_id_1, view_id_2)

        existing = self._edges.get(key)
        if existing is not None:
            if self.duplicate_policy is DuplicateEdgePolicy.REJECT:
                logger.debug(f"중복 엣지 거부: {key}")
                return False
            if (self.duplicate_policy is DuplicateEdgePolicy.MERGE and
                    existing.num_verified_matches >= info.num_verified_matches):
                logger.debug(f"중복 엣지 병합: 기존 엣지 유지 {key}")
                return True

        self._edges[key] = info
        self._neighbors.setdefault(key[0], set()).add(key[1])
        self._neighbors.setdefault(key[1], set()).add(key[0])
        return True

    def remove_edge(self, view_id_1: int, view_id_2: int) -> bool:
        key = self._key(view_id_1, view_id_2)
        if key not in self._edges:
            return False

        del self._edges[key]
        for a, b in (key, key[::-1]):
            neighbors = self._neighbors.get(a)
            if neighbors is not None:
                neighbors.discard(b)
                if not neighbors:
                    del self._neighbors[a]
        return True

    def remove_view(self, view_id: int) -> bool:
        """뷰와 그 뷰에 연결된 모든 엣지를 삭제합니다."""
        if view_id not in self._neighbors:
            return False
        for neighbor_id in list(self._neighbors[view_id]):
            self.remove_edge(view_id, neighbor_id)
        return True

    @property
    def num_views(self) -> int:
        return len(self._neighbors)

    @property
    def num_edges(self) -> int:
        return len(self._edges)

    def has_view(self, view_id: int) -> bool:
        return view_id in self._neighbors

    def has_edge(self, view_id_1: int, view_id_2: int) -> bool:
        return self._key(view_id_1, view_id_2) in self._edges

    def get_edge(self, view_id_1: int, view_id_2: int) -> Optional[TwoViewInfo]:
        """(작은 id → 큰 id) 방향으로 저장된 엣지를 반환합니다."""
        return self._edges.get(self._key(view_id_1, view_id_2))

    def get_neighbor_ids(self, view_id: int) -> Set[int]:
        return set(self._neighbors.get(view_id, ()))

    def view_ids(self) -> List[int]:
        return sorted(self._neighbors)

    def edges(self) -> Dict[ViewIdPair, TwoViewInfo]:
        return dict(self._edges)

    def connected_components(self) -> List[Set[int]]:
        """연결 요소 목록 (크기 내림차순)"""
        if not self._edges:
            return []

        view_ids = sorted(self._neighbors)
        id_to_index = {view_id: i for i, view_id in enumerate(view_ids)}
        rows = [id_to_index[a] for a, _ in self._edges]
        cols = [id_to_index[b] for _, b in self._edges]
        adjacency = csr_matrix((np.ones(len(rows)), (rows, cols)),
                               shape=(len(view_ids), len(view_ids)))
        _, labels = csgraph_connected_components(adjacency, directed=False, return_labels=True)

        grouped: Dict[int, Set[int]] = {}
        for view_id, label in zip(view_ids, labels):
            grouped.setdefault(int(label), set()).add(view_id)

        components = list(grouped.values())
        components.sort(key=lambda c: (-len(c), min(c)))
        return components

    def largest_connected_component(self) -> Set[int]:
        components = self.connected_components()
        return components[0] if components else set()
