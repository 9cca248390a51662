"""
Track Builder Module

뷰 쌍 사이의 특징점 대응을 union-find로 묶어 여러 뷰에 걸친 트랙을 만듭니다.

view1의 점 a ↔ view2의 점 b, view2의 점 b ↔ view3의 점 c 대응이 있으면
(view1, a), (view2, b), (view3, c)가 하나의 트랙이 됩니다.
"""

import logging
import numpy as np
from collections import defaultdict
from typing import Dict, List, Tuple

from .reconstruction import Reconstruction

logger = logging.getLogger(__name__)

FeatureKey = Tuple[int, Tuple[float, float]]


def _make_key(view_id: int, feature: np.ndarray) -> FeatureKey:
    feature = np.asarray(feature, dtype=np.float64).ravel()
    return (int(view_id), (float(feature[0]), float(feature[1])))


class TrackBuilder:
    """
    트랙 생성기

    Attributes:
        min_track_length: 트랙이 걸쳐야 하는 최소 뷰 수
        max_track_length: 트랙이 걸칠 수 있는 최대 뷰 수
    """

    def __init__(self, min_track_length: int = 2, max_track_length: int = 50):
        if min_track_length < 2:
            raise ValueError(f"min_track_length는 2 이상이어야 합니다: {min_track_length}")
        if max_track_length < min_track_length:
            raise ValueError(
                f"max_track_length({max_track_length}) < min_track_length({min_track_length})"
            )
        self.min_track_length = min_track_length
        self.max_track_length = max_track_length

        self._parent: Dict[FeatureKey, FeatureKey] = {}
        self._rank: Dict[FeatureKey, int] = {}

    @property
    def num_features(self) -> int:
        return len(self._parent)

    def _add(self, key: FeatureKey) -> None:
        if key not in self._parent:
            self._parent[key] = key
            self._rank[key] = 0

    def _find(self, key: FeatureKey) -> FeatureKey:
        root = key
        while self._parent[root] != root:
            root = self._parent[root]
        # 경로 압축
        while self._parent[key] != root:
            self._parent[key], key = root, self._parent[key]
        return root

    def _union(self, key1: FeatureKey, key2: FeatureKey) -> None:
        root1, root2 = self._find(key1), self._find(key2)
        if root1 == root2:
            return
        if self._rank[root1] < self._rank[root2]:
            root1, root2 = root2, root1
        self._parent[root2] = root1
        if self._rank[root1] == self._rank[root2]:
            self._rank[root1] += 1

    def add_feature_correspondence(self, view_id1: int, feature1: np.ndarray,
                                   view_id2: int, feature2: np.ndarray) -> None:
        """
        두 뷰의 관측을 같은 트랙으로 묶습니다.

        같은 뷰 안의 대응은 무시합니다.
        """
        if view_id1 == view_id2:
            logger.warning(f"같은 뷰({view_id1}) 안의 대응은 트랙에 추가하지 않습니다.")
            return

        key1 = _make_key(view_id1, feature1)
        key2 = _make_key(view_id2, feature2)
        self._add(key1)
        self._add(key2)
        self._union(key1, key2)

    def build_tracks(self, reconstruction: Reconstruction) -> int:
        """
        연결 요소마다 트랙을 만들어 재구성에 추가합니다.

        다음 연결 요소는 오류 없이 제외됩니다:
            - 걸친 뷰 수가 [min_track_length, max_track_length] 범위를 벗어난 경우
            - 같은 뷰의 관측이 두 개 이상 포함된 경우 (모호한 대응 체인)

        Args:
            reconstruction: 트랙을 추가할 재구성

        Returns:
            int: 추가된 트랙 수
        """
        components: Dict[FeatureKey, List[FeatureKey]] = defaultdict(list)
        for key in self._parent:
            components[self._find(key)].append(key)

        num_added = 0
        num_inconsistent = 0
        num_bad_length = 0
        num_rejected = 0

        for members in components.values():
            view_ids = [view_id for view_id, _ in members]
            if len(set(view_ids)) != len(view_ids):
                num_inconsistent += 1
                continue
            if not self.min_track_length <= len(view_ids) <= self.max_track_length:
                num_bad_length += 1
                continue

            observations = {view_id: np.array(feature) for view_id, feature in members}
            if reconstruction.add_track(observations) is None:
                num_rejected += 1
                continue
            num_added += 1

        logger.info(f"트랙 {num_added}개 생성 (전체 연결 요소 {len(components)}개, "
                    f"불일치 제외 {num_inconsistent}개, 길이 제외 {num_bad_length}개, "
                    f"재구성 거부 {num_rejected}개)")
        return num_added
