"""
Reconstruction Module

뷰(View), 트랙(Track), 그리고 이들을 담는 재구성(Reconstruction)을 정의합니다.

- View: 이미지 한 장. 이름, 내부 파라미터 prior, 추정된 카메라, 추정 여부
- Track: 하나의 3D 점에 대응하는 여러 뷰의 관측 (뷰당 관측 하나)
- Scene: 재구성과 뷰 그래프를 함께 관리하여 삭제가 항상 양쪽에 반영되도록 합니다.

ID는 한 재구성 안에서 삭제된 뒤에도 재사용되지 않습니다.
"""

import copy
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .camera import Camera, CameraIntrinsicsPrior
from .view_graph import ViewGraph

logger = logging.getLogger(__name__)

Observations = Union[Mapping[int, np.ndarray], Iterable[Tuple[int, np.ndarray]]]


@dataclass
class View:
    """재구성 안의 이미지"""
    name: str
    camera_intrinsics_prior: CameraIntrinsicsPrior = field(default_factory=CameraIntrinsicsPrior)
    camera: Camera = field(default_factory=Camera)
    is_estimated: bool = False
    track_ids: Set[int] = field(default_factory=set)


@dataclass
class Track:
    """
    여러 뷰에 걸친 관측 체인

    Attributes:
        observations: view_id → 2D 관측 (픽셀 좌표)
        point: 추정된 3D 점
        is_estimated: 3D 점 추정 여부
    """
    observations: Dict[int, np.ndarray] = field(default_factory=dict)
    point: np.ndarray = field(default_factory=lambda: np.zeros(3))
    is_estimated: bool = False

    @property
    def view_ids(self) -> Set[int]:
        return set(self.observations)

    @property
    def num_views(self) -> int:
        return len(self.observations)


class Reconstruction:
    """
    뷰와 트랙의 집합

    Example:
        >>> reconstruction = Reconstruction()
        >>> v0 = reconstruction.add_view("img0.jpg")
        >>> v1 = reconstruction.add_view("img1.jpg")
        >>> t0 = reconstruction.add_track({v0: np.array([10., 20.]), v1: np.array([12., 21.])})
    """

    def __init__(self):
        self._views: Dict[int, View] = {}
        self._tracks: Dict[int, Track] = {}
        self._name_to_view_id: Dict[str, int] = {}
        self._next_view_id = 0
        self._next_track_id = 0

    # ---- 뷰 ----

    def add_view(self, name: str,
                 prior: Optional[CameraIntrinsicsPrior] = None) -> Optional[int]:
        """
        뷰를 추가합니다.

        Returns:
            int: 새 view id, 이미 같은 이름의 뷰가 있으면 None
        """
        if name in self._name_to_view_id:
            logger.warning(f"이미 존재하는 뷰 이름입니다: {name}")
            return None

        view_id = self._next_view_id
        self._next_view_id += 1

        view = View(name=name)
        if prior is not None:
            view.camera_intrinsics_prior = copy.deepcopy(prior)
        self._views[view_id] = view
        self._name_to_view_id[name] = view_id
        return view_id

    def remove_view(self, view_id: int) -> bool:
        """
        뷰를 삭제하고, 이 뷰의 관측을 트랙에서 제거합니다.
        관측이 두 개 미만으로 줄어든 트랙은 함께 삭제됩니다.
        """
        view = self._views.pop(view_id, None)
        if view is None:
            return False
        del self._name_to_view_id[view.name]

        for track_id in list(view.track_ids):
            track = self._tracks.get(track_id)
            if track is None:
                continue
            track.observations.pop(view_id, None)
            if track.num_views < 2:
                self.remove_track(track_id)
        return True

    def view(self, view_id: int) -> Optional[View]:
        return self._views.get(view_id)

    def view_id_from_name(self, name: str) -> Optional[int]:
        return self._name_to_view_id.get(name)

    def view_ids(self) -> List[int]:
        return sorted(self._views)

    @property
    def num_views(self) -> int:
        return len(self._views)

    # ---- 트랙 ----

    def add_track(self, observations: Observations) -> Optional[int]:
        """
        트랙을 추가합니다.

        Args:
            observations: {view_id: 2D 관측} 또는 (view_id, 관측) 쌍의 목록

        Returns:
            int: 새 track id. 뷰가 두 개 미만이거나, 같은 뷰가 중복되거나,
                 존재하지 않는 뷰를 참조하면 None
        """
        pairs = list(observations.items()) if isinstance(observations, Mapping) else list(observations)
        view_ids = [view_id for view_id, _ in pairs]

        if len(set(view_ids)) != len(view_ids):
            logger.debug("같은 뷰의 관측이 두 번 포함된 트랙은 추가할 수 없습니다.")
            return None
        if len(view_ids) < 2:
            logger.debug("트랙은 최소 두 개의 뷰에 걸쳐야 합니다.")
            return None
        missing = [view_id for view_id in view_ids if view_id not in self._views]
        if missing:
            logger.warning(f"재구성에 없는 뷰를 참조하는 트랙입니다: {missing}")
            return None

        track_id = self._next_track_id
        self._next_track_id += 1
        self._tracks[track_id] = Track(
            observations={view_id: np.asarray(feature, dtype=np.float64)
                          for view_id, feature in pairs}
        )
        for view_id in view_ids:
            self._views[view_id].track_ids.add(track_id)
        return track_id

    def remove_track(self, track_id: int) -> bool:
        track = self._tracks.pop(track_id, None)
        if track is None:
            return False
        for view_id in track.observations:
            view = self._views.get(view_id)
            if view is not None:
                view.track_ids.discard(track_id)
        return True

    def track(self, track_id: int) -> Optional[Track]:
        return self._tracks.get(track_id)

    def track_ids(self) -> List[int]:
        return sorted(self._tracks)

    @property
    def num_tracks(self) -> int:
        return len(self._tracks)

    # ---- 부분 재구성 ----

    def get_subset(self, view_ids: Iterable[int], track_ids: Iterable[int]) -> "Reconstruction":
        """
        주어진 뷰와 트랙만 담은 독립적인 복사본을 만듭니다. (ID 유지)

        선택되지 않은 뷰의 관측은 트랙에서 제거되며, 그 결과 두 뷰 미만이 된 트랙은 제외됩니다.
        """
        keep_views = set(view_ids) & set(self._views)
        keep_tracks = set(track_ids) & set(self._tracks)

        subset = Reconstruction()
        subset._next_view_id = self._next_view_id
        subset._next_track_id = self._next_track_id

        for view_id in sorted(keep_views):
            view = copy.deepcopy(self._views[view_id])
            view.track_ids = set()
            subset._views[view_id] = view
            subset._name_to_view_id[view.name] = view_id

        for track_id in sorted(keep_tracks):
            track = copy.deepcopy(self._tracks[track_id])
            track.observations = {view_id: feature
                                  for view_id, feature in track.observations.items()
                                  if view_id in keep_views}
            if track.num_views < 2:
                continue
            subset._tracks[track_id] = track
            for view_id in track.observations:
                subset._views[view_id].track_ids.add(track_id)

        return subset


class Scene:
    """
    작업 중인 재구성과 그 뷰 그래프를 함께 관리하는 집합체

    뷰 삭제는 항상 재구성과 뷰 그래프 양쪽에 반영됩니다.
    """

    def __init__(self, reconstruction: Optional[Reconstruction] = None,
                 view_graph: Optional[ViewGraph] = None):
        self.reconstruction = reconstruction if reconstruction is not None else Reconstruction()
        self.view_graph = view_graph if view_graph is not None else ViewGraph()

    @property
    def num_views(self) -> int:
        return self.reconstruction.num_views

    def remove_view(self, view_id: int) -> None:
        self.reconstruction.remove_view(view_id)
        self.view_graph.remove_view(view_id)

    def remove_uncalibrated_views(self) -> int:
        """
        focal length prior가 없는 뷰와 그 엣지를 삭제합니다. 여러 번 호출해도 결과는 같습니다.

        Returns:
            int: 삭제된 뷰 수
        """
        removed = 0
        for view_id in self.reconstruction.view_ids():
            view = self.reconstruction.view(view_id)
            if not view.camera_intrinsics_prior.is_calibrated:
                self.remove_view(view_id)
                removed += 1
        return removed

    def extract_subreconstruction(self, view_ids: Iterable[int],
                                  track_ids: Iterable[int]) -> Reconstruction:
        """추정된 뷰와 트랙만 담은 새 재구성을 만듭니다. 작업 장면과는 독립적입니다."""
        return self.reconstruction.get_subset(view_ids, track_ids)

    def remove_views_and_tracks(self, view_ids: Iterable[int], track_ids: Iterable[int]) -> None:
        for track_id in track_ids:
            self.reconstruction.remove_track(track_id)
        for view_id in view_ids:
            self.remove_view(view_id)
