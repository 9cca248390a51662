"""
뷰 그래프 / 트랙 / 재구성 테스트 모듈
"""

import sys
import cv2
import numpy as np
from pathlib import Path
import unittest

# 프로젝트 루트를 path에 추가
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def make_info(num_verified_matches=50, rotation=(0.0, 0.1, 0.0), position=(1.0, 0.0, 0.0)):
    from sfm_consensus.view_graph import TwoViewInfo

    return TwoViewInfo(
        focal_length_1=500.0,
        focal_length_2=600.0,
        rotation_2=np.array(rotation, dtype=np.float64),
        position_2=np.array(position, dtype=np.float64),
        num_verified_matches=num_verified_matches
    )


class TestTwoViewInfo(unittest.TestCase):
    """TwoViewInfo 방향 전환 테스트"""

    def test_swap_cameras(self):
        """뷰 1/2를 바꾸면 회전은 역행렬, 중심은 -R c"""
        from sfm_consensus.view_graph import swap_cameras

        info = make_info(rotation=(0.1, -0.2, 0.3), position=(0.6, 0.0, 0.8))
        swapped = swap_cameras(info)

        R = cv2.Rodrigues(info.rotation_2)[0]
        R_swapped = cv2.Rodrigues(swapped.rotation_2)[0]
        np.testing.assert_allclose(R_swapped, R.T, atol=1e-10)

        expected = -R @ info.position_2
        np.testing.assert_allclose(swapped.position_2, expected / np.linalg.norm(expected), atol=1e-12)
        self.assertEqual(swapped.focal_length_1, 600.0)
        self.assertEqual(swapped.focal_length_2, 500.0)

        # 두 번 바꾸면 원래대로
        twice = swap_cameras(swapped)
        np.testing.assert_allclose(twice.rotation_2, info.rotation_2, atol=1e-12)
        np.testing.assert_allclose(twice.position_2, info.position_2, atol=1e-12)


class TestViewGraph(unittest.TestCase):
    """뷰 그래프 테스트"""

    def test_add_edge_normalizes_direction(self):
        """큰 id → 작은 id로 추가하면 뒤집어서 저장"""
        from sfm_consensus.view_graph import ViewGraph, swap_cameras

        graph = ViewGraph()
        info = make_info()
        self.assertTrue(graph.add_edge(3, 1, info))

        self.assertTrue(graph.has_edge(1, 3))
        self.assertTrue(graph.has_edge(3, 1))
        self.assertEqual(list(graph.edges()), [(1, 3)])
        np.testing.assert_allclose(graph.get_edge(3, 1).rotation_2, swap_cameras(info).rotation_2)

    def test_self_edge(self):
        from sfm_consensus.view_graph import ViewGraph

        with self.assertRaises(ValueError):
            ViewGraph().add_edge(2, 2, make_info())

    def test_duplicate_edge_policies(self):
        """중복 엣지 정책: 덮어쓰기 / 거부 / 병합"""
        from sfm_consensus.view_graph import DuplicateEdgePolicy, ViewGraph

        overwrite = ViewGraph(DuplicateEdgePolicy.OVERWRITE)
        overwrite.add_edge(0, 1, make_info(100))
        self.assertTrue(overwrite.add_edge(0, 1, make_info(20)))
        self.assertEqual(overwrite.get_edge(0, 1).num_verified_matches, 20)

        reject = ViewGraph(DuplicateEdgePolicy.REJECT)
        reject.add_edge(0, 1, make_info(100))
        self.assertFalse(reject.add_edge(0, 1, make_info(20)))
        self.assertEqual(reject.get_edge(0, 1).num_verified_matches, 100)

        merge = ViewGraph(DuplicateEdgePolicy.MERGE)
        merge.add_edge(0, 1, make_info(100))
        merge.add_edge(0, 1, make_info(20))
        self.assertEqual(merge.get_edge(0, 1).num_verified_matches, 100)
        merge.add_edge(1, 0, make_info(150))
        self.assertEqual(merge.get_edge(0, 1).num_verified_matches, 150)
        self.assertEqual(merge.num_edges, 1)

    def test_remove_view(self):
        """뷰 삭제 시 연결된 엣지도 삭제"""
        from sfm_consensus.view_graph import ViewGraph

        graph = ViewGraph()
        graph.add_edge(0, 1, make_info())
        graph.add_edge(1, 2, make_info())
        graph.add_edge(0, 2, make_info())

        self.assertTrue(graph.remove_view(1))
        self.assertFalse(graph.has_view(1))
        self.assertEqual(graph.num_edges, 1)
        self.assertEqual(graph.get_neighbor_ids(0), {2})
        self.assertFalse(graph.remove_view(1))

        # 엣지가 모두 사라진 뷰는 그래프에서 제거됨
        graph.remove_edge(0, 2)
        self.assertEqual(graph.num_views, 0)

    def test_connected_components(self):
        """연결 요소는 크기 내림차순"""
        from sfm_consensus.view_graph import ViewGraph

        graph = ViewGraph()
        graph.add_edge(10, 11, make_info())
        graph.add_edge(0, 1, make_info())
        graph.add_edge(1, 2, make_info())
        graph.add_edge(5, 6, make_info())

        components = graph.connected_components()
        self.assertEqual(components, [{0, 1, 2}, {5, 6}, {10, 11}])
        self.assertEqual(graph.largest_connected_component(), {0, 1, 2})
        self.assertEqual(ViewGraph().largest_connected_component(), set())

    def test_connected_components_after_removal(self):
        """뷰 삭제로 그래프가 끊어지면 요소가 나뉨 (id는 연속적이지 않음)"""
        from sfm_consensus.view_graph import ViewGraph

        graph = ViewGraph()
        graph.add_edge(3, 40, make_info())
        graph.add_edge(40, 7, make_info())
        graph.add_edge(7, 100, make_info())
        graph.add_edge(100, 250, make_info())
        self.assertEqual(graph.connected_components(), [{3, 7, 40, 100, 250}])

        graph.remove_view(100)
        self.assertEqual(graph.connected_components(), [{3, 7, 40}])
        self.assertFalse(graph.has_view(250))

        graph.remove_view(40)
        self.assertEqual(graph.connected_components(), [])


class TestTrackBuilder(unittest.TestCase):
    """트랙 생성 테스트"""

    def setUp(self):
        from sfm_consensus.reconstruction import Reconstruction

        self.reconstruction = Reconstruction()
        self.view_ids = [self.reconstruction.add_view(f"img{i}.jpg") for i in range(4)]

    def test_chain_becomes_one_track(self):
        """view0 ↔ view1, view1 ↔ view2 대응 → 세 뷰에 걸친 트랙 하나"""
        from sfm_consensus.track_builder import TrackBuilder

        v0, v1, v2, _ = self.view_ids
        builder = TrackBuilder()
        builder.add_feature_correspondence(v0, np.array([10.0, 20.0]), v1, np.array([11.0, 21.0]))
        builder.add_feature_correspondence(v1, np.array([11.0, 21.0]), v2, np.array([12.0, 22.0]))
        builder.add_feature_correspondence(v0, np.array([10.0, 20.0]), v2, np.array([12.0, 22.0]))

        self.assertEqual(builder.build_tracks(self.reconstruction), 1)
        self.assertEqual(self.reconstruction.num_tracks, 1)

        track = self.reconstruction.track(self.reconstruction.track_ids()[0])
        self.assertEqual(track.view_ids, {v0, v1, v2})
        np.testing.assert_array_equal(track.observations[v2], [12.0, 22.0])
        self.assertIn(self.reconstruction.track_ids()[0], self.reconstruction.view(v1).track_ids)

    def test_inconsistent_track_dropped(self):
        """같은 뷰의 관측이 두 개 섞인 연결 요소는 제외"""
        from sfm_consensus.track_builder import TrackBuilder

        v0, v1, v2, _ = self.view_ids
        builder = TrackBuilder()
        builder.add_feature_correspondence(v0, np.array([1.0, 1.0]), v1, np.array([2.0, 2.0]))
        builder.add_feature_correspondence(v1, np.array([2.0, 2.0]), v2, np.array([3.0, 3.0]))
        builder.add_feature_correspondence(v2, np.array([3.0, 3.0]), v0, np.array([5.0, 5.0]))
        # 별개의 정상 트랙
        builder.add_feature_correspondence(v0, np.array([7.0, 7.0]), v1, np.array([8.0, 8.0]))

        self.assertEqual(builder.build_tracks(self.reconstruction), 1)
        for track_id in self.reconstruction.track_ids():
            track = self.reconstruction.track(track_id)
            self.assertEqual(len(track.view_ids), track.num_views)

    def test_track_length_bounds(self):
        """길이 범위를 벗어난 트랙은 제외"""
        from sfm_consensus.track_builder import TrackBuilder

        v0, v1, v2, v3 = self.view_ids
        builder = TrackBuilder(min_track_length=3, max_track_length=3)
        builder.add_feature_correspondence(v0, np.array([1.0, 1.0]), v1, np.array([1.0, 1.0]))
        for a, b in ((v0, v1), (v1, v2), (v2, v3)):
            builder.add_feature_correspondence(a, np.array([9.0, 9.0]), b, np.array([9.0, 9.0]))
        builder.add_feature_correspondence(v0, np.array([4.0, 4.0]), v1, np.array([4.0, 4.0]))
        builder.add_feature_correspondence(v1, np.array([4.0, 4.0]), v2, np.array([4.0, 4.0]))

        self.assertEqual(builder.build_tracks(self.reconstruction), 1)
        track = self.reconstruction.track(self.reconstruction.track_ids()[0])
        self.assertEqual(track.view_ids, {v0, v1, v2})

    def test_same_view_correspondence_ignored(self):
        from sfm_consensus.track_builder import TrackBuilder

        builder = TrackBuilder()
        builder.add_feature_correspondence(0, np.array([1.0, 1.0]), 0, np.array([2.0, 2.0]))
        self.assertEqual(builder.num_features, 0)

    def test_invalid_options(self):
        from sfm_consensus.track_builder import TrackBuilder

        with self.assertRaises(ValueError):
            TrackBuilder(min_track_length=1)
        with self.assertRaises(ValueError):
            TrackBuilder(min_track_length=4, max_track_length=3)


class TestReconstruction(unittest.TestCase):
    """재구성 / 장면 테스트"""

    def setUp(self):
        from sfm_consensus.camera import CameraIntrinsicsPrior
        from sfm_consensus.reconstruction import Reconstruction, Scene
        from sfm_consensus.view_graph import ViewGraph

        reconstruction = Reconstruction()
        calibrated = CameraIntrinsicsPrior(focal_length=500.0, image_width=640, image_height=480)
        self.v0 = reconstruction.add_view("a.jpg", calibrated)
        self.v1 = reconstruction.add_view("b.jpg", calibrated)
        self.v2 = reconstruction.add_view("c.jpg")
        self.t0 = reconstruction.add_track({self.v0: [1.0, 2.0], self.v1: [3.0, 4.0]})
        self.t1 = reconstruction.add_track({self.v0: [5.0, 6.0], self.v2: [7.0, 8.0]})
        self.t2 = reconstruction.add_track([(self.v0, [1.0, 1.0]), (self.v1, [2.0, 2.0]),
                                            (self.v2, [3.0, 3.0])])

        view_graph = ViewGraph()
        view_graph.add_edge(self.v0, self.v1, make_info())
        view_graph.add_edge(self.v0, self.v2, make_info())
        view_graph.add_edge(self.v1, self.v2, make_info())
        self.scene = Scene(reconstruction, view_graph)

    def test_add_view_and_track(self):
        reconstruction = self.scene.reconstruction

        self.assertIsNone(reconstruction.add_view("a.jpg"))
        self.assertEqual(reconstruction.view_id_from_name("b.jpg"), self.v1)
        self.assertIsNone(reconstruction.add_track({self.v0: [0.0, 0.0]}))
        self.assertIsNone(reconstruction.add_track([(self.v0, [0.0, 0.0]), (self.v0, [1.0, 1.0])]))
        self.assertIsNone(reconstruction.add_track({self.v0: [0.0, 0.0], 99: [1.0, 1.0]}))
        self.assertEqual(reconstruction.view(self.v0).track_ids, {self.t0, self.t1, self.t2})

    def test_calibration_matrix(self):
        prior = self.scene.reconstruction.view(self.v0).camera_intrinsics_prior
        np.testing.assert_allclose(prior.calibration_matrix(),
                                   [[500, 0, 320], [0, 500, 240], [0, 0, 1]])
        with self.assertRaises(ValueError):
            self.scene.reconstruction.view(self.v2).camera_intrinsics_prior.calibration_matrix()

    def test_ids_not_reused(self):
        reconstruction = self.scene.reconstruction
        reconstruction.remove_view(self.v2)
        v3 = reconstruction.add_view("d.jpg")
        self.assertNotIn(v3, (self.v0, self.v1, self.v2))

    def test_remove_view_updates_both(self):
        """장면에서 뷰를 지우면 재구성과 뷰 그래프 모두에서 제거"""
        self.scene.remove_view(self.v1)

        self.assertIsNone(self.scene.reconstruction.view(self.v1))
        self.assertFalse(self.scene.view_graph.has_view(self.v1))
        self.assertEqual(self.scene.view_graph.num_edges, 1)
        # 한 뷰만 남은 트랙은 삭제, 두 뷰 이상 남은 트랙은 유지
        self.assertIsNone(self.scene.reconstruction.track(self.t0))
        self.assertEqual(self.scene.reconstruction.track(self.t2).view_ids, {self.v0, self.v2})

    def test_remove_uncalibrated_views_idempotent(self):
        """보정 필터를 두 번 적용해도 한 번 적용한 것과 같음"""
        self.assertEqual(self.scene.remove_uncalibrated_views(), 1)
        views_once = self.scene.reconstruction.view_ids()
        edges_once = list(self.scene.view_graph.edges())
        tracks_once = self.scene.reconstruction.track_ids()

        self.assertEqual(self.scene.remove_uncalibrated_views(), 0)
        self.assertEqual(self.scene.reconstruction.view_ids(), views_once)
        self.assertEqual(list(self.scene.view_graph.edges()), edges_once)
        self.assertEqual(self.scene.reconstruction.track_ids(), tracks_once)
        self.assertEqual(views_once, [self.v0, self.v1])

    def test_subreconstruction_is_independent(self):
        """부분 재구성은 작업 장면과 독립적인 복사본"""
        subset = self.scene.extract_subreconstruction([self.v0, self.v1], [self.t0, self.t1])

        self.assertEqual(subset.view_ids(), [self.v0, self.v1])
        # t1은 v2를 잃어 한 뷰만 남으므로 제외
        self.assertEqual(subset.track_ids(), [self.t0])

        subset.track(self.t0).point[:] = [1.0, 2.0, 3.0]
        subset.view(self.v0).name = "changed"
        np.testing.assert_array_equal(self.scene.reconstruction.track(self.t0).point, np.zeros(3))
        self.assertEqual(self.scene.reconstruction.view(self.v0).name, "a.jpg")

        self.scene.remove_views_and_tracks([self.v0, self.v1], [self.t0])
        self.assertEqual(subset.num_views, 2)
        self.assertEqual(self.scene.num_views, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
