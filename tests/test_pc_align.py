import os
import sys

import numpy as np
import pytest

from sat_adjust import ba_rotate, cli, geo_utils, loader, pc_align


def random_cloud(n=2000, seed=0):
    rng = np.random.default_rng(seed)
    return rng.uniform([-50, -50, -10], [50, 50, 10], (n, 3))


def rigid(axis_angle, t):
    T = np.eye(4)
    T[:3, :3] = ba_rotate.axis_angle_to_R(axis_angle)
    T[:3, 3] = t
    return T


def test_init_pc_align_config():
    config = pc_align.init_pc_align_config({"max_displacement": 20})
    assert config["max_displacement"] == 20
    assert config["alignment_method"] == "point-to-point"
    with pytest.raises(pc_align.Error):
        pc_align.init_pc_align_config({"alignment_method": "unknown"})
    with pytest.raises(pc_align.Error):
        pc_align.init_pc_align_config({"outlier_ratio": 0})


def test_apply_shift():
    T = rigid([0.01, -0.02, 0.03], [1.0, 2.0, 3.0])
    s = np.array([4.2e6, 1.5e5, 4.7e6])
    pts = s + random_cloud(10)
    T2 = pc_align.apply_shift(T, s)
    assert np.allclose(pc_align.apply_transform(T2, pts - s) + s, pc_align.apply_transform(T, pts))
    assert np.allclose(pc_align.apply_shift(T2, -s), T)


def test_apply_transform_keeps_invalid_points():
    T = rigid([0, 0, 0.1], [1.0, 1.0, 1.0])
    pts = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    out = pc_align.apply_transform(T, pts)
    assert np.allclose(out[0], 0.0)
    assert np.allclose(out[1], T[:3, :3] @ pts[1] + T[:3, 3])


def test_fit_rigid_transform_with_scale():
    src = random_cloud(100)
    T = rigid([0.1, 0.2, -0.3], [5.0, -2.0, 1.0])
    T[:3, :3] *= 1.2
    dst = pc_align.apply_transform(T, src)
    assert np.allclose(pc_align.fit_rigid_transform(src, dst, with_scale=True), T)
    T_rigid = pc_align.fit_rigid_transform(src, dst)
    assert np.isclose(np.linalg.det(T_rigid[:3, :3]), 1.0)


def test_icp_identical_clouds():
    ref = random_cloud()
    T, n_iter, converged = pc_align.icp(ref, ref, verbose=False)
    assert converged
    assert n_iter == 1
    assert np.allclose(T, np.eye(4))


@pytest.mark.parametrize("method", pc_align.ALIGNMENT_METHODS)
def test_icp_recovers_small_motion(method):
    ref = random_cloud()
    T_true = rigid([0.0, 0.0, np.radians(0.3)], [0.3, -0.2, 0.4])
    src = pc_align.apply_transform(np.linalg.inv(T_true), ref)
    config = {"alignment_method": method, "max_displacement": 5.0, "num_iterations": 100}
    T, _, converged = pc_align.icp(src, ref, config, verbose=False)
    assert converged
    assert np.allclose(pc_align.apply_transform(T, src), ref, atol=1e-3)


def test_icp_translation_only():
    ref = random_cloud()
    src = ref - np.array([0.3, 0.1, -0.2])
    config = {"compute_translation_only": True}
    T, _, _ = pc_align.icp(src, ref, config, verbose=False)
    assert np.allclose(T[:3, :3], np.eye(3))
    assert np.allclose(T[:3, 3], [0.3, 0.1, -0.2], atol=1e-6)


def test_icp_needs_close_points():
    ref = random_cloud()
    with pytest.raises(pc_align.Error):
        pc_align.icp(ref + 1000.0, ref, {"max_displacement": 1.0}, verbose=False)


def test_lonlat_boxes_intersection():
    assert np.allclose(pc_align.lonlat_boxes_intersection((0, 0, 2, 2), (1, 1, 3, 3)), (1, 1, 2, 2))
    assert pc_align.lonlat_boxes_intersection((0, 0, 1, 1), (2, 2, 3, 3)) is None


def test_align_csv_clouds(tmp_path):
    datum = geo_utils.Datum()
    llh0 = np.array([2.0, 48.0, 100.0])
    center = datum.geodetic_to_cartesian(llh0)
    ned_to_ecef = datum.ned_to_ecef_matrix(llh0)
    ref = center + random_cloud(3000) @ ned_to_ecef.T
    offset_ned = np.array([0.5, -0.3, 0.2])
    src = ref - ned_to_ecef @ offset_ned

    ref_file, src_file = str(tmp_path / "ref.csv"), str(tmp_path / "src.csv")
    loader.write_csv(ref_file, ref, header="x, y, z")
    loader.write_csv(src_file, src, header="x, y, z")
    out_dir = str(tmp_path / "align")
    config = {"max_displacement": 10.0, "num_iterations": 100}
    results = pc_align.align(ref_file, src_file, config, out_dir=out_dir, verbose=False)

    assert results["converged"]
    assert results["end_mean"] < 1e-3
    assert results["beg_mean"] > results["end_mean"]
    assert np.allclose(results["trans_ned"], offset_ned, atol=1e-3)
    assert np.allclose(pc_align.apply_transform(results["transform"], src), ref, atol=1e-3)
    assert np.allclose(results["transform"] @ results["inverse_transform"], np.eye(4))
    for fname in ["transform.txt", "inverse_transform.txt", "beg_errors.csv", "end_errors.csv"]:
        assert os.path.isfile(os.path.join(out_dir, fname))
    trans_src = loader.read_csv(results["trans_source"])
    assert np.allclose(trans_src, ref, atol=1e-3)


def test_calc_mean_of_smallest_errors():
    assert np.isclose(pc_align.calc_mean([1.0, 2.0, 3.0, 4.0], 2), 1.5)
    assert pc_align.calc_mean([], 3) == 0.0
    means = pc_align.calc_smallest_errors_means([4.0, 1.0, 3.0, 2.0])
    assert list(means.keys()) == [25, 50, 75, 100]
    assert np.allclose(list(means.values()), [1.0, 1.5, 2.0, 2.5])


def test_align_identical_csv_clouds(tmp_path):
    center = geo_utils.Datum().geodetic_to_cartesian([2.0, 48.0, 100.0])
    pts = center + random_cloud(2000)
    ref_file, src_file = str(tmp_path / "ref.csv"), str(tmp_path / "src.csv")
    loader.write_csv(ref_file, pts)
    loader.write_csv(src_file, pts)
    results = pc_align.align(ref_file, src_file, {"max_displacement": 10.0}, out_dir=str(tmp_path / "out"),
                             verbose=False)
    assert results["converged"]
    assert np.allclose(results["transform"], np.eye(4), atol=1e-6)
    assert results["end_mean"] < 1e-6
    assert np.allclose(results["trans_ned"], 0.0, atol=1e-6)
    assert results["end_smallest_means"][100] == pytest.approx(results["end_mean"])
    assert np.allclose(loader.read_csv(results["trans_source"]), pts, atol=1e-6)


def point_cloud_raster(fname, seed=0):
    center = geo_utils.Datum().geodetic_to_cartesian([2.0, 48.0, 100.0])
    cloud = np.zeros((40, 50, 4))
    cloud[:, :, :3] = (center + random_cloud(2000, seed)).reshape(40, 50, 3)
    cloud[:, :, 3] = np.arange(2000).reshape(40, 50)
    # invalid points
    cloud[0, :3, :3] = 0
    loader.write_point_cloud_raster(fname, cloud)
    return cloud


def test_align_identical_point_cloud_rasters(tmp_path):
    ref_file, src_file = str(tmp_path / "ref.tif"), str(tmp_path / "src.tif")
    cloud = point_cloud_raster(ref_file)
    point_cloud_raster(src_file)
    results = pc_align.align(ref_file, src_file, {"max_displacement": 10.0}, out_dir=str(tmp_path / "out"),
                             verbose=False)
    assert np.allclose(results["transform"], np.eye(4), atol=1e-6)
    assert results["end_mean"] < 1e-6
    trans_src, _ = loader.read_point_cloud_raster(results["trans_source"])
    assert np.all(trans_src[0, :3, :3] == 0)
    assert np.array_equal(trans_src[:, :, 3], cloud[:, :, 3])
    assert np.allclose(trans_src, cloud, atol=1e-6)


def test_save_trans_point_cloud_keeps_invalid_points(tmp_path):
    src_file = str(tmp_path / "src.tif")
    cloud = point_cloud_raster(src_file)
    T = rigid([0.0, 0.0, 0.0], [1.0, 2.0, 3.0])
    out_file = pc_align.save_trans_point_cloud(src_file, str(tmp_path / "trans.tif"), T)
    trans_src, _ = loader.read_point_cloud_raster(out_file)
    assert np.all(trans_src[0, :3, :3] == 0)
    assert np.allclose(trans_src[1:, :, :3], cloud[1:, :, :3] + [1.0, 2.0, 3.0])
    assert np.array_equal(trans_src[:, :, 3], cloud[:, :, 3])

    # zero rows of a csv cloud are not points
    csv_file = str(tmp_path / "src.csv")
    loader.write_csv(csv_file, cloud[:, :, :3].reshape(-1, 3))
    pts = pc_align.read_cloud_points(csv_file, geo_utils.Datum())
    assert pts.shape == (1997, 3)


def test_align_disjoint_clouds(tmp_path):
    datum = geo_utils.Datum()
    ref = datum.geodetic_to_cartesian([2.0, 48.0, 0.0]) + random_cloud(100)
    src = datum.geodetic_to_cartesian([3.0, 48.0, 0.0]) + random_cloud(100)
    ref_file, src_file = str(tmp_path / "ref.csv"), str(tmp_path / "src.csv")
    loader.write_csv(ref_file, ref)
    loader.write_csv(src_file, src)
    with pytest.raises(pc_align.Error):
        pc_align.align(ref_file, src_file, {"max_displacement": 10.0}, verbose=False)


def test_cli_pc_align(tmp_path, monkeypatch):
    datum = geo_utils.Datum()
    ref = datum.geodetic_to_cartesian([2.0, 48.0, 0.0]) + random_cloud(500)
    ref_file, src_file = str(tmp_path / "ref.csv"), str(tmp_path / "src.csv")
    loader.write_csv(ref_file, ref)
    loader.write_csv(src_file, ref + np.array([0.2, 0.1, -0.1]))
    out_dir = str(tmp_path / "cli")
    config_file = str(tmp_path / "config.json")
    loader.save_dict_to_json({"reference": ref_file, "source": src_file, "output_dir": out_dir}, config_file)

    monkeypatch.setattr(sys, "argv", ["sat_adjust", "pc_align", config_file])
    assert cli.main() == 0
    assert os.path.isfile(os.path.join(out_dir, "transform.txt"))
    assert os.path.isfile(os.path.join(out_dir, "config.json"))

    loader.save_dict_to_json({"reference": ref_file, "output_dir": out_dir}, config_file)
    assert cli.main() == 1
