import os

import numpy as np
import pytest
from rasterio.transform import Affine

from sat_adjust import ba_core, ba_costs, ba_models, ba_outliers, ba_params, ba_pipeline, cam_utils, dem_utils
from sat_adjust import geo_utils, loader

TMERC = "+proj=tmerc +lat_0=48 +lon_0=2 +k=1 +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs"


def look_down_camera(lon, lat=48.0, height=5000.0, f=5000.0):
    datum = geo_utils.Datum()
    center = datum.geodetic_to_cartesian([lon, lat, height])
    ned_to_ecef = datum.ned_to_ecef_matrix([lon, lat, height])
    north, east, down = ned_to_ecef[:, 0], ned_to_ecef[:, 1], ned_to_ecef[:, 2]
    cam2world = np.vstack([east, -north, down]).T
    return cam_utils.PinholeCamera(center, cam2world, f, f, 500.0, 500.0)


def synthetic_scene(n_pts=50, seed=0, cameras=None):
    rng = np.random.default_rng(seed)
    datum = geo_utils.Datum()
    llh = np.zeros((n_pts, 3))
    llh[:, 0] = 2.0 + rng.uniform(-0.006, 0.006, n_pts)
    llh[:, 1] = 48.0 + rng.uniform(-0.004, 0.004, n_pts)
    llh[:, 2] = rng.uniform(0, 50, n_pts)
    pts3d = datum.geodetic_to_cartesian(llh)
    if cameras is None:
        cameras = [look_down_camera(lon) for lon in [1.997, 2.0, 2.003]]
    cam_ind, pts_ind, pts2d = [], [], []
    for i, cam in enumerate(cameras):
        for j, X in enumerate(pts3d):
            cam_ind.append(i)
            pts_ind.append(j)
            pts2d.append(cam.projection(X))
    return cameras, pts3d, np.array(cam_ind), np.array(pts_ind), np.array(pts2d)


def test_bundle_adjustment_recovers_perturbed_camera(tmp_path):
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene()
    rng = np.random.default_rng(1)
    noisy_pts3d = pts3d + rng.normal(0, 1.0, pts3d.shape)
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pixel_sigma=1.0, pts3d=noisy_pts3d)

    true_center = cameras[2].center.copy()
    pose = cameras[2].pose_block()
    pose[:3] += np.array([3.0, -4.0, 2.0])
    pose[3:] += np.array([1e-4, -1e-4, 5e-5])
    perturbed = cameras[2].with_blocks(pose, cameras[2].intrinsic_blocks())
    input_cameras = [cameras[0], cameras[1], perturbed]

    ba_config = {"fixed_camera_indices": [0, 1], "cost_function": "l2", "num_passes": 1, "max_iter": 200}
    out_dir = str(tmp_path / "out")
    results = ba_pipeline.solve(input_cameras, network, ba_config, out_dir=out_dir, verbose=False)

    assert results["mean_err_ba"] < 1e-2
    assert np.mean(results["err_init"]) > results["mean_err_ba"]
    assert np.linalg.norm(results["cameras"][2].center - true_center) < 0.5
    # fixed cameras are untouched
    assert np.allclose(results["cameras"][0].center, cameras[0].center)
    assert np.allclose(results["cameras"][1].cam2world, cameras[1].cam2world)
    assert len(results["track_indices"]) == len(pts3d)

    assert os.path.isfile(os.path.join(out_dir, "cameras", "cam002.tsai"))
    for fname in ["residuals_initial.csv", "residuals_final.csv", "pointmap.csv"]:
        assert os.path.isfile(os.path.join(out_dir, fname))
    pointmap = loader.read_csv(os.path.join(out_dir, "pointmap.csv"), min_cols=5)
    assert pointmap.shape == (len(pts3d), 5)


def test_adjusted_model_with_outlier_removal():
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(seed=2)
    pts2d = pts2d.copy()
    # gross error on a few observations of the last camera
    bad = np.flatnonzero(cam_ind == 2)[:3]
    pts2d[bad] += 40.0
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    ba_config = {"inline_adjustments": False, "fixed_camera_indices": [0, 1], "num_passes": 2}
    results = ba_pipeline.solve(cameras, network, ba_config, verbose=False)

    assert results["num_outliers"] >= 3
    assert len(results["summaries"]) == 2
    assert isinstance(results["cameras"][2], cam_utils.AdjustedCamera)
    assert results["mean_err_ba"] < 0.5


def test_pipeline_rejects_bad_camera_index():
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(n_pts=5)
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    with pytest.raises(ba_pipeline.Error):
        ba_pipeline.BundleAdjustmentPipeline(cameras[:2], network, verbose=False)
    with pytest.raises(ba_pipeline.Error):
        ba_pipeline.BundleAdjustmentPipeline(cameras, network, {"fixed_camera_indices": [5]}, verbose=False)


def test_init_ba_config():
    config = ba_pipeline.init_ba_config({"num_passes": 3})
    assert config["num_passes"] == 3
    assert config["cost_function"] == "cauchy"
    assert config["big_pixel_value"] == 1000.0
    assert ba_pipeline.init_ba_config() == ba_pipeline.init_ba_config({})


class OffsetCost(ba_costs.CostFunction):
    def __init__(self, target):
        self.target = np.array(target, dtype=np.float64)
        self.num_residuals = self.target.size
        self.block_sizes = [self.target.size]

    def __call__(self, param_blocks):
        return param_blocks[0] - self.target


def test_problem_solve_in_place():
    x = np.array([1.0, -2.0, 3.0])
    y = np.array([5.0, 5.0])
    problem = ba_core.Problem()
    problem.add_residual_block(OffsetCost([0.5, 0.25, -1.0]), None, [x])
    problem.add_residual_block(OffsetCost([1.0, 2.0]), ba_costs.LossFunction("huber", 1.0), [y])
    problem.set_parameter_block_constant(y)
    summary = problem.solve()

    assert summary.converged
    assert np.allclose(x, [0.5, 0.25, -1.0], atol=1e-6)
    assert np.allclose(y, [5.0, 5.0])
    cost, residuals = problem.evaluate()
    assert residuals.size == 5
    assert np.isclose(summary.final_cost, cost)


def test_problem_rejects_bad_blocks():
    problem = ba_core.Problem()
    with pytest.raises(ba_core.Error):
        problem.add_parameter_block(np.zeros(3, dtype=np.float32))
    with pytest.raises(ba_core.Error):
        problem.add_residual_block(OffsetCost([0.0, 0.0]), None, [np.zeros(3)])


def test_numeric_derivatives():
    cost = OffsetCost([0.0, 0.0])
    values = [np.array([2.0, -1.0])]
    assert np.allclose(ba_core.central_diff(cost, values, 0, 1), [0.0, 1.0])
    assert np.allclose(ba_core.ridders_diff(cost, values, 0, 0), [1.0, 0.0])


def test_network_correspondence_matrix():
    C = np.array(
        [
            [10.0, 20.0, np.nan],
            [11.0, 21.0, np.nan],
            [12.0, np.nan, 32.0],
            [13.0, np.nan, 33.0],
        ]
    )
    network = ba_params.ControlNetwork.from_correspondence_matrix(C)
    assert len(network) == 3
    assert [len(t.observations) for t in network.tracks] == [2, 1, 1]
    assert np.allclose(network.to_correspondence_matrix(2), C, equal_nan=True)


def test_triangulation():
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(n_pts=10)
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d)
    assert network.triangulate(cameras) == 10
    xyz = np.array([t.xyz for t in network.tracks])
    assert np.allclose(xyz, pts3d, atol=1e-3)


def test_gcp_file(tmp_path):
    fname = str(tmp_path / "gcp.txt")
    with open(fname, "w") as f:
        f.write("# id lat lon height sigmas observations\n")
        f.write("1 48.0 2.0 10.0 1 1 2 cam0.tsai 500 500 1 1 cam1.tsai 510 490 0.5 0.5\n")
        f.write("2 48.001 2.001 12.0 1 1 2 unknown.tsai 500 500 1 1\n")
    network = ba_params.ControlNetwork()
    datum = geo_utils.Datum()
    n_gcp = network.add_gcp_file(fname, ["data/cam0.tsai", "data/cam1.tsai"], datum)

    assert n_gcp == 1
    track = network.tracks[0]
    assert track.is_gcp and track.is_usable()
    assert [obs.cam_index for obs in track.observations] == [0, 1]
    assert np.allclose(track.observations[1].pixel_sigma, [0.5, 0.5])
    assert np.allclose(datum.cartesian_to_geodetic(track.xyz), [2.0, 48.0, 10.0])


def test_elbow_value():
    err = np.concatenate([np.linspace(0.1, 1.0, 95), np.array([20.0, 30.0, 40.0, 50.0, 60.0])])
    elbow_value, success = ba_outliers.get_elbow_value(err, max_outliers_percent=20)
    assert success
    assert elbow_value <= 1.0
    thr = ba_outliers.compute_cam_thresholds(err, np.zeros(err.size, dtype=int), 1)
    assert thr[0] < 20.0


def moved_camera(cam, offset):
    pose = cam.pose_block()
    pose[:3] += np.asarray(offset)
    return cam.with_blocks(pose, cam.intrinsic_blocks())


def test_optical_bar_and_csm_models():
    ref = look_down_camera(2.0)
    datum = geo_utils.Datum()
    cameras = [
        cam_utils.OpticalBarCamera(ref.center, ref.cam2world, 5000.0, 500.0, 500.0, image_size=(1000, 1000),
                                   speed=7000.0, motion_compensation=0.5, scan_time=0.1),
        cam_utils.GenericFrameCamera(ref.center, ref.cam2world, 5000.0, 500.0, 500.0, distortion=[1e-3, 1e-5]),
    ]
    registry = ba_models.CameraRegistry(cameras)
    pts = datum.geodetic_to_cartesian([[2.0005, 48.0003, 15.0], [1.9994, 47.9996, 40.0]])
    expected_types = [ba_models.OpticalBarBundleModel, ba_models.CsmBundleModel]
    expected_sizes = [[3, 6, 2, 1, 3], [3, 6, 2, 1, 2]]
    for i, cam in enumerate(cameras):
        model = ba_models.create_bundle_model(registry, i)
        assert isinstance(model, expected_types[i])
        assert model.get_block_sizes() == expected_sizes[i]
        assert model.num_params() == sum(expected_sizes[i])
        blocks = model.initial_param_blocks()
        for X in pts:
            assert np.allclose(model.evaluate([X] + blocks), cam.projection(X), atol=1e-6)
            cost = ba_costs.ReprojectionError(cam.projection(X), 1.0, model)
            assert np.allclose(cost([X] + blocks), 0.0, atol=1e-6)


def test_bundle_adjustment_generic_frame_cameras(tmp_path):
    generic = [
        cam_utils.GenericFrameCamera(c.center, c.cam2world, 5000.0, 500.0, 500.0, distortion=[1e-3, 1e-5])
        for c in [look_down_camera(lon) for lon in [1.997, 2.0, 2.003]]
    ]
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(cameras=generic)
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    input_cameras = cameras[:2] + [moved_camera(cameras[2], [2.0, -1.0, 1.5])]

    ba_config = {"fixed_camera_indices": [0, 1], "cost_function": "l2", "max_iter": 200}
    out_dir = str(tmp_path / "out")
    results = ba_pipeline.solve(input_cameras, network, ba_config, out_dir=out_dir, verbose=False)

    assert results["mean_err_ba"] < 1e-2
    assert isinstance(results["cameras"][2], cam_utils.GenericFrameCamera)
    assert np.allclose(results["cameras"][2].distortion, [1e-3, 1e-5])
    assert os.path.isfile(os.path.join(out_dir, "cameras", "cam002.json"))


def test_heights_from_dem(tmp_path):
    dem_file = str(tmp_path / "dem.tif")
    transform = Affine(10.0, 0.0, -5000.0, 0.0, -10.0, 5000.0)
    dem_utils.GeoRaster(np.full((1000, 1000), 60.0), transform, TMERC).write(dem_file)
    dem = dem_utils.load_interpolation_ready_dem(dem_file)
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(n_pts=20)
    datum = geo_utils.Datum()

    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    ba_config = {"fixed_camera_indices": [0, 1, 2], "cost_function": "l2", "heights_from_dem_uncertainty": 0.01}
    results = ba_pipeline.solve(cameras, network, ba_config, dem=dem, verbose=False)
    assert results["num_gcp"] == 0
    assert results["num_ground_residuals"] == 3 * 20
    # a tight uncertainty pulls the points to the DEM, 10 to 60 meters above them
    assert np.allclose(datum.cartesian_to_geodetic(results["points"])[:, 2], 60.0, atol=0.01)

    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    ba_config["heights_from_dem_uncertainty"] = 0.0
    results = ba_pipeline.solve(cameras, network, ba_config, dem=dem, verbose=False)
    assert results["num_ground_residuals"] == 0
    assert np.allclose(results["points"], pts3d, atol=1e-3)


def test_reference_terrain_residuals():
    datum = geo_utils.Datum()
    left, right = look_down_camera(1.997), look_down_camera(2.0)
    rng = np.random.default_rng(3)
    llh = np.zeros((30, 3))
    llh[:, 0] = 1.997 + rng.uniform(-0.005, 0.005, 30)
    llh[:, 1] = 48.0 + rng.uniform(-0.004, 0.004, 30)
    ref_xyz = datum.geodetic_to_cartesian(llh)

    # flat terrain seen from the same height, the disparity is constant
    d = np.mean(right.projection(ref_xyz) - left.projection(ref_xyz), axis=0)
    disparity = ba_costs.DisparityInterpolator(np.full((1000, 1000), d[0]), np.full((1000, 1000), d[1]))
    disparities = [{"left": 0, "right": 1, "disparity": disparity, "reference_xyz": ref_xyz}]

    def disparity_errors(cams):
        return np.abs(cams[1].projection(ref_xyz) - cams[0].projection(ref_xyz) - d)

    moved = moved_camera(right, [2.0, -1.0, 1.0])
    assert np.max(disparity_errors([left, moved])) > 0.5

    ba_config = {"fixed_camera_indices": [0], "cost_function": "l2", "max_iter": 200}
    results = ba_pipeline.solve([left, moved], ba_params.ControlNetwork(), ba_config, disparities=disparities,
                                verbose=False)
    assert np.allclose(results["cameras"][0].center, left.center)
    assert np.max(disparity_errors(results["cameras"])) < 0.05


def test_camera_position_uncertainty():
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene()
    perturbed = moved_camera(cameras[2], [3.0, -4.0, 2.0])
    moves = []
    for u in [0.05, 1000.0]:
        network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
        ba_config = {
            "fixed_camera_indices": [0, 1],
            "cost_function": "l2",
            "max_iter": 200,
            "camera_position_uncertainty": [[1.0, 1.0], [1.0, 1.0], [u, u]],
        }
        results = ba_pipeline.solve(cameras[:2] + [perturbed], network, ba_config, verbose=False)
        moves.append(np.linalg.norm(results["cameras"][2].center - perturbed.center))
        if u > 1:
            assert np.linalg.norm(results["cameras"][2].center - cameras[2].center) < 0.5
    tight, loose = moves
    assert tight < 0.2
    assert loose > 4.0


def test_shared_intrinsics():
    true_cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene()
    cameras = [cam_utils.PinholeCamera(c.center, c.cam2world, 5030.0, 5030.0, 500.0, 500.0) for c in true_cameras]
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    ba_config = {
        "fixed_camera_indices": [0],
        "solve_intrinsics": True,
        "shared_intrinsics": True,
        "intrinsics_to_float": ["focal_length"],
        "cost_function": "l2",
        "max_iter": 200,
    }
    results = ba_pipeline.solve(cameras, network, ba_config, verbose=False)

    # the focal length block is shared, even with the fixed camera
    focals = [c.fu for c in results["cameras"]]
    assert focals[0] == focals[1] == focals[2]
    assert focals[0] != 5030.0
    for c in results["cameras"]:
        assert np.allclose([c.cu, c.cv], [500.0, 500.0])
    assert np.allclose(results["cameras"][0].center, cameras[0].center)
    assert results["mean_err_ba"] < 0.1 * np.mean(results["err_init"])


def add_gcp(network, cameras, true_xyz, survey_xyz, sigma):
    observations = [ba_params.Observation(i, cam.projection(true_xyz)) for i, cam in enumerate(cameras)]
    return network.add_track(ba_params.Track(survey_xyz, observations, is_gcp=True, xyz_sigma=[sigma] * 3))


def gcp_with_survey_error():
    datum = geo_utils.Datum()
    llh = [2.001, 48.001, 20.0]
    true_xyz = datum.geodetic_to_cartesian(llh)
    east = datum.ned_to_ecef_matrix(llh)[:, 1]
    return true_xyz, true_xyz + 2.0 * east


@pytest.mark.parametrize("use_llh_error", [True, False])
def test_gcp_constraint(use_llh_error):
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(n_pts=20)
    true_xyz, survey_xyz = gcp_with_survey_error()
    ba_config = {"fixed_camera_indices": [0, 1], "cost_function": "l2", "use_llh_error": use_llh_error}
    final = []
    for sigma in [0.01, 100.0]:
        network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
        gcp_idx = add_gcp(network, cameras, true_xyz, survey_xyz, sigma)
        results = ba_pipeline.solve(cameras, network, ba_config, verbose=False)
        assert results["num_gcp"] == 1
        assert results["num_ground_residuals"] == 3
        final.append(results["points"][list(results["track_indices"]).index(gcp_idx)])
    # sigmas are meters in both cases
    assert np.linalg.norm(final[0] - survey_xyz) < 0.01
    assert np.linalg.norm(final[1] - true_xyz) < 0.05


def test_fix_gcp_xyz():
    cameras, pts3d, cam_ind, pts_ind, pts2d = synthetic_scene(n_pts=20)
    true_xyz, survey_xyz = gcp_with_survey_error()
    network = ba_params.ControlNetwork.from_observations(cam_ind, pts_ind, pts2d, pts3d=pts3d)
    gcp_idx = add_gcp(network, cameras, true_xyz, survey_xyz, 100.0)
    ba_config = {"fixed_camera_indices": [0, 1], "cost_function": "l2", "fix_gcp_xyz": True}
    results = ba_pipeline.solve(cameras, network, ba_config, verbose=False)
    assert results["num_gcp"] == 1
    assert results["num_ground_residuals"] == 0
    point = results["points"][list(results["track_indices"]).index(gcp_idx)]
    assert np.array_equal(point, survey_xyz)
