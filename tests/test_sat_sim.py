import os

import numpy as np
import pytest
from rasterio.transform import Affine

from sat_adjust import dem_utils, geo_utils, loader, sat_sim

TMERC = "+proj=tmerc +lat_0=48 +lon_0=2 +k=1 +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs"


def write_raster(path, data):
    # 10 m pixels, the upper-left corner is at (-5000, 5000)
    transform = Affine(10.0, 0.0, -5000.0, 0.0, -10.0, 5000.0)
    dem_utils.GeoRaster(data, transform, TMERC).write(path)
    return path


@pytest.fixture
def flat_dem(tmp_path):
    return write_raster(str(tmp_path / "dem.tif"), np.zeros((1000, 1000)))


@pytest.fixture
def ramp_ortho(tmp_path):
    cols = np.tile(np.arange(1000, dtype=np.float64), (1000, 1))
    return write_raster(str(tmp_path / "ortho.tif"), cols)


def orbit_config(**kwargs):
    config = {
        "first": [0.0, 0.0, 500000.0],
        "last": [1000.0, 0.0, 500000.0],
        "num_cameras": 10,
        "focal_length": 10000.0,
        "image_size": [20, 20],
    }
    config.update(kwargs)
    return config


def test_georaster_pixel_conventions(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    assert (dem.width, dem.height) == (1000, 1000)
    x, y = dem.pixel_to_point(549.5, 499.5)
    assert np.allclose([x, y], [500.0, 0.0])
    assert np.allclose(dem.point_to_pixel(x, y), [549.5, 499.5])
    lon, lat = dem.pixel_to_lonlat(499.5, 499.5)
    assert np.allclose([lon, lat], [2.0, 48.0])
    assert np.isnan(dem.interpolate(-1.0, 10.0)[0])
    success, h = dem_utils.interp_dem_height(dem, [2.0, 48.0])
    assert success and np.isclose(h, 0.0)
    success, _ = dem_utils.interp_dem_height(dem, [3.0, 48.0])
    assert not success


def test_intersect_rays_with_dem(tmp_path):
    heights = np.fromfunction(lambda r, c: 20.0 + 0.05 * c - 0.03 * r, (1000, 1000))
    dem = dem_utils.load_interpolation_ready_dem(write_raster(str(tmp_path / "slope.tif"), heights))
    datum = dem.datum
    lons, lats = dem.pixel_to_lonlat(np.array([100.0, 500.0, 900.0]), np.array([200.0, 499.5, 800.0]))
    ground_h = dem.height_at_lonlat(lons, lats)
    ground = datum.geodetic_to_cartesian(np.vstack([lons, lats, ground_h]).T)
    centers = datum.geodetic_to_cartesian([[2.01, 48.02, 600000.0]] * 3)
    xyz, success = dem_utils.intersect_rays_with_dem(dem, centers, ground - centers, height_error_tol=1e-4)
    assert np.all(success)
    assert np.allclose(xyz, ground, atol=1e-2)

    # a ray pointing away from the planet
    xyz, success = dem_utils.intersect_ray_with_dem(dem, centers[0], centers[0], height_error_tol=1e-3)
    assert not success


def test_calc_trajectory(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    trajectory = sat_sim.calc_trajectory(orbit_config(), dem, verbose=False)
    assert len(trajectory) == 10

    proj = np.vstack([np.linspace(0, 1000, 10), np.zeros(10), np.full(10, 500000.0)]).T
    assert np.allclose(trajectory.positions, sat_sim.proj_to_ecef(dem, proj), atol=1e-6)
    steps = np.linalg.norm(np.diff(trajectory.positions, axis=0), axis=1)
    assert np.allclose(steps, steps[0], rtol=1e-6)

    for R, ref in zip(trajectory.cam2world, trajectory.ref_cam2world):
        assert np.allclose(R @ R.T, np.eye(3))
        assert np.isclose(np.linalg.det(R), 1.0)
        # no roll, pitch, yaw or jitter
        assert np.allclose(R, ref)

    # the camera y axis is along track and the camera looks down
    along = trajectory.positions[-1] - trajectory.positions[0]
    assert np.dot(trajectory.cam2world[0][:, 1], along / np.linalg.norm(along)) > 0.9999
    up = trajectory.positions[0] / np.linalg.norm(trajectory.positions[0])
    assert np.dot(trajectory.cam2world[0][:, 2], up) < -0.999


def test_calc_trajectory_errors(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    with pytest.raises(sat_sim.Error):
        sat_sim.calc_trajectory(orbit_config(num_cameras=1), dem, verbose=False)
    with pytest.raises(sat_sim.Error):
        sat_sim.calc_trajectory(orbit_config(last=[0.0, 0.0, 500000.0]), dem, verbose=False)
    with pytest.raises(sat_sim.Error):
        sat_sim.calc_trajectory(orbit_config(last=[0.0, 0.0, 600000.0]), dem, verbose=False)
    with pytest.raises(sat_sim.Error):
        sat_sim.calc_trajectory(orbit_config(jitter_frequency=50.0), dem, verbose=False)


def test_roll_rotates_cameras(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    config = orbit_config(roll=5.0, pitch=0.0, yaw=0.0)
    trajectory = sat_sim.calc_trajectory(config, dem, verbose=False)
    R, ref = trajectory.cam2world[0], trajectory.ref_cam2world[0]
    angle = np.degrees(np.arccos(np.clip(np.dot(R[:, 2], ref[:, 2]), -1, 1)))
    assert np.isclose(angle, 5.0)


def test_find_best_proj_cam_location(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    first = np.array([0.0, 0.0, 500000.0])
    last = np.array([1000.0, 0.0, 500000.0])
    proj_along = np.array([1.0, 0.0, 0.0])
    proj_across = np.cross(proj_along, [0.0, 0.0, 1.0])
    best = sat_sim.find_best_proj_cam_location(dem, first, last, proj_along, proj_across, 0.01, 0.0, 0.0, 0.0,
                                               [549.5, 499.5])
    assert np.isclose(best[0], 500.0, atol=1.0)
    assert np.isclose(best[1], 0.0, atol=1e-6)


def test_find_best_proj_cam_location_search_limits(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    first = np.array([0.0, 0.0, 500000.0])
    last = np.array([1000.0, 0.0, 500000.0])
    proj_along = np.array([1.0, 0.0, 0.0])
    proj_across = np.cross(proj_along, [0.0, 0.0, 1.0])

    # 500 km of altitude plus the 14 km diagonal of the DEM, in steps of 100 m
    steps = sat_sim.calc_max_search_steps(dem, sat_sim.proj_to_ecef(dem, first), 100.0)
    assert 5100 < steps < 5200

    # with a 90 degrees roll the cameras look at the horizon
    with pytest.raises(sat_sim.Error):
        sat_sim.find_best_proj_cam_location(dem, first, last, proj_along, proj_across, 0.01, 90.0, 0.0, 0.0,
                                            [549.5, 499.5], max_attempts=3)


def test_along_across_vectors(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    first = np.array([0.0, 0.0, 500000.0])
    last = np.array([1000.0, 0.0, 500000.0])
    proj_along = np.array([1.0, 0.0, 0.0])
    proj_across = np.cross(proj_along, [0.0, 0.0, 1.0])
    east = dem.datum.ned_to_ecef_matrix([2.0, 48.0, 0.0])[:, 1]
    for t in np.linspace(-0.5, 1.5, 9):
        P, along, across = sat_sim.calc_traj_pt_along_across(first, last, dem, t, 0.01, proj_along, proj_across)
        assert np.isclose(np.linalg.norm(along), 1.0)
        assert np.isclose(np.linalg.norm(across), 1.0)
        assert abs(np.dot(along, across)) < 1e-9
        P_next, _, _ = sat_sim.calc_traj_pt_along_across(first, last, dem, t + 0.01, 0.01, proj_along,
                                                          proj_across)
        assert np.dot(along, P_next - P) > 0
        # the projected x axis points east
        assert np.dot(along, east) > 0.999


def test_jitter_without_roll_pitch_yaw(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    config = orbit_config(num_cameras=3, jitter_frequency=5.0, velocity=7500.0,
                          horizontal_uncertainty=[10.0, 10.0, 10.0])
    trajectory = sat_sim.calc_trajectory(config, dem, verbose=False)
    # the jitter is zero at the start of the orbit
    assert np.allclose(trajectory.cam2world[0], trajectory.ref_cam2world[0])
    assert not np.allclose(trajectory.cam2world[1], trajectory.ref_cam2world[1], rtol=0, atol=1e-7)
    for R, ref in zip(trajectory.cam2world, trajectory.ref_cam2world):
        assert np.allclose(R @ R.T, np.eye(3))
        # along track is the camera y axis before and after the jitter
        assert np.dot(R[:, 1], ref[:, 1]) > 0.9999


def test_orbit_from_ground_positions(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    config = orbit_config(first_ground_pos=[449.5, 499.5], last_ground_pos=[649.5, 499.5], roll=0.0, pitch=0.0,
                          yaw=0.0)
    trajectory = sat_sim.calc_trajectory(config, dem, verbose=False)
    assert np.allclose(trajectory.first_proj[:2], [-500.0, 0.0], atol=1.0)
    assert np.allclose(trajectory.last_proj[:2], [1500.0, 0.0], atol=1.0)


def test_synthesize_cameras_and_images(flat_dem, ramp_ortho, tmp_path):
    out_prefix = str(tmp_path / "sim" / "run")
    config = orbit_config(num_cameras=2, out_prefix=out_prefix, save_ref_cams=True, num_threads=2, tile_size=8)
    results = sat_sim.synthesize(config, flat_dem, ramp_ortho, verbose=False)

    assert results["camera_names"] == [out_prefix + "-10000.tsai", out_prefix + "-10001.tsai"]
    assert os.path.isfile(out_prefix + "-ref-10000.tsai")
    cam = loader.load_camera(results["camera_names"][0])
    assert np.allclose(cam.center, results["trajectory"].positions[0])
    assert np.allclose([cam.cu, cam.cv], [10.0, 10.0])

    assert results["image_names"] == [out_prefix + "-10000.tif", out_prefix + "-10001.tif"]
    im = loader.load_image(results["image_names"][0])
    assert im.shape == (20, 20)
    # the first camera is above DEM column 499.5, image rows go along track (east)
    assert np.isclose(im[10, 10], 499.5, atol=0.05)
    assert np.isclose(im[12, 10], 509.5, atol=0.05)


def test_synthesize_from_camera_list(flat_dem, ramp_ortho, tmp_path):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    trajectory = sat_sim.calc_trajectory(orbit_config(num_cameras=3), dem, verbose=False)
    cam_names, _ = sat_sim.gen_cameras(trajectory, orbit_config(out_prefix=str(tmp_path / "a" / "cam")),
                                       verbose=False)
    camera_list = str(tmp_path / "cameras.txt")
    with open(camera_list, "w") as f:
        f.write("\n".join(cam_names) + "\n")

    config = {"camera_list": camera_list, "image_size": [20, 20], "out_prefix": str(tmp_path / "b" / "img"),
              "first_index": 1, "last_index": 2}
    results = sat_sim.synthesize(config, flat_dem, ramp_ortho, verbose=False)
    assert results["trajectory"] is None
    assert len(results["cameras"]) == 3
    assert results["image_names"][0] is None and results["image_names"][2] is None
    assert results["image_names"][1] == str(tmp_path / "b" / "img") + "-cam-10001.tif"
    assert os.path.isfile(results["image_names"][1])


def test_skip_camera():
    assert not sat_sim.skip_camera(0)
    assert sat_sim.skip_camera(0, 1, 3)
    assert not sat_sim.skip_camera(2, 1, 3)
    assert sat_sim.skip_camera(3, 1, 3)


def test_geo_utils_projection():
    proj = geo_utils.ProjectionTransform(TMERC)
    datum = geo_utils.Datum()
    xyz = geo_utils.proj_to_ecef(proj, datum, [0.0, 0.0, 100.0])
    assert np.allclose(datum.cartesian_to_geodetic(xyz), [2.0, 48.0, 100.0])
    assert np.allclose(geo_utils.ecef_to_proj(proj, datum, xyz), [0.0, 0.0, 100.0], atol=1e-6)


def test_camera_dem_round_trip(flat_dem):
    dem = dem_utils.load_interpolation_ready_dem(flat_dem)
    trajectory = sat_sim.calc_trajectory(orbit_config(num_cameras=2), dem, verbose=False)
    _, cams = sat_sim.gen_cameras(trajectory, orbit_config(), verbose=False)
    lons, lats = dem.pixel_to_lonlat(np.array([480.0, 520.0, 505.0]), np.array([490.0, 510.0, 499.0]))
    ground = dem.datum.geodetic_to_cartesian(np.vstack([lons, lats, np.zeros(3)]).T)
    for cam in cams:
        pix = cam.projection(ground)
        centers = np.tile(cam.camera_center(), (3, 1))
        xyz, success = dem_utils.intersect_rays_with_dem(dem, centers, cam.pixel_to_vector(pix), 1e-4)
        assert np.all(success)
        assert np.allclose(xyz, ground, atol=1e-2)
