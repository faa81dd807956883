import numpy as np
import pytest

from sat_adjust import cam_utils, geo_utils, loader
from sat_adjust.ba_rotate import (R_to_quaternion, axis_angle_from_R, axis_angle_to_R, euler_angles_from_R,
                                  euler_angles_to_R, quaternion_to_R, roll_pitch_yaw, rotation_xy)
from sat_adjust.cam_utils import compose_perspective_camera, decompose_perspective_camera


def look_down_camera(lon=2.0, lat=48.0, height=5000.0, f=5000.0, distortion=None):
    datum = geo_utils.Datum()
    center = datum.geodetic_to_cartesian([lon, lat, height])
    ned_to_ecef = datum.ned_to_ecef_matrix([lon, lat, height])
    north, east, down = ned_to_ecef[:, 0], ned_to_ecef[:, 1], ned_to_ecef[:, 2]
    cam2world = np.vstack([east, -north, down]).T
    return cam_utils.PinholeCamera(center, cam2world, f, f, 500.0, 500.0, distortion=distortion)


def test_camera_utils():
    P = np.array(
        [
            [7.29623172e-02, -5.17799277e-02, -1.02734764e-02, -9.62027582e04],
            [-5.01011603e-02, -6.23291457e-02, -4.15721807e-02, -2.59250341e05],
            [2.78193760e-08, 7.15619726e-08, -1.43761111e-07, 1.00000000e00],
        ]
    )

    K, R, _, oC = decompose_perspective_camera(P)

    # perspective decomposition failed
    assert np.allclose(P, compose_perspective_camera(K, R, oC))
    assert np.allclose(R @ R.T, np.eye(3))


def test_pinhole_projection_matrix():
    cam = look_down_camera(f=4000.0)
    datum = geo_utils.Datum()
    pts = datum.geodetic_to_cartesian([[2.0, 48.0, 0.0], [2.002, 48.001, 30.0], [1.999, 47.9985, 5.0]])
    P = cam.projection_matrix()
    assert np.allclose(cam_utils.apply_projection_matrix(P, pts), cam.projection(pts))

    # the projection matrix is only defined up to scale
    rebuilt = cam_utils.PinholeCamera.from_projection_matrix(3.0 * P)
    assert np.allclose(rebuilt.center, cam.center, atol=1e-3)
    assert np.allclose(rebuilt.cam2world, cam.cam2world, atol=1e-9)
    assert np.allclose([rebuilt.fu, rebuilt.fv, rebuilt.cu, rebuilt.cv], [4000.0, 4000.0, 500.0, 500.0])
    assert np.allclose(rebuilt.projection(pts), cam.projection(pts), atol=1e-4)


def test_ba_rotate():
    R = np.array(
        [
            [0.25538431, -0.96424759, -0.07074919],
            [0.86330366, 0.19447877, 0.46570891],
            [-0.43529948, -0.18001279, 0.8821053],
        ]
    )

    # conversion between rotation matrix and euler angles failed
    assert np.allclose(R, euler_angles_to_R(*euler_angles_from_R(R)))
    # conversion between quaternion and rotation matrix failed
    assert np.allclose(R, quaternion_to_R(*R_to_quaternion(R)))
    # conversion between axis-angle and rotation matrix failed
    assert np.allclose(R, axis_angle_to_R(axis_angle_from_R(R)))
    # small angles
    w = np.array([1e-13, -2e-13, 3e-13])
    assert np.allclose(axis_angle_to_R(w), np.eye(3))


def test_roll_pitch_yaw():
    assert np.allclose(roll_pitch_yaw(0, 0, 0), np.eye(3))
    R = roll_pitch_yaw(10, -20, 30)
    assert np.allclose(R @ R.T, np.eye(3))
    assert np.isclose(np.linalg.det(R), 1.0)
    T = rotation_xy()
    # along track (first column) becomes the camera y axis
    assert np.allclose(T @ np.array([0, 1, 0]), np.array([1, 0, 0]))


def test_geodetic_round_trip():
    datum = geo_utils.Datum()
    llh = np.array([[2.35, 48.85, 35.0], [-120.0, -33.0, 500000.0], [179.9, 0.1, -50.0]])
    xyz = datum.geodetic_to_cartesian(llh)
    assert np.allclose(datum.cartesian_to_geodetic(xyz), llh, atol=1e-6)
    M = datum.ned_to_ecef_matrix(llh[0])
    assert np.allclose(M.T @ M, np.eye(3))


def test_pinhole_projection_round_trip():
    cam = look_down_camera(distortion=[1e-3, -1e-4, 1e-5, -2e-5, 0.0])
    datum = geo_utils.Datum()
    pts = datum.geodetic_to_cartesian([[2.0, 48.0, 0.0], [2.001, 48.0005, 20.0], [1.9995, 47.9992, 10.0]])
    pix = cam.projection(pts)
    dirs = cam.pixel_to_vector(pix)
    expected = (pts - cam.center) / np.linalg.norm(pts - cam.center, axis=1)[:, np.newaxis]
    assert np.allclose(dirs, expected, atol=1e-7)
    # the point below the camera is seen at the optical center
    assert np.allclose(pix[0], [500.0, 500.0], atol=1e-6)


def test_projection_behind_camera():
    cam = look_down_camera()
    above = geo_utils.Datum().geodetic_to_cartesian([2.0, 48.0, 10000.0])
    with pytest.raises(cam_utils.ProjectionError):
        cam.projection(above)


def test_adjusted_camera():
    cam = look_down_camera()
    adj = cam_utils.AdjustedCamera(cam, translation=[1.0, -2.0, 3.0], axis_angle=[1e-5, 2e-5, -1e-5])
    X = geo_utils.Datum().geodetic_to_cartesian([2.0005, 48.0003, 15.0])
    pix = adj.projection(X)
    ray = adj.pixel_to_vector(pix)
    to_point = X - adj.camera_center()
    assert np.allclose(ray, to_point / np.linalg.norm(to_point), atol=1e-9)
    # identity adjustment
    ident = cam_utils.AdjustedCamera(cam)
    assert np.allclose(ident.projection(X), cam.projection(X))


def test_tsai_round_trip(tmp_path):
    cam = look_down_camera(distortion=[1e-3, -1e-4, 1e-5, -2e-5, 1e-6])
    fname = str(tmp_path / "cam.tsai")
    loader.write_pinhole_to_tsai_file(fname, cam)
    cam2 = loader.load_camera(fname)
    assert np.allclose(cam2.center, cam.center)
    assert np.allclose(cam2.cam2world, cam.cam2world)
    assert np.allclose(cam2.distortion, cam.distortion)
    assert np.isclose(cam2.fu, cam.fu) and np.isclose(cam2.cv, cam.cv)


def test_adjust_round_trip(tmp_path):
    fname = str(tmp_path / "cam.adjust")
    T, w, rc = np.array([1.0, 2.0, 3.0]), np.array([0.01, -0.02, 0.03]), np.array([4e6, 1e5, 4.7e6])
    loader.write_adjust_file(fname, T, w, rc)
    T2, w2, rc2 = loader.read_adjust_file(fname)
    assert np.allclose(T, T2)
    assert np.allclose(w, w2)
    assert np.allclose(rc, rc2)


def test_json_cameras(tmp_path):
    cams = [
        look_down_camera(),
        cam_utils.GenericFrameCamera(look_down_camera().center, look_down_camera().cam2world, 5000.0, 500.0, 500.0,
                                     distortion=[1e-3, 1e-5]),
    ]
    X = geo_utils.Datum().geodetic_to_cartesian([2.0004, 47.9997, 12.0])
    for i, cam in enumerate(cams):
        fname = str(tmp_path / "cam{}.json".format(i))
        loader.save_camera(fname, cam)
        cam2 = loader.load_camera(fname)
        assert type(cam2) is type(cam)
        assert np.allclose(cam2.projection(X), cam.projection(X))
