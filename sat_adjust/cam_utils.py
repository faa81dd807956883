"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script consists of a series of classes and functions dedicated to handle camera models:
pinhole (frame) cameras with lens distortion, optical bar (panoramic) cameras, generic frame sensors,
RPC models, and cameras corrected by a 6-DOF adjustment. All cameras work in ECEF coordinates
and expose the same interface: projection, pixel_to_vector and camera_center
"""

import numpy as np

from sat_adjust import ba_rotate, geo_utils


class Error(Exception):
    pass


class ProjectionError(Error):
    """
    Raised when a 3d point cannot be projected into a camera,
    e.g. it is behind the camera or outside the valid domain of the model
    """

    pass


def _as_points(xyz):
    xyz = np.asarray(xyz, dtype=np.float64)
    return np.atleast_2d(xyz), xyz.ndim == 1


def _as_pixels(pixel):
    pixel = np.asarray(pixel, dtype=np.float64)
    return np.atleast_2d(pixel), pixel.ndim == 1


def _normalize_rows(v):
    n = np.linalg.norm(v, axis=1)
    if np.any(n == 0):
        raise Error("Cannot normalize a zero vector")
    return v / n[:, np.newaxis]


class PinholeCamera:
    intrinsic_block_names = ("center", "focus", "distortion")

    def __init__(self, center, cam2world, fu, fv, cu, cv, distortion=None, pitch=1.0):
        """
        Frame camera with Brown-Conrady lens distortion

        Args:
            center: 3-valued vector, camera center in ECEF coordinates
            cam2world: 3x3 rotation matrix from the camera frame (x right, y down, z forward) to ECEF
            fu, fv: focal lengths, in the same units as pitch
            cu, cv: optical center, in the same units as pitch
            distortion (optional): the 5 coefficients (k1, k2, p1, p2, k3), zero by default
            pitch (optional): pixel size, 1 if all values are in pixel units
        """
        self.center = np.array(center, dtype=np.float64)
        self.cam2world = np.array(cam2world, dtype=np.float64)
        self.fu, self.fv, self.cu, self.cv = float(fu), float(fv), float(cu), float(cv)
        self.distortion = np.zeros(5) if distortion is None else np.array(distortion, dtype=np.float64)
        if self.distortion.size != 5:
            raise Error("Pinhole distortion must have 5 coefficients (k1, k2, p1, p2, k3)")
        self.pitch = float(pitch)

    def distort(self, x, y):
        k1, k2, p1, p2, k3 = self.distortion
        r2 = x * x + y * y
        radial = 1.0 + k1 * r2 + k2 * r2 ** 2 + k3 * r2 ** 3
        xd = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
        yd = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
        return xd, yd

    def undistort(self, xd, yd, n_iter=20):
        x, y = xd.copy(), yd.copy()
        if not np.any(self.distortion):
            return x, y
        for _ in range(n_iter):
            xe, ye = self.distort(x, y)
            x, y = x - (xe - xd), y - (ye - yd)
        return x, y

    def projection(self, xyz):
        """
        Project 3d points into the image

        Args:
            xyz: 3-valued vector or Nx3 array of ECEF points

        Returns:
            pixel: 2-valued vector or Nx2 array with the (col, row) coordinates
        """
        pts, single = _as_points(xyz)
        p = (pts - self.center) @ self.cam2world
        if np.any(p[:, 2] <= 0):
            raise ProjectionError("Point behind the camera")
        xd, yd = self.distort(p[:, 0] / p[:, 2], p[:, 1] / p[:, 2])
        pix = np.vstack([(self.fu * xd + self.cu) / self.pitch, (self.fv * yd + self.cv) / self.pitch]).T
        return pix[0] if single else pix

    def pixel_to_vector(self, pixel):
        """
        Unit direction, in ECEF, of the rays going through the input pixels
        """
        pix, single = _as_pixels(pixel)
        xd = (pix[:, 0] * self.pitch - self.cu) / self.fu
        yd = (pix[:, 1] * self.pitch - self.cv) / self.fv
        x, y = self.undistort(xd, yd)
        v = _normalize_rows(np.vstack([x, y, np.ones_like(x)]).T @ self.cam2world.T)
        return v[0] if single else v

    def camera_center(self, pixel=None):
        return self.center.copy()

    def pose_block(self):
        return np.hstack([self.center, ba_rotate.axis_angle_from_R(self.cam2world)])

    def intrinsic_blocks(self):
        return [np.array([self.cu, self.cv]), np.array([self.fu]), self.distortion.copy()]

    def with_blocks(self, pose, intrinsics):
        """
        New camera from a pose block (center, axis-angle) and the intrinsic blocks (center, focus, distortion)
        The ratio fv / fu is preserved when the focal length changes
        """
        cu, cv = intrinsics[0]
        fu = intrinsics[1][0]
        fv = fu * self.fv / self.fu
        cam2world = ba_rotate.axis_angle_to_R(pose[3:6])
        return PinholeCamera(pose[:3], cam2world, fu, fv, cu, cv, intrinsics[2], self.pitch)

    def projection_matrix(self):
        """
        3x4 projection matrix in pixel units, the lens distortion is ignored
        """
        K = np.array([[self.fu, 0, self.cu], [0, self.fv, self.cv], [0, 0, self.pitch]]) / self.pitch
        return compose_perspective_camera(K, self.cam2world.T, self.center)

    @classmethod
    def from_projection_matrix(cls, P):
        """
        Pinhole camera without distortion from a 3x4 projection matrix (the skew is dropped)
        """
        K, R, _, oC = decompose_perspective_camera(P)
        K = K / K[2, 2]
        if abs(K[0, 1]) > 1e-6 * abs(K[0, 0]):
            print("WARNING: Dropping a non-zero skew ({:.6f}) from the projection matrix".format(K[0, 1]))
        return cls(oC, R.T, K[0, 0], K[1, 1], K[0, 2], K[1, 2])

    def to_dict(self):
        return {
            "type": "pinhole",
            "center": self.center.tolist(),
            "cam2world": self.cam2world.tolist(),
            "fu": self.fu,
            "fv": self.fv,
            "cu": self.cu,
            "cv": self.cv,
            "distortion": self.distortion.tolist(),
            "pitch": self.pitch,
        }


class OpticalBarCamera:
    intrinsic_block_names = ("center", "focus", "extra")

    def __init__(self, center, cam2world, fu, cu, cv, image_size=None, speed=0.0, motion_compensation=1.0,
                 scan_time=0.0):
        """
        Panoramic camera whose film is a cylinder of radius fu (pixel units)
        The columns are scanned across track, which is the camera x axis. Column u is seen at
        scan angle (u - cu) / fu and at time (u - cu) / width * scan_time relative to the central column.
        During the scan the camera moves along track (camera y axis) at the given speed,
        reduced by the motion compensation factor (1 means the motion is fully compensated)

        Args:
            center: ECEF camera center at the time the column cu is scanned
            cam2world: 3x3 camera to ECEF rotation at the same time
            fu: radius of the film cylinder, in pixels
            cu, cv: pixel coordinates of the optical center
            image_size (optional): (width, height), bounds the scan angle
            speed (optional): camera speed in meters per second
            motion_compensation (optional): fraction of the camera motion compensated during the scan
            scan_time (optional): seconds needed to scan the whole image width
        """
        self.center = np.array(center, dtype=np.float64)
        self.cam2world = np.array(cam2world, dtype=np.float64)
        self.fu, self.cu, self.cv = float(fu), float(cu), float(cv)
        self.image_size = None if image_size is None else (int(image_size[0]), int(image_size[1]))
        self.speed = float(speed)
        self.motion_compensation = float(motion_compensation)
        self.scan_time = float(scan_time)

    @property
    def half_scan_angle(self):
        if self.image_size is None:
            return np.pi / 2
        return min(0.5 * self.image_size[0] / self.fu, np.pi / 2)

    def _time(self, col):
        width = self.image_size[0] if self.image_size is not None else 1.0
        return (col - self.cu) / width * self.scan_time

    def _center_at_col(self, col):
        shift = (1.0 - self.motion_compensation) * self.speed * self._time(col)
        return self.center + np.multiply.outer(shift, self.cam2world[:, 1])

    def _project_one(self, X, max_iter=50, tol=1e-10):
        col = self.cu
        for _ in range(max_iter):
            p = (X - self._center_at_col(col)) @ self.cam2world
            if p[2] <= 0:
                raise ProjectionError("Point behind the camera")
            alpha = np.arctan2(p[0], p[2])
            new_col = self.cu + self.fu * alpha
            converged = abs(new_col - col) < tol
            col = new_col
            if converged:
                break
        if abs(alpha) > self.half_scan_angle:
            raise ProjectionError("Point outside of the scan angle")
        row = self.cv + self.fu * p[1] / np.hypot(p[0], p[2])
        return np.array([col, row])

    def projection(self, xyz):
        pts, single = _as_points(xyz)
        pix = np.array([self._project_one(X) for X in pts])
        return pix[0] if single else pix

    def pixel_to_vector(self, pixel):
        pix, single = _as_pixels(pixel)
        alpha = (pix[:, 0] - self.cu) / self.fu
        d = np.vstack([np.sin(alpha), (pix[:, 1] - self.cv) / self.fu, np.cos(alpha)]).T
        v = _normalize_rows(d @ self.cam2world.T)
        return v[0] if single else v

    def camera_center(self, pixel=None):
        if pixel is None:
            return self.center.copy()
        return self._center_at_col(np.asarray(pixel, dtype=np.float64)[..., 0])

    def pose_block(self):
        return np.hstack([self.center, ba_rotate.axis_angle_from_R(self.cam2world)])

    def intrinsic_blocks(self):
        extra = np.array([self.speed, self.motion_compensation, self.scan_time])
        return [np.array([self.cu, self.cv]), np.array([self.fu]), extra]

    def with_blocks(self, pose, intrinsics):
        cu, cv = intrinsics[0]
        speed, motion_compensation, scan_time = intrinsics[2]
        cam2world = ba_rotate.axis_angle_to_R(pose[3:6])
        return OpticalBarCamera(pose[:3], cam2world, intrinsics[1][0], cu, cv, self.image_size,
                                speed, motion_compensation, scan_time)

    def to_dict(self):
        return {
            "type": "optical_bar",
            "center": self.center.tolist(),
            "cam2world": self.cam2world.tolist(),
            "fu": self.fu,
            "cu": self.cu,
            "cv": self.cv,
            "image_size": None if self.image_size is None else list(self.image_size),
            "speed": self.speed,
            "motion_compensation": self.motion_compensation,
            "scan_time": self.scan_time,
        }


class GenericFrameCamera:
    intrinsic_block_names = ("center", "focus", "distortion")

    def __init__(self, center, cam2world, focal_length, cu, cv, distortion=(0.0,)):
        """
        Generic frame sensor with a single focal length (pixel units)
        and a radial distortion polynomial of arbitrary order:
        x_dist = x * (1 + k1 * r^2 + k2 * r^4 + ...)
        """
        self.center = np.array(center, dtype=np.float64)
        self.cam2world = np.array(cam2world, dtype=np.float64)
        self.focal_length, self.cu, self.cv = float(focal_length), float(cu), float(cv)
        self.distortion = np.atleast_1d(np.array(distortion, dtype=np.float64))
        if self.distortion.size == 0:
            raise Error("At least one distortion coefficient is needed, use 0 for no distortion")

    def _radial(self, r2):
        powers = r2[:, np.newaxis] ** np.arange(1, self.distortion.size + 1)[np.newaxis, :]
        return 1.0 + powers @ self.distortion

    def projection(self, xyz):
        pts, single = _as_points(xyz)
        p = (pts - self.center) @ self.cam2world
        if np.any(p[:, 2] <= 0):
            raise ProjectionError("Point behind the camera")
        x, y = p[:, 0] / p[:, 2], p[:, 1] / p[:, 2]
        scale = self._radial(x * x + y * y)
        pix = np.vstack([self.focal_length * x * scale + self.cu, self.focal_length * y * scale + self.cv]).T
        return pix[0] if single else pix

    def pixel_to_vector(self, pixel):
        pix, single = _as_pixels(pixel)
        xd = (pix[:, 0] - self.cu) / self.focal_length
        yd = (pix[:, 1] - self.cv) / self.focal_length
        x, y = xd.copy(), yd.copy()
        for _ in range(20):
            scale = self._radial(x * x + y * y)
            x, y = xd / scale, yd / scale
        v = _normalize_rows(np.vstack([x, y, np.ones_like(x)]).T @ self.cam2world.T)
        return v[0] if single else v

    def camera_center(self, pixel=None):
        return self.center.copy()

    def pose_block(self):
        return np.hstack([self.center, ba_rotate.axis_angle_from_R(self.cam2world)])

    def intrinsic_blocks(self):
        return [np.array([self.cu, self.cv]), np.array([self.focal_length]), self.distortion.copy()]

    def with_blocks(self, pose, intrinsics):
        cu, cv = intrinsics[0]
        cam2world = ba_rotate.axis_angle_to_R(pose[3:6])
        return GenericFrameCamera(pose[:3], cam2world, intrinsics[1][0], cu, cv, intrinsics[2])

    def to_dict(self):
        return {
            "type": "generic_frame",
            "center": self.center.tolist(),
            "cam2world": self.cam2world.tolist(),
            "focal_length": self.focal_length,
            "cu": self.cu,
            "cv": self.cv,
            "distortion": self.distortion.tolist(),
        }


class RpcCamera:
    def __init__(self, rpc, datum=None):
        """
        Adapts an rpcm RPC model to the ECEF camera interface
        """
        self.rpc = rpc
        self.datum = geo_utils.Datum() if datum is None else datum

    def projection(self, xyz):
        pts, single = _as_points(xyz)
        llh = self.datum.cartesian_to_geodetic(pts)
        col, row = self.rpc.projection(llh[:, 0], llh[:, 1], llh[:, 2])
        pix = np.vstack([np.asarray(col, dtype=np.float64), np.asarray(row, dtype=np.float64)]).T
        if not np.all(np.isfinite(pix)):
            raise ProjectionError("RPC projection failed")
        return pix[0] if single else pix

    def _ray_points(self, pix):
        h_top = self.rpc.alt_offset + self.rpc.alt_scale
        h_bot = self.rpc.alt_offset - self.rpc.alt_scale
        pts = []
        for h in [h_top, h_bot]:
            lon, lat = self.rpc.localization(pix[:, 0], pix[:, 1], np.full(pix.shape[0], h))
            llh = np.vstack([np.asarray(lon), np.asarray(lat), np.full(pix.shape[0], h)]).T
            pts.append(self.datum.geodetic_to_cartesian(llh))
        return pts[0], pts[1]

    def pixel_to_vector(self, pixel):
        pix, single = _as_pixels(pixel)
        top, bot = self._ray_points(pix)
        v = _normalize_rows(bot - top)
        return v[0] if single else v

    def camera_center(self, pixel=None):
        """
        A point of the ray above the valid height range of the RPC model
        """
        if pixel is None:
            pixel = [self.rpc.col_offset, self.rpc.row_offset]
        pix, single = _as_pixels(pixel)
        top, _ = self._ray_points(pix)
        return top[0] if single else top


class AdjustedCamera:
    def __init__(self, camera, translation=None, axis_angle=None, rotation_center=None):
        """
        Camera corrected by a rotation R around a rotation center C followed by a translation T
        A 3d point X is seen by the underlying camera at X' = R^-1 (X - C - T) + C

        Args:
            camera: any camera exposing projection, pixel_to_vector and camera_center
            translation (optional): 3-valued vector T, zero by default
            axis_angle (optional): 3-valued axis-angle vector of R, zero by default
            rotation_center (optional): 3-valued vector C, the underlying camera center by default
        """
        self.camera = camera
        self.translation = np.zeros(3) if translation is None else np.array(translation, dtype=np.float64)
        self.axis_angle = np.zeros(3) if axis_angle is None else np.array(axis_angle, dtype=np.float64)
        if rotation_center is None:
            rotation_center = camera.camera_center()
        self.rotation_center = np.array(rotation_center, dtype=np.float64)
        self.R = ba_rotate.axis_angle_to_R(self.axis_angle)

    def projection(self, xyz):
        pts, single = _as_points(xyz)
        pts = (pts - self.rotation_center - self.translation) @ self.R + self.rotation_center
        pix = self.camera.projection(pts)
        return pix[0] if single else pix

    def pixel_to_vector(self, pixel):
        return self.camera.pixel_to_vector(pixel) @ self.R.T

    def camera_center(self, pixel=None):
        c = self.camera.camera_center(pixel)
        return (c - self.rotation_center) @ self.R.T + self.rotation_center + self.translation

    def adjustment_block(self):
        return np.hstack([self.translation, self.axis_angle])


def camera_from_dict(d):
    """
    Build a camera from the dictionary written by its to_dict method
    """
    cam_type = d.get("type", None)
    if cam_type == "pinhole":
        args = [d["center"], d["cam2world"], d["fu"], d["fv"], d["cu"], d["cv"]]
        return PinholeCamera(*args, distortion=d.get("distortion", None), pitch=d.get("pitch", 1.0))
    elif cam_type == "optical_bar":
        args = [d["center"], d["cam2world"], d["fu"], d["cu"], d["cv"], d.get("image_size", None)]
        return OpticalBarCamera(*args, d.get("speed", 0.0), d.get("motion_compensation", 1.0),
                                d.get("scan_time", 0.0))
    elif cam_type == "generic_frame":
        args = [d["center"], d["cam2world"], d["focal_length"], d["cu"], d["cv"]]
        return GenericFrameCamera(*args, distortion=d.get("distortion", [0.0]))
    raise Error("Unknown camera type: {}".format(cam_type))


def decompose_perspective_camera(P):
    """
    Decomposition of the perspective camera matrix as P = KR[I|-C] = K [R | vecT] (Hartley and Zissermann 6.2.4)
    Let  P = [M|T]. Compute internal and rotation as [K,R] = rq(M). Fix the sign so that diag(K) is positive.
    Camera center is computed with the formula C = -M^-1 T

    Args:
        P: 3x4 perspective projection matrix

    Returns:
        K: 3x3 calibration matrix
        R: 3x3 rotation matrix (world to camera)
        vecT: 3-valued translation vector
        oC: 3-valued optical center
    """
    from scipy import linalg

    M, T = P[:, :-1], P[:, -1]
    K, R = linalg.rq(M)
    R = np.diag(np.sign(np.diag(K))).dot(R)
    K = K.dot(np.diag(np.sign(np.diag(K))))
    # a projective scale with negative determinant flips the rotation
    if np.linalg.det(R) < 0:
        R, K = -R, -K
    oC = -((np.linalg.inv(M)).dot(T))
    vecT = (R @ -oC[:, np.newaxis]).T[0]
    return K, R, vecT, oC


def compose_perspective_camera(K, R, oC):
    """
    Compose perspective camera matrix as P = KR[I|-C]
    """
    P = K @ R @ np.hstack((np.eye(3), -np.asarray(oC)[:, np.newaxis]))
    return P


def apply_projection_matrix(P, pts3d):
    """
    Use a projection matrix to project a set of 3d points

    Args:
        P: 3x4 projection matrix
        pts3d: Nx3 array of 3d points in ECEF coordinates

    Returns:
        pts2d: Nx2 array containing the 2d projections of pts3d given by P
    """
    proj = P @ np.hstack((pts3d, np.ones((pts3d.shape[0], 1)))).T
    pts2d = (proj[:2, :] / proj[-1, :]).T
    return pts2d
