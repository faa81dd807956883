"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the cost functions of the bundle adjustment
Each cost function maps a list of parameter blocks to a residual vector, normalized by the
uncertainty of the observation it represents. Linear residuals provide an analytic jacobian,
the rest are differentiated numerically by the problem (central differences or Ridders' method)

When a projection fails the residuals take a big finite sentinel value instead of raising,
so that the solver always gets a well defined residual vector
"""

import numpy as np
from scipy import ndimage

from sat_adjust import cam_utils


class Error(Exception):
    pass


class CostFunction:
    num_residuals = 0
    block_sizes = []
    numeric_diff = "central"

    def __call__(self, param_blocks):
        raise NotImplementedError


class ReprojectionError(CostFunction):
    def __init__(self, observation, pixel_sigma, model, big_pixel_value=1000.0):
        """
        Difference between an observed pixel and the projection of its 3d point, divided by the pixel sigma

        Args:
            observation: 2-valued vector (col, row) of the observation
            pixel_sigma: float or 2-valued vector with the uncertainty of the observation
            model: bundle model of the camera where the observation is seen
            big_pixel_value (optional): residual returned when the point cannot be projected
        """
        self.observation = np.array(observation, dtype=np.float64)
        self.pixel_sigma = np.broadcast_to(np.array(pixel_sigma, dtype=np.float64), (2,)).copy()
        if np.any(self.pixel_sigma <= 0):
            raise Error("The pixel sigma must be positive")
        self.model = model
        self.big_pixel_value = big_pixel_value
        self.num_residuals = 2
        self.block_sizes = model.get_block_sizes()

    def __call__(self, param_blocks):
        try:
            pixel = self.model.evaluate(param_blocks)
        except cam_utils.ProjectionError:
            return np.full(2, self.big_pixel_value)
        if not np.all(np.isfinite(pixel)):
            return np.full(2, self.big_pixel_value)
        return (self.observation - pixel) / self.pixel_sigma


class DisparityInterpolator:
    def __init__(self, dx, dy):
        """
        Bilinear interpolation of a disparity map from the left to the right image
        Invalid disparities are NaN
        """
        self.dx = np.asarray(dx, dtype=np.float64)
        self.dy = np.asarray(dy, dtype=np.float64)
        if self.dx.shape != self.dy.shape:
            raise Error("The two disparity bands must have the same size")
        self.invalid = ~np.isfinite(self.dx) | ~np.isfinite(self.dy)
        self.dx_filled = np.where(self.invalid, 0, self.dx)
        self.dy_filled = np.where(self.invalid, 0, self.dy)

    def __call__(self, pixel):
        """
        Disparity at a (col, row) position, None if it is outside the map or invalid
        """
        col, row = pixel
        h, w = self.dx.shape
        if not (0 <= col <= w - 1 and 0 <= row <= h - 1):
            return None
        coords = np.array([[row], [col]])
        bad = ndimage.map_coordinates(self.invalid.astype(np.float64), coords, order=1)[0]
        if bad > 0:
            return None
        dx = ndimage.map_coordinates(self.dx_filled, coords, order=1)[0]
        dy = ndimage.map_coordinates(self.dy_filled, coords, order=1)[0]
        return np.array([dx, dy])


class DispXyzError(CostFunction):
    def __init__(self, max_disp_error, reference_terrain_weight, reference_xyz, interp_disp,
                 left_model, right_model, big_pixel_value=1000.0):
        """
        Consistency of a reference terrain point with the disparity between a stereo pair
        The point is projected in the left image and mapped to the right image through the disparity.
        The residual is the difference with the direct projection in the right image

        The parameter blocks are the non-point blocks of the left model followed by those of the right model
        """
        self.max_disp_error = max_disp_error
        self.weight = reference_terrain_weight
        self.reference_xyz = np.array(reference_xyz, dtype=np.float64)
        self.interp_disp = interp_disp
        self.left_model = left_model
        self.right_model = right_model
        self.big_pixel_value = big_pixel_value
        self.num_left_blocks = left_model.num_parameter_blocks() - 1
        self.num_residuals = 2
        self.block_sizes = left_model.get_block_sizes()[1:] + right_model.get_block_sizes()[1:]

    def __call__(self, param_blocks):
        sentinel = np.full(2, self.big_pixel_value)
        left_blocks = [self.reference_xyz] + list(param_blocks[: self.num_left_blocks])
        right_blocks = [self.reference_xyz] + list(param_blocks[self.num_left_blocks :])
        try:
            left_pixel = self.left_model.evaluate(left_blocks)
        except cam_utils.ProjectionError:
            return sentinel
        disp = self.interp_disp(left_pixel)
        if disp is None:
            return sentinel
        try:
            right_pixel = self.right_model.evaluate(right_blocks)
        except cam_utils.ProjectionError:
            return sentinel
        residuals = left_pixel + disp - right_pixel
        if self.max_disp_error > 0:
            residuals = np.clip(residuals, -self.max_disp_error, self.max_disp_error)
        return self.weight * residuals


class XYZError(CostFunction):
    def __init__(self, observation_xyz, sigma):
        """
        Cartesian difference between the known position of a ground control point and its current estimate
        """
        self.observation_xyz = np.array(observation_xyz, dtype=np.float64)
        self.sigma = np.broadcast_to(np.array(sigma, dtype=np.float64), (3,)).copy()
        self.num_residuals = 3
        self.block_sizes = [3]

    def __call__(self, param_blocks):
        return (self.observation_xyz - param_blocks[0]) / self.sigma

    def jacobian(self, param_blocks):
        return [np.diag(-1.0 / self.sigma)]


class LLHError(CostFunction):
    def __init__(self, observation_xyz, sigma, datum):
        """
        Difference in longitude, latitude and height between the known position of a ground control point
        and its current estimate. The horizontal differences are converted to meters with the local radii
        of curvature, so that the three sigma values (east, north, up) are all expressed in meters
        and a sigma of 1 weighs a meter of error the same way in all directions, instead of a degree
        of longitude or latitude
        """
        self.datum = datum
        self.observation_xyz = np.array(observation_xyz, dtype=np.float64)
        self.observation_llh = datum.cartesian_to_geodetic(self.observation_xyz)
        self.sigma = np.broadcast_to(np.array(sigma, dtype=np.float64), (3,)).copy()
        if np.any(self.sigma <= 0):
            raise Error("The LLH sigma values must be positive")
        lat = np.radians(self.observation_llh[1])
        w = np.sqrt(1 - datum.e2 * np.sin(lat) ** 2)
        normal_radius = datum.a / w
        meridian_radius = datum.a * (1 - datum.e2) / w ** 3
        deg = np.radians(1.0)
        self.scale = np.array([deg * normal_radius * np.cos(lat), deg * meridian_radius, 1.0])
        self.num_residuals = 3
        self.block_sizes = [3]

    def __call__(self, param_blocks):
        llh = self.datum.cartesian_to_geodetic(param_blocks[0])
        diff = self.observation_llh - llh
        diff[0] = (diff[0] + 180.0) % 360.0 - 180.0
        return diff * self.scale / self.sigma


# position units are meters, rotation units are radians
CAM_POSITION_WEIGHT = 1e-2
CAM_ROTATION_WEIGHT = 5e1


class CamError(CostFunction):
    def __init__(self, orig_cam, weight):
        """
        Weighted difference between the current and the original pose of a camera
        It keeps the cameras from drifting far from their initial values, positions are
        allowed to move far more than orientations
        """
        self.orig_cam = np.array(orig_cam, dtype=np.float64)
        self.w = weight * np.array([CAM_POSITION_WEIGHT] * 3 + [CAM_ROTATION_WEIGHT] * 3)
        self.num_residuals = 6
        self.block_sizes = [6]

    def __call__(self, param_blocks):
        return self.w * (param_blocks[0] - self.orig_cam)

    def jacobian(self, param_blocks):
        return [np.diag(self.w)]


class RotTransError(CostFunction):
    def __init__(self, orig_cam, rotation_weight, translation_weight):
        """
        Same as CamError with independent rotation and translation weights and no fixed scaling
        """
        self.orig_cam = np.array(orig_cam, dtype=np.float64)
        self.w = np.array([translation_weight] * 3 + [rotation_weight] * 3, dtype=np.float64)
        self.num_residuals = 6
        self.block_sizes = [6]

    def __call__(self, param_blocks):
        return self.w * (param_blocks[0] - self.orig_cam)

    def jacobian(self, param_blocks):
        return [np.diag(self.w)]


class CamUncertaintyError(CostFunction):
    numeric_diff = "ridders"

    def __init__(self, orig_ctr, orig_adj, uncertainty, num_pixel_obs, datum, power=4.0):
        """
        Hard constraint on the horizontal and vertical motion of a camera center

        The displacement of the center is expressed in the local North-East-Down frame at the original
        center. The two residuals are sqrt(num_pixel_obs) * (d / u) ** power, for the horizontal and the
        vertical components d and their uncertainties u. They are negligible within the uncertainty and
        grow fast beyond it, enough to overcome the reprojection errors of the camera once squared

        Args:
            orig_ctr: 3-valued vector, original camera center in ECEF
            orig_adj: 6-valued vector, original pose block of the camera
            uncertainty: (horizontal, vertical) uncertainty in meters
            num_pixel_obs: number of reprojection residuals of the camera
            datum: geo_utils.Datum used to define the local frame
            power (optional): exponent applied before squaring
        """
        self.orig_ctr = np.array(orig_ctr, dtype=np.float64)
        self.orig_adj = np.array(orig_adj, dtype=np.float64)
        self.uncertainty = np.array(uncertainty, dtype=np.float64)
        if self.uncertainty.size != 2 or np.any(self.uncertainty <= 0):
            raise Error("The camera position uncertainty must be 2 positive values (horizontal, vertical)")
        self.num_pixel_obs = max(int(num_pixel_obs), 1)
        self.ecef_to_ned = datum.ecef_to_ned_matrix(datum.cartesian_to_geodetic(self.orig_ctr))
        self.power = power
        self.num_residuals = 2
        self.block_sizes = [6]

    def __call__(self, param_blocks):
        diff = self.ecef_to_ned @ (param_blocks[0][:3] - self.orig_adj[:3])
        horizontal = np.hypot(diff[0], diff[1])
        vertical = abs(diff[2])
        d = np.array([horizontal, vertical]) / self.uncertainty
        return np.sqrt(self.num_pixel_obs) * d ** self.power


class LossFunction:
    def __init__(self, name="l2", threshold=1.0):
        """
        Robust loss rho(s) applied to the squared norm s of the residual block, with threshold a:
            l2:      s
            huber:   s if s <= a^2, 2 a sqrt(s) - a^2 otherwise
            cauchy:  a^2 log(1 + s / a^2)
            soft_l1: 2 a^2 (sqrt(1 + s / a^2) - 1)
            arctan:  a atan2(s, a)
        """
        if name == "trivial":
            name = "l2"
        if name == "l1":
            name = "soft_l1"
        if name not in ["l2", "huber", "cauchy", "soft_l1", "arctan"]:
            raise Error("Unknown cost function: {}".format(name))
        if threshold <= 0:
            raise Error("The robust threshold must be positive")
        self.name = name
        self.a = float(threshold)

    def is_trivial(self):
        return self.name == "l2"

    def __call__(self, s):
        """
        Returns rho(s) and its derivative rho'(s)
        """
        a, a2 = self.a, self.a ** 2
        if self.name == "l2":
            return s, 1.0
        elif self.name == "huber":
            if s <= a2:
                return s, 1.0
            r = np.sqrt(s)
            return 2 * a * r - a2, a / r
        elif self.name == "cauchy":
            return a2 * np.log1p(s / a2), 1.0 / (1.0 + s / a2)
        elif self.name == "soft_l1":
            t = np.sqrt(1.0 + s / a2)
            return 2 * a2 * (t - 1.0), 1.0 / t
        return a * np.arctan2(s, a), a2 / (a2 + s * s)


def get_loss_function(name, threshold):
    return LossFunction(name, threshold)
