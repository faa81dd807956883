"""
Bundle adjustment, point cloud alignment and orbit synthesis for satellite stereo photogrammetry

This script implements the camera parameter models used by the bundle adjustment
Each model exposes one camera of the registry as a fixed layout of parameter blocks:
the 3d point (3 values), the pose (6 values) and the intrinsic blocks of the camera variant
"""

import numpy as np

from sat_adjust import ba_rotate, cam_utils


class Error(Exception):
    pass


class CameraRegistry:
    """
    Owns the cameras of a bundle adjustment run
    The models only hold an index into the registry, which outlives all of them
    """

    def __init__(self, cameras=None):
        self.cameras = []
        for cam in cameras or []:
            self.add(cam)

    def add(self, camera):
        self.cameras.append(camera)
        return len(self.cameras) - 1

    def get(self, cam_index):
        if cam_index < 0 or cam_index >= len(self.cameras):
            raise Error("Camera index {} out of range ({} cameras)".format(cam_index, len(self.cameras)))
        return self.cameras[cam_index]

    def __len__(self):
        return len(self.cameras)


class BundleModelBase:
    intrinsic_block_names = ()

    def __init__(self, registry, cam_index):
        self.registry = registry
        self.cam_index = cam_index

    @property
    def camera(self):
        return self.registry.get(self.cam_index)

    def num_point_params(self):
        return 3

    def num_pose_params(self):
        return 6

    def intrinsic_block_sizes(self):
        return []

    def num_intrinsic_params(self):
        return int(sum(self.intrinsic_block_sizes()))

    def num_params(self):
        return self.num_point_params() + self.num_pose_params() + self.num_intrinsic_params()

    def num_parameter_blocks(self):
        return 2 + len(self.intrinsic_block_sizes())

    def get_block_sizes(self):
        """
        Sizes of the parameter blocks: point, pose, then the intrinsic blocks
        """
        return [self.num_point_params(), self.num_pose_params()] + list(self.intrinsic_block_sizes())

    def initial_param_blocks(self):
        """
        Initial values of the pose and intrinsic blocks, taken from the camera in the registry
        """
        raise NotImplementedError

    def camera_from_blocks(self, pose, intrinsics):
        raise NotImplementedError

    def evaluate(self, param_blocks):
        """
        Project the point block into the image using the pose and intrinsic blocks

        Args:
            param_blocks: list of arrays with the sizes given by get_block_sizes

        Returns:
            pixel: 2-valued vector (col, row)

        Raises ProjectionError if the point cannot be projected
        """
        point, pose, intrinsics = param_blocks[0], param_blocks[1], param_blocks[2:]
        return self.camera_from_blocks(pose, intrinsics).projection(point)


class AdjustedCameraBundleModel(BundleModelBase):
    def __init__(self, registry, cam_index):
        """
        Keeps the camera of the registry untouched and solves for a 6-DOF correction:
        pose = (translation, axis-angle rotation) around the camera center
        """
        super().__init__(registry, cam_index)
        cam = self.camera
        if isinstance(cam, cam_utils.AdjustedCamera):
            self.base_camera = cam.camera
            self.rotation_center = cam.rotation_center
            self.init_pose = cam.adjustment_block()
        else:
            self.base_camera = cam
            self.rotation_center = cam.camera_center()
            self.init_pose = np.zeros(6)

    def initial_param_blocks(self):
        return [self.init_pose.copy()]

    def camera_from_blocks(self, pose, intrinsics):
        return cam_utils.AdjustedCamera(self.base_camera, pose[:3], pose[3:6], self.rotation_center)


class FullCameraBundleModel(BundleModelBase):
    """
    Solves for the camera pose (center, axis-angle of cam2world) and its intrinsic blocks
    """

    def __init__(self, registry, cam_index):
        super().__init__(registry, cam_index)
        self.intrinsic_block_names = self.camera.intrinsic_block_names

    def intrinsic_block_sizes(self):
        return [b.size for b in self.camera.intrinsic_blocks()]

    def initial_param_blocks(self):
        cam = self.camera
        return [cam.pose_block()] + cam.intrinsic_blocks()

    def camera_from_blocks(self, pose, intrinsics):
        return self.camera.with_blocks(pose, intrinsics)


class PinholeBundleModel(FullCameraBundleModel):
    """
    Intrinsic blocks: optical center (2), focal length (1), lens distortion (5)
    """

    pass


class OpticalBarBundleModel(FullCameraBundleModel):
    """
    Intrinsic blocks: optical center (2), focal length (1), speed, motion compensation and scan time (3)
    """

    pass


class CsmBundleModel(FullCameraBundleModel):
    """
    Intrinsic blocks: optical center (2), focal length (1), radial distortion polynomial (N)
    """

    pass


def create_bundle_model(registry, cam_index, inline_adjustments=True):
    """
    Select the model of a camera of the registry
    Cameras without intrinsic parameters (e.g. RPC) and all cameras when inline_adjustments is False
    are refined by a 6-DOF correction only
    """
    cam = registry.get(cam_index)
    if not inline_adjustments or isinstance(cam, (cam_utils.RpcCamera, cam_utils.AdjustedCamera)):
        return AdjustedCameraBundleModel(registry, cam_index)
    if isinstance(cam, cam_utils.PinholeCamera):
        return PinholeBundleModel(registry, cam_index)
    if isinstance(cam, cam_utils.OpticalBarCamera):
        return OpticalBarBundleModel(registry, cam_index)
    if isinstance(cam, cam_utils.GenericFrameCamera):
        return CsmBundleModel(registry, cam_index)
    raise Error("No bundle adjustment model for cameras of type {}".format(type(cam).__name__))


def pose_center(model, pose):
    """
    Camera center in ECEF given a pose block of the model
    """
    if isinstance(model, AdjustedCameraBundleModel):
        R = ba_rotate.axis_angle_to_R(pose[3:6])
        c = model.base_camera.camera_center()
        return (c - model.rotation_center) @ R.T + model.rotation_center + pose[:3]
    return np.asarray(pose[:3])
